"""
Pass-2 generative fallback

Asks Claude for a category when Pass-1 evidence is missing or weak. Every
failure degrades to the catch-all category at a low confidence so the
transaction lands in review instead of raising.
"""
import asyncio
from typing import Dict, List, Optional, Protocol

import anthropic
import structlog
from pydantic import BaseModel, Field

from ledgerlens.common.metrics import PASS2_INVOCATIONS
from ledgerlens.domain.categorization.calibration import calibrate_llm_confidence
from ledgerlens.domain.categorization.exceptions import LLMResponseError
from ledgerlens.domain.categorization.prompt import PromptContext, build_prompt, parse_llm_response, top_pass1_signals
from ledgerlens.domain.categorization.schemas import (
    CategoryCandidate,
    Industry,
    NormalizedTransaction,
    Signal,
    SignalSource,
    SignalStrength,
)
from ledgerlens.domain.categorization.taxonomy import CATCH_ALL_SLUG, Taxonomy, taxonomy as default_taxonomy

logger = structlog.get_logger()

MODEL_FAILURE_CONFIDENCE = 0.25
PARSE_FAILURE_CONFIDENCE = 0.3
DEFAULT_TIMEOUT_SECONDS = 5.0
DEFAULT_MAX_RETRIES = 1
MAX_TOKENS = 1024


class TextGenerator(Protocol):
    async def generate(self, prompt: str) -> str:
        ...


class AnthropicTextGenerator:
    """Thin async wrapper over the Anthropic Messages API"""

    def __init__(self, api_key: Optional[str], model: str = "claude-sonnet-4-5", client=None):
        self.model = model
        if client is not None:
            self.client = client
        elif api_key:
            self.client = anthropic.AsyncAnthropic(api_key=api_key)
        else:
            self.client = None
            logger.warning("anthropic_api_key_missing", message="Pass-2 fallback disabled")

    @property
    def available(self) -> bool:
        return self.client is not None

    async def generate(self, prompt: str) -> str:
        if self.client is None:
            raise RuntimeError("Anthropic client not configured")

        response = await self.client.messages.create(
            model=self.model,
            max_tokens=MAX_TOKENS,
            temperature=0.0,
            messages=[{"role": "user", "content": prompt}],
        )

        logger.debug(
            "llm_generation_complete",
            model=self.model,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
        )
        return response.content[0].text


class LLMCategorization(BaseModel):
    """Outcome of one Pass-2 call"""
    category_slug: str
    category_id: str
    category_name: str
    confidence: float = Field(..., ge=0.0, le=1.0)
    raw_confidence: Optional[float] = None
    attributes: Dict[str, str] = Field(default_factory=dict)
    attribute_warnings: List[str] = Field(default_factory=list)
    rationale: str = ""
    outcome: str = "success"

    @property
    def succeeded(self) -> bool:
        return self.outcome == "success"

    def to_signal(self) -> Signal:
        return Signal(
            source=SignalSource.LLM,
            category_id=self.category_id,
            category_name=self.category_name,
            strength=SignalStrength.STRONG,
            confidence=self.confidence,
            evidence_key=f"llm:{self.category_slug}",
            rationale=self.rationale,
        )


class GenerativeFallback:
    """
    Pass-2 categorizer.

    The call is bounded by a timeout and retried with exponential backoff
    (1s, 2s, ...) before giving up.
    """

    def __init__(
        self,
        generator: TextGenerator,
        taxonomy: Taxonomy = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        backoff_base_seconds: float = 1.0,
    ):
        self.generator = generator
        self.taxonomy = taxonomy or default_taxonomy
        self.timeout_seconds = timeout_seconds
        self.max_retries = max_retries
        self.backoff_base_seconds = backoff_base_seconds

    async def _generate_with_retry(self, prompt: str) -> str:
        attempt = 0
        while True:
            try:
                return await asyncio.wait_for(self.generator.generate(prompt), timeout=self.timeout_seconds)
            except Exception as e:
                attempt += 1
                if attempt > self.max_retries:
                    raise
                delay = self.backoff_base_seconds * (2 ** (attempt - 1))
                logger.warning("llm_call_retry", attempt=attempt, delay_seconds=delay, error=str(e) or type(e).__name__)
                await asyncio.sleep(delay)

    def _fallback(self, confidence: float, rationale: str, outcome: str) -> LLMCategorization:
        catch_all = self.taxonomy.catch_all
        PASS2_INVOCATIONS.labels(outcome=outcome).inc()
        return LLMCategorization(
            category_slug=catch_all.slug,
            category_id=catch_all.id,
            category_name=catch_all.name,
            confidence=confidence,
            rationale=rationale,
            outcome=outcome,
        )

    async def categorize(
        self,
        transaction: NormalizedTransaction,
        pass1_signals: Optional[List[Signal]] = None,
        pass1_best: Optional[CategoryCandidate] = None,
        industry: Industry = Industry.ECOMMERCE,
    ) -> LLMCategorization:
        """
        Categorize a transaction with the generative model.

        Args:
            transaction: Transaction to categorize
            pass1_signals: Pass-1 evidence, the top three are summarized in the prompt
            pass1_best: Best Pass-1 candidate after guardrails, if any
            industry: Scopes the categories offered to the model

        Returns:
            LLMCategorization, falling back to the catch-all on any failure
        """
        context = PromptContext(
            transaction=transaction,
            industry=industry,
            pass1_category_name=pass1_best.category_name if pass1_best else None,
            pass1_confidence=pass1_best.confidence if pass1_best else None,
            pass1_signals=top_pass1_signals(pass1_signals or []),
        )
        prompt = build_prompt(context, self.taxonomy)

        try:
            text = await self._generate_with_retry(prompt)
        except Exception as e:
            logger.error(
                "llm_categorization_failed",
                transaction_id=transaction.id,
                error=str(e) or type(e).__name__,
                exc_info=True,
            )
            return self._fallback(MODEL_FAILURE_CONFIDENCE, "LLM unavailable", "model_error")

        try:
            parsed = parse_llm_response(text)
        except LLMResponseError as e:
            logger.warning("llm_response_unparseable", transaction_id=transaction.id, error=str(e))
            return self._fallback(PARSE_FAILURE_CONFIDENCE, "LLM response could not be parsed", "parse_error")

        if not self.taxonomy.is_valid_prompt_slug(parsed.category_slug, industry):
            logger.warning(
                "llm_invalid_category",
                transaction_id=transaction.id,
                category_slug=parsed.category_slug,
            )
            return self._fallback(
                PARSE_FAILURE_CONFIDENCE,
                f"LLM returned unknown category '{parsed.category_slug}'",
                "invalid_category",
            )

        category = self.taxonomy.require_slug(parsed.category_slug)
        agrees = pass1_best is not None and pass1_best.category_id == category.id
        confidence = calibrate_llm_confidence(
            parsed.confidence,
            pass1_confidence=pass1_best.confidence if pass1_best else None,
            agrees_with_pass1=agrees,
        )
        attributes, warnings = self.taxonomy.validate_attributes(category.slug, parsed.attributes)

        PASS2_INVOCATIONS.labels(outcome="success").inc()
        logger.info(
            "llm_categorization_complete",
            transaction_id=transaction.id,
            category=category.slug,
            raw_confidence=parsed.confidence,
            confidence=confidence,
            agrees_with_pass1=agrees,
        )

        return LLMCategorization(
            category_slug=category.slug,
            category_id=category.id,
            category_name=category.name,
            confidence=confidence,
            raw_confidence=parsed.confidence,
            attributes=attributes,
            attribute_warnings=warnings,
            rationale=parsed.rationale,
        )


__all__ = [
    "AnthropicTextGenerator",
    "CATCH_ALL_SLUG",
    "GenerativeFallback",
    "LLMCategorization",
    "TextGenerator",
]
