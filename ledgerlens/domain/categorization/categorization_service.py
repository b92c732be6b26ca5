"""
Transaction categorization orchestrator

Pass-1 collects deterministic evidence (MCC, vendor, keyword, rule versions,
learned vendor embeddings), scores it and runs guardrails. When nothing clears
the Pass-2 threshold the generative fallback is asked, and its answer goes
through the same guardrails before it can replace Pass-1.
"""
import asyncio
import time
from typing import List, Optional

import structlog

from ledgerlens.common.metrics import CATEGORIZATIONS, CATEGORIZATION_LATENCY
from ledgerlens.domain.categorization.config import CategorizerConfig
from ledgerlens.domain.categorization.guardrails import GuardrailEngine, GuardrailOutcome
from ledgerlens.domain.categorization.llm_fallback import GenerativeFallback, LLMCategorization
from ledgerlens.domain.categorization.repositories import TransactionRepository
from ledgerlens.domain.categorization.rule_engine import RuleEngine
from ledgerlens.domain.categorization.schemas import (
    BatchSummary,
    CategorizationResult,
    CategoryCandidate,
    DecisionSource,
    EmbeddingSearchHit,
    NormalizedTransaction,
)
from ledgerlens.domain.categorization.scorer import score_signals
from ledgerlens.domain.categorization.taxonomy import Taxonomy, taxonomy as default_taxonomy

logger = structlog.get_logger()


class CategorizationService:
    """
    Categorize transactions end to end.

    Usage:
        service = CategorizationService(rule_engine=engine, fallback=fallback)
        result = await service.categorize_transaction(transaction, config)
    """

    def __init__(
        self,
        rule_engine: RuleEngine = None,
        fallback: Optional[GenerativeFallback] = None,
        transaction_repository: Optional[TransactionRepository] = None,
        taxonomy: Taxonomy = None,
        default_config: CategorizerConfig = None,
    ):
        self.taxonomy = taxonomy or default_taxonomy
        self.rule_engine = rule_engine or RuleEngine(taxonomy=self.taxonomy)
        self.fallback = fallback
        self.transactions = transaction_repository
        self.default_config = default_config or CategorizerConfig()
        self._guardrail_engines = {}

    def _guardrails(self, config: CategorizerConfig) -> GuardrailEngine:
        engine = self._guardrail_engines.get(config.guardrail_profile)
        if engine is None:
            engine = GuardrailEngine(profile=config.guardrail_profile, taxonomy=self.taxonomy)
            self._guardrail_engines[config.guardrail_profile] = engine
        return engine

    def _slug_for(self, category_id: str) -> Optional[str]:
        category = self.taxonomy.get_by_id(category_id)
        return category.slug if category else None

    async def categorize_transaction(
        self,
        transaction: NormalizedTransaction,
        config: CategorizerConfig = None,
    ) -> CategorizationResult:
        """
        Categorize one transaction.

        Args:
            transaction: Normalized transaction from ingestion
            config: Per-call behaviour (defaults to the service's config)

        Returns:
            CategorizationResult; category_id None means it needs review

        Raises:
            EmbeddingFormatError: stored or returned vectors are malformed
        """
        config = config or self.default_config
        started = time.perf_counter()
        log = logger.bind(transaction_id=transaction.id, org_id=transaction.org_id)

        signals, hits = await self.rule_engine.collect(transaction, include_embeddings=config.embeddings_enabled)

        scoring = score_signals(signals)
        rationale = list(scoring.rationale)
        guardrails = self._guardrails(config)

        best = scoring.best
        pass1 = guardrails.apply(
            transaction,
            self._slug_for(best.category_id) if best else None,
            best.confidence if best else 0.0,
        )
        rationale += pass1.reasons

        final: GuardrailOutcome = pass1
        source = DecisionSource.PASS1 if pass1.category_slug else DecisionSource.NONE
        attributes = None

        pass1_confidence = pass1.confidence if pass1.category_slug else 0.0
        if config.llm_enabled and self.fallback is not None and pass1_confidence < config.pass2_threshold:
            log.info(
                "pass2_invoked",
                pass1_category=pass1.category_slug,
                pass1_confidence=round(pass1_confidence, 3),
            )
            llm = await self.fallback.categorize(
                transaction,
                pass1_signals=signals,
                pass1_best=self._pass1_candidate(pass1, best),
                industry=config.industry,
            )
            rationale.append(f"llm: {llm.category_slug} ({llm.confidence:.2f}) - {llm.rationale}")
            signals = signals + [llm.to_signal()]

            checked = guardrails.apply(transaction, llm.category_slug, llm.confidence)
            rationale += checked.reasons
            if checked.category_slug and (pass1.category_slug is None or checked.confidence > pass1.confidence):
                final = checked
                source = DecisionSource.LLM
                attributes = self._llm_attributes(llm, checked)

        if final.category_slug is None:
            rationale.append("No category survived; transaction needs review")

        confidence = final.confidence if final.category_slug else None
        needs_review = final.category_slug is None or final.confidence < config.review_threshold

        result = CategorizationResult(
            transaction_id=transaction.id,
            category_id=final.category_id,
            category_slug=final.category_slug,
            confidence=confidence,
            needs_review=needs_review,
            source=source,
            rationale=rationale,
            signals=signals,
            guardrails_applied=final.guardrails_applied,
            attributes=attributes,
            candidates=scoring.candidates,
        )

        if hits and config.track_embedding_matches:
            await self._track_embedding_matches(transaction, hits, result.category_id)

        if self.transactions is not None:
            await self.transactions.write_categorization(transaction.org_id, result)

        elapsed = time.perf_counter() - started
        CATEGORIZATION_LATENCY.observe(elapsed)
        CATEGORIZATIONS.labels(source=source.value, needs_review=str(needs_review).lower()).inc()
        log.info(
            "transaction_categorized",
            category=result.category_slug,
            confidence=result.confidence,
            source=source.value,
            needs_review=needs_review,
            guardrails=result.guardrails_applied,
            signal_count=len(signals),
            duration_ms=round(elapsed * 1000, 1),
        )
        return result

    def _pass1_candidate(
        self,
        outcome: GuardrailOutcome,
        best: Optional[CategoryCandidate],
    ) -> Optional[CategoryCandidate]:
        # Pass-2 sees Pass-1 after guardrails, not the raw scorer pick
        if outcome.category_slug is None or best is None:
            return None
        category = self.taxonomy.require_slug(outcome.category_slug)
        return CategoryCandidate(
            category_id=category.id,
            category_name=category.name,
            score=best.score,
            confidence=outcome.confidence,
            signals=best.signals,
        )

    def _llm_attributes(self, llm: LLMCategorization, outcome: GuardrailOutcome):
        # Attributes were validated for the model's slug; drop them if a guardrail moved it
        if outcome.category_slug != llm.category_slug:
            return None
        return llm.attributes or None

    async def _track_embedding_matches(
        self,
        transaction: NormalizedTransaction,
        hits: List[EmbeddingSearchHit],
        final_category_id: Optional[str],
    ) -> None:
        matcher = self.rule_engine.embedding_matcher
        if matcher is None:
            return
        for hit in hits:
            try:
                await matcher.track_match(
                    transaction.org_id,
                    transaction.id,
                    hit,
                    contributed=final_category_id is not None and hit.category_id == final_category_id,
                )
            except Exception:
                logger.warning(
                    "embedding_match_tracking_failed",
                    transaction_id=transaction.id,
                    vendor=hit.vendor,
                    exc_info=True,
                )

    async def categorize_batch(
        self,
        transactions: List[NormalizedTransaction],
        config: CategorizerConfig = None,
    ) -> BatchSummary:
        """
        Categorize many transactions with bounded concurrency.

        One failing transaction is counted and logged; it never aborts the batch.
        """
        config = config or self.default_config
        semaphore = asyncio.Semaphore(config.batch_concurrency)

        async def run(transaction: NormalizedTransaction) -> Optional[CategorizationResult]:
            async with semaphore:
                try:
                    return await self.categorize_transaction(transaction, config)
                except Exception as e:
                    logger.error(
                        "transaction_categorization_failed",
                        transaction_id=transaction.id,
                        error=str(e),
                        exc_info=True,
                    )
                    return None

        outcomes = await asyncio.gather(*(run(tx) for tx in transactions))

        summary = BatchSummary(total=len(transactions))
        confidences = []
        for result in outcomes:
            if result is None:
                summary.failed += 1
                continue
            summary.results.append(result)
            if result.source == DecisionSource.LLM:
                summary.llm_used += 1
            elif result.source == DecisionSource.PASS1:
                summary.pass1_only += 1
            if result.needs_review:
                summary.needs_review += 1
            if result.confidence is not None:
                confidences.append(result.confidence)

        summary.avg_confidence = sum(confidences) / len(confidences) if confidences else 0.0
        logger.info(
            "batch_categorized",
            total=summary.total,
            pass1_only=summary.pass1_only,
            llm_used=summary.llm_used,
            needs_review=summary.needs_review,
            failed=summary.failed,
            avg_confidence=round(summary.avg_confidence, 3),
        )
        return summary
