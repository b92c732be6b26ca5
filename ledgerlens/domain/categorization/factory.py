"""
Wiring of the categorization engine from Settings

The API and the worker share one engine per process. SQL repositories open
sessions lazily, so building the graph does no I/O.
"""
from functools import lru_cache
from typing import Optional

from ledgerlens.common.config import Settings, get_settings
from ledgerlens.common.embedding_repository import SqlVendorEmbeddingRepository
from ledgerlens.common.oscillation_repository import SqlOscillationRepository
from ledgerlens.common.rule_repository import SqlRuleVersionRepository
from ledgerlens.common.transaction_repository import SqlTransactionRepository
from ledgerlens.domain.categorization.categorization_service import CategorizationService
from ledgerlens.domain.categorization.config import CategorizerConfig
from ledgerlens.domain.categorization.embeddings import EmbeddingClient, EmbeddingMatcher
from ledgerlens.domain.categorization.learning_loop import LearningLoop
from ledgerlens.domain.categorization.llm_fallback import AnthropicTextGenerator, GenerativeFallback
from ledgerlens.domain.categorization.rule_engine import RuleEngine


def build_embedding_matcher(settings: Settings) -> EmbeddingMatcher:
    client = None
    if settings.embeddings_enabled and settings.openai_api_key:
        client = EmbeddingClient(
            api_key=settings.openai_api_key,
            api_url=settings.embedding_api_url,
            model=settings.embedding_model,
        )
    return EmbeddingMatcher(
        SqlVendorEmbeddingRepository(),
        client=client,
        cache_ttl_seconds=settings.cache_ttl_seconds,
        batch_size=settings.embedding_batch_size,
        batch_delay_seconds=settings.embedding_batch_delay_ms / 1000,
    )


def build_rule_engine(settings: Settings) -> RuleEngine:
    return RuleEngine(
        rule_repository=SqlRuleVersionRepository(),
        embedding_matcher=build_embedding_matcher(settings),
        cache_ttl_seconds=settings.cache_ttl_seconds,
    )


def build_fallback(settings: Settings) -> Optional[GenerativeFallback]:
    if not settings.llm_enabled:
        return None
    generator = AnthropicTextGenerator(settings.anthropic_api_key, model=settings.anthropic_model)
    if not generator.available:
        return None
    return GenerativeFallback(
        generator,
        timeout_seconds=settings.llm_timeout_seconds,
        max_retries=settings.llm_max_retries,
    )


@lru_cache()
def get_rule_engine() -> RuleEngine:
    return build_rule_engine(get_settings())


@lru_cache()
def get_categorization_service() -> CategorizationService:
    """Process-wide categorization service built from environment settings."""
    settings = get_settings()
    return CategorizationService(
        rule_engine=get_rule_engine(),
        fallback=build_fallback(settings),
        transaction_repository=SqlTransactionRepository(),
        default_config=CategorizerConfig.from_settings(settings),
    )


def build_learning_loop(rule_engine: Optional[RuleEngine] = None) -> LearningLoop:
    return LearningLoop(
        SqlRuleVersionRepository(),
        SqlOscillationRepository(),
        SqlTransactionRepository(),
        rule_engine=rule_engine,
    )


@lru_cache()
def get_learning_loop() -> LearningLoop:
    return build_learning_loop(get_rule_engine())
