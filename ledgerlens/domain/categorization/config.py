"""
Per-call categorizer configuration

Engine code never reads the environment. The API and worker build a
CategorizerConfig from Settings once and pass it down explicitly.
"""
from pydantic import BaseModel, ConfigDict, Field

from ledgerlens.common.config import Settings
from ledgerlens.domain.categorization.guardrails import GuardrailProfile
from ledgerlens.domain.categorization.schemas import Industry


class CanaryConfig(BaseModel):
    """Thresholds a rule version must clear before promotion"""
    model_config = ConfigDict(frozen=True)

    test_set_size: int = Field(100, ge=1)
    accuracy_threshold: float = Field(0.80, ge=0.0, le=1.0)
    precision_threshold: float = Field(0.75, ge=0.0, le=1.0)
    min_sample_size: int = Field(20, ge=1)


class CategorizerConfig(BaseModel):
    """
    Behaviour switches for one categorization call.

    Attributes:
        industry: Scopes prompt-eligible categories
        guardrail_profile: strict (default) or legacy guardrail table
        llm_enabled: Allow the Pass-2 generative fallback
        embeddings_enabled: Query learned vendor embeddings
        track_embedding_matches: Record search hits for stability snapshots
        pass2_threshold: Pass-1 confidence below which Pass-2 runs
        review_threshold: Final confidence below which a human reviews
        batch_concurrency: Parallel categorizations in a batch
    """
    model_config = ConfigDict(frozen=True)

    industry: Industry = Industry.ECOMMERCE
    guardrail_profile: GuardrailProfile = GuardrailProfile.STRICT
    llm_enabled: bool = True
    embeddings_enabled: bool = True
    track_embedding_matches: bool = True
    pass2_threshold: float = Field(0.75, ge=0.0, le=1.0)
    review_threshold: float = Field(0.80, ge=0.0, le=1.0)
    batch_concurrency: int = Field(10, ge=1)

    @classmethod
    def from_settings(cls, settings: Settings) -> "CategorizerConfig":
        return cls(
            industry=Industry(settings.industry),
            guardrail_profile=GuardrailProfile(settings.guardrail_profile),
            llm_enabled=settings.llm_enabled,
            embeddings_enabled=settings.embeddings_enabled,
            pass2_threshold=settings.pass2_threshold,
            review_threshold=settings.review_threshold,
        )
