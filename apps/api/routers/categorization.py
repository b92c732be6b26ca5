"""
Categorization API - categorize one transaction or a batch
"""
from typing import List, Optional

import structlog
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from apps.api.dependencies import get_default_config, get_service
from ledgerlens.domain.categorization.categorization_service import CategorizationService
from ledgerlens.domain.categorization.config import CategorizerConfig
from ledgerlens.domain.categorization.guardrails import GuardrailProfile
from ledgerlens.domain.categorization.schemas import (
    BatchSummary,
    CategorizationResult,
    Industry,
    NormalizedTransaction,
)

logger = structlog.get_logger()
router = APIRouter()

MAX_BATCH_SIZE = 500


class ConfigOverrides(BaseModel):
    """Optional per-request overrides of the configured behaviour"""
    industry: Optional[Industry] = None
    guardrail_profile: Optional[GuardrailProfile] = None
    llm_enabled: Optional[bool] = None
    embeddings_enabled: Optional[bool] = None

    def apply(self, config: CategorizerConfig) -> CategorizerConfig:
        return config.model_copy(update=self.model_dump(exclude_none=True))


class CategorizeRequest(BaseModel):
    transaction: NormalizedTransaction
    config: ConfigOverrides = Field(default_factory=ConfigOverrides)


class CategorizeBatchRequest(BaseModel):
    transactions: List[NormalizedTransaction] = Field(..., min_length=1, max_length=MAX_BATCH_SIZE)
    config: ConfigOverrides = Field(default_factory=ConfigOverrides)


@router.post("", response_model=CategorizationResult)
async def categorize(
    request: CategorizeRequest,
    service: CategorizationService = Depends(get_service),
    default_config: CategorizerConfig = Depends(get_default_config),
) -> CategorizationResult:
    """
    Categorize one transaction.

    A result without category_id is not an error: the transaction needs review.
    """
    return await service.categorize_transaction(request.transaction, request.config.apply(default_config))


@router.post("/batch", response_model=BatchSummary)
async def categorize_batch(
    request: CategorizeBatchRequest,
    service: CategorizationService = Depends(get_service),
    default_config: CategorizerConfig = Depends(get_default_config),
) -> BatchSummary:
    """Categorize up to 500 transactions; failures are counted, not raised."""
    logger.info("categorize_batch_requested", count=len(request.transactions))
    return await service.categorize_batch(request.transactions, request.config.apply(default_config))
