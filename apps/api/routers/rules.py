"""
Rule governance API - rule versions, canary tests, promotion, oscillations
"""
from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from apps.api.dependencies import get_loop
from ledgerlens.domain.categorization.learning_loop import LearningLoop
from ledgerlens.domain.categorization.rules.validator import ValidationReport, format_conflict_report, validate_all_rules
from ledgerlens.domain.categorization.schemas import (
    CanaryTestResult,
    CategoryOscillation,
    RuleOscillation,
    RuleSource,
    RuleType,
    RuleVersion,
)

logger = structlog.get_logger()
router = APIRouter()


class CreateRuleRequest(BaseModel):
    org_id: Optional[str] = Field(None, description="None creates a global rule")
    rule_type: RuleType
    rule_identifier: str = Field(..., min_length=1)
    category_id: str
    confidence: float = Field(..., ge=0.0, le=1.0)
    source: RuleSource = RuleSource.LEARNED
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_by: Optional[str] = None


class CanaryRequest(BaseModel):
    org_id: str


class PromoteRequest(BaseModel):
    promoted_by: Optional[str] = None


class RollbackRequest(BaseModel):
    reason: str = "Manual rollback"
    rolled_back_by: Optional[str] = None


class RollbackResponse(BaseModel):
    rolled_back: bool


class ResolveOscillationRequest(BaseModel):
    resolution_category_id: str
    resolved_by: Optional[str] = None


class CorrectionRequest(BaseModel):
    org_id: str
    transaction_id: str
    category_id: str
    changed_by: Optional[str] = None


class ValidationResponse(BaseModel):
    report: ValidationReport
    markdown: str


@router.post("/rules", response_model=RuleVersion, status_code=201)
async def create_rule(request: CreateRuleRequest, loop: LearningLoop = Depends(get_loop)) -> RuleVersion:
    """Create a rule version. Manual rules activate immediately; others need a canary."""
    return await loop.create_rule_version(
        request.org_id,
        request.rule_type,
        request.rule_identifier,
        request.category_id,
        request.confidence,
        request.source,
        metadata=request.metadata,
        created_by=request.created_by,
    )


@router.get("/rules/active", response_model=List[RuleVersion])
async def list_active_rules(
    org_id: str = Query(..., description="Organization"),
    rule_type: Optional[RuleType] = Query(None, description="Filter by rule type"),
    loop: LearningLoop = Depends(get_loop),
) -> List[RuleVersion]:
    return await loop.get_active_rule_versions(org_id, rule_type)


@router.get("/rules/validation", response_model=ValidationResponse)
async def validate_rules() -> ValidationResponse:
    """Conflicts and unsafe patterns in the shipped rule tables."""
    report = validate_all_rules()
    return ValidationResponse(report=report, markdown=format_conflict_report(report))


@router.get("/rules/oscillations", response_model=List[RuleOscillation])
async def list_rule_oscillations(
    org_id: str = Query(...),
    threshold: int = Query(3, ge=2),
    window_days: int = Query(30, ge=1, le=365),
    loop: LearningLoop = Depends(get_loop),
) -> List[RuleOscillation]:
    return await loop.detect_rule_oscillations(org_id, threshold, window_days)


@router.post("/rules/{rule_version_id}/canary", response_model=CanaryTestResult)
async def run_canary(
    rule_version_id: str,
    request: CanaryRequest,
    loop: LearningLoop = Depends(get_loop),
) -> CanaryTestResult:
    return await loop.run_canary_test(request.org_id, rule_version_id)


@router.post("/rules/{rule_version_id}/promote", response_model=RuleVersion)
async def promote_rule(
    rule_version_id: str,
    request: PromoteRequest,
    loop: LearningLoop = Depends(get_loop),
) -> RuleVersion:
    """Activate a version whose latest canary passed (409 otherwise)."""
    return await loop.promote_rule_version(rule_version_id, request.promoted_by)


@router.post("/rules/{rule_version_id}/rollback", response_model=RollbackResponse)
async def rollback_rule(
    rule_version_id: str,
    request: RollbackRequest,
    loop: LearningLoop = Depends(get_loop),
) -> RollbackResponse:
    rolled_back = await loop.rollback_rule_version(rule_version_id, request.reason, request.rolled_back_by)
    return RollbackResponse(rolled_back=rolled_back)


@router.post("/corrections", response_model=Optional[CategoryOscillation])
async def record_correction(
    request: CorrectionRequest,
    loop: LearningLoop = Depends(get_loop),
) -> Optional[CategoryOscillation]:
    """Record a manual recategorization; returns the oscillation if one was flagged."""
    return await loop.record_correction(
        request.org_id, request.transaction_id, request.category_id, request.changed_by
    )


@router.get("/oscillations", response_model=List[CategoryOscillation])
async def list_oscillations(
    org_id: str = Query(...),
    limit: int = Query(50, ge=1, le=200),
    loop: LearningLoop = Depends(get_loop),
) -> List[CategoryOscillation]:
    return await loop.get_unresolved_oscillations(org_id, limit)


@router.post("/oscillations/{oscillation_id}/resolve", response_model=CategoryOscillation)
async def resolve_oscillation(
    oscillation_id: str,
    request: ResolveOscillationRequest,
    loop: LearningLoop = Depends(get_loop),
) -> CategoryOscillation:
    return await loop.resolve_oscillation(oscillation_id, request.resolution_category_id, request.resolved_by)
