"""
Data schemas for categorization module
"""
import datetime as dt
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid4())


class FinancialType(str, Enum):
    """Financial statement section a category rolls up to"""
    REVENUE = "revenue"
    COGS = "cogs"
    OPEX = "opex"
    LIABILITY = "liability"
    CLEARING = "clearing"
    ASSET = "asset"
    EQUITY = "equity"


class Industry(str, Enum):
    """Business verticals used to scope prompt-eligible categories"""
    ALL = "all"
    ECOMMERCE = "ecommerce"
    SAAS = "saas"
    RESTAURANT = "restaurant"
    PROFESSIONAL_SERVICES = "professional_services"


class SignalSource(str, Enum):
    """Where a piece of evidence came from"""
    MCC = "mcc"
    VENDOR = "vendor"
    KEYWORD = "keyword"
    EMBEDDING = "embedding"
    LLM = "llm"


class SignalStrength(str, Enum):
    """How specific the evidence is"""
    EXACT = "exact"
    STRONG = "strong"
    MEDIUM = "medium"
    WEAK = "weak"


class DecisionSource(str, Enum):
    """Which pass produced the final category"""
    PASS1 = "pass1"
    LLM = "llm"
    NONE = "none"


class RuleType(str, Enum):
    MCC = "mcc"
    VENDOR = "vendor"
    KEYWORD = "keyword"
    EMBEDDING = "embedding"


class RuleSource(str, Enum):
    MANUAL = "manual"
    LEARNED = "learned"
    IMPORT = "import"


# ---- Taxonomy ---------------------------------------------------------------


class AttributeSpec(BaseModel):
    """Schema for one extractable attribute of a category"""
    model_config = ConfigDict(frozen=True)

    type: str = Field("string", description="string | number | boolean | enum")
    enum_values: Optional[List[str]] = None
    required: bool = False


class Category(BaseModel):
    """
    One node of the versioned category tree.

    Leaves carry the attribute schema that Pass-2 extraction is validated against.
    """
    model_config = ConfigDict(frozen=True)

    id: str
    slug: str
    name: str
    parent_id: Optional[str] = None
    financial_type: FinancialType
    is_pnl: bool = True
    include_in_prompt: bool = True
    description: str = ""
    examples: List[str] = Field(default_factory=list)
    industries: List[Industry] = Field(default_factory=lambda: [Industry.ALL])
    attribute_schema: Dict[str, AttributeSpec] = Field(default_factory=dict)

    @property
    def is_contra(self) -> bool:
        return "contra" in self.slug

    @property
    def is_root(self) -> bool:
        return self.parent_id is None


# ---- Transactions and evidence ----------------------------------------------


class NormalizedTransaction(BaseModel):
    """
    Unit of work handed over by the ingestion collaborator.

    amount_cents is signed: positive means money in, negative means money out.
    """
    id: str
    org_id: str
    date: dt.date
    amount_cents: int
    currency: str = "USD"
    description: str = ""
    merchant_name: Optional[str] = None
    mcc: Optional[str] = None
    source: str = "manual"
    raw: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "id": "tx_01",
                "org_id": "org_01",
                "date": "2025-01-15",
                "amount_cents": -4500,
                "currency": "USD",
                "description": "JOE'S DINER #12",
                "merchant_name": "Joe's Diner",
                "mcc": "5812",
                "source": "plaid",
            }
        }
    )


class Signal(BaseModel):
    """One immutable piece of categorization evidence"""
    model_config = ConfigDict(frozen=True)

    source: SignalSource
    category_id: str
    category_name: str
    strength: SignalStrength
    confidence: float = Field(..., ge=0.0, le=1.0)
    evidence_key: str
    rationale: str = ""


class CategoryCandidate(BaseModel):
    """Aggregated evidence for one category"""
    category_id: str
    category_name: str
    score: float = Field(..., ge=0.0)
    confidence: float = Field(..., ge=0.0, le=1.0, description="Calibrated confidence")
    signals: List[Signal] = Field(default_factory=list)


class CategorizationResult(BaseModel):
    """
    Final decision for one transaction plus its audit trail.

    category_id of None means the transaction needs manual review.
    """
    transaction_id: Optional[str] = None
    category_id: Optional[str] = None
    category_slug: Optional[str] = None
    confidence: Optional[float] = Field(None, ge=0.0, le=1.0)
    needs_review: bool = True
    source: DecisionSource = DecisionSource.NONE
    rationale: List[str] = Field(default_factory=list)
    signals: List[Signal] = Field(default_factory=list)
    guardrails_applied: List[str] = Field(default_factory=list)
    attributes: Optional[Dict[str, str]] = None
    candidates: List[CategoryCandidate] = Field(default_factory=list)


class BatchSummary(BaseModel):
    total: int = 0
    pass1_only: int = 0
    llm_used: int = 0
    needs_review: int = 0
    failed: int = 0
    avg_confidence: float = 0.0
    results: List[CategorizationResult] = Field(default_factory=list)


# ---- Embeddings -------------------------------------------------------------


class VendorEmbedding(BaseModel):
    org_id: str
    vendor: str
    embedding: List[float]
    category_id: str
    confidence: float = Field(0.5, ge=0.0, le=1.0)
    transaction_count: int = Field(1, ge=1)
    last_refreshed: datetime = Field(default_factory=_utcnow)


class EmbeddingSearchHit(BaseModel):
    vendor: str
    category_id: str
    similarity: float
    confidence: float = Field(..., ge=0.0, le=1.0)
    transaction_count: int


class EmbeddingMatch(BaseModel):
    """Audit record of a search hit, flagged when it influenced the decision"""
    org_id: str
    transaction_id: str
    matched_vendor: str
    similarity: float = Field(..., ge=0.0, le=1.0)
    matched_category_id: Optional[str] = None
    contributed_to_decision: bool = False
    created_at: datetime = Field(default_factory=_utcnow)


class StabilitySnapshot(BaseModel):
    org_id: str
    snapshot_date: date
    vendor: str
    category_id: Optional[str] = None
    category_breakdown: Dict[str, int] = Field(default_factory=dict)
    avg_similarity: float = Field(..., ge=0.0, le=1.0)
    match_count: int = 0
    sample_matches: List[Dict[str, Any]] = Field(default_factory=list)
    embedding_version: str = "v1"


class VendorStabilityMetrics(BaseModel):
    vendor: str
    snapshot_count: int
    avg_similarity: Optional[float] = None
    similarity_trend: float = 0.0
    distinct_categories: List[str] = Field(default_factory=list)
    drift_detected: bool = False


class EmbeddingBatchReport(BaseModel):
    """Per-vendor outcome of a bulk embedding run"""
    succeeded: List[str] = Field(default_factory=list)
    failed: Dict[str, str] = Field(default_factory=dict)
    embeddings: Dict[str, List[float]] = Field(default_factory=dict)


# ---- Learning loop ----------------------------------------------------------


class RuleVersion(BaseModel):
    id: str = Field(default_factory=_new_id)
    org_id: Optional[str] = None
    rule_type: RuleType
    rule_identifier: str
    category_id: str
    confidence: float = Field(..., ge=0.0, le=1.0)
    version: int = Field(1, ge=1)
    source: RuleSource
    parent_version_id: Optional[str] = None
    is_active: bool = False
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    deactivated_at: Optional[datetime] = None
    deactivated_by: Optional[str] = None
    deactivation_reason: Optional[str] = None


class CanaryTestResult(BaseModel):
    id: str = Field(default_factory=_new_id)
    org_id: str
    rule_version_id: str
    test_date: date
    test_set_size: int
    true_positives: int = 0
    false_positives: int = 0
    false_negatives: int = 0
    true_negatives: int = 0
    accuracy: float = Field(..., ge=0.0, le=1.0)
    precision: float = Field(..., ge=0.0, le=1.0)
    recall: float = Field(..., ge=0.0, le=1.0)
    f1_score: float = Field(..., ge=0.0, le=1.0)
    passed_threshold: bool
    promoted_to_production: bool = False
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)


class LabeledTransaction(BaseModel):
    """Reviewed transaction used as held-out canary data"""
    transaction: NormalizedTransaction
    category_id: str


class Correction(BaseModel):
    org_id: str
    transaction_id: str
    category_id: str
    changed_at: datetime = Field(default_factory=_utcnow)
    changed_by: Optional[str] = None


class OscillationEntry(BaseModel):
    category_id: str
    changed_at: datetime
    changed_by: Optional[str] = None


class CategoryOscillation(BaseModel):
    id: str = Field(default_factory=_new_id)
    org_id: str
    transaction_id: str
    oscillation_sequence: List[OscillationEntry] = Field(default_factory=list)
    oscillation_count: int = 0
    first_detected_at: datetime = Field(default_factory=_utcnow)
    last_detected_at: datetime = Field(default_factory=_utcnow)
    is_resolved: bool = False
    resolution_category_id: Optional[str] = None
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None


class RuleOscillation(BaseModel):
    """A rule identifier whose versions keep flipping"""
    rule_type: RuleType
    rule_identifier: str
    version_count: int
    category_ids: List[str] = Field(default_factory=list)
