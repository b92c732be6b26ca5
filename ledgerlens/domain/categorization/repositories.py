"""
Persistence contracts for the categorization engine

The engine only talks to these Protocols. SQL implementations live in
ledgerlens.common.*_repository; tests use in-memory doubles.
"""
from datetime import date, datetime
from typing import List, Optional, Protocol

from ledgerlens.domain.categorization.schemas import (
    CanaryTestResult,
    CategorizationResult,
    CategoryOscillation,
    Correction,
    EmbeddingMatch,
    LabeledTransaction,
    RuleType,
    RuleVersion,
    StabilitySnapshot,
    VendorEmbedding,
)


class RuleVersionRepository(Protocol):
    async def list_versions(
        self, org_id: Optional[str], rule_type: RuleType, rule_identifier: str
    ) -> List[RuleVersion]:
        """All versions of one identifier, oldest first."""

    async def get(self, version_id: str) -> Optional[RuleVersion]:
        ...

    async def insert(self, version: RuleVersion) -> RuleVersion:
        ...

    async def activate_exclusive(
        self, version_id: str, changed_by: Optional[str], reason: Optional[str]
    ) -> RuleVersion:
        """
        Atomically activate one version and deactivate its siblings.

        Raises:
            ConcurrentRuleUpdateError: the active flag changed underneath us
        """

    async def list_active(self, org_id: str, rule_type: Optional[RuleType] = None) -> List[RuleVersion]:
        """Active versions for the org plus global (org_id NULL) ones."""

    async def save_canary_result(self, result: CanaryTestResult) -> CanaryTestResult:
        ...

    async def latest_canary_result(self, rule_version_id: str) -> Optional[CanaryTestResult]:
        ...

    async def mark_canary_promoted(self, canary_id: str) -> None:
        ...

    async def versions_created_since(self, org_id: str, since: datetime) -> List[RuleVersion]:
        ...


class VendorEmbeddingRepository(Protocol):
    async def upsert(self, embedding: VendorEmbedding) -> VendorEmbedding:
        """Insert, or overwrite vector/category/confidence and increment transaction_count."""

    async def list_eligible(self, org_id: str, min_transaction_count: int) -> List[VendorEmbedding]:
        ...

    async def record_match(self, match: EmbeddingMatch) -> None:
        ...

    async def list_matches(self, org_id: str, since: datetime, until: datetime) -> List[EmbeddingMatch]:
        ...

    async def upsert_snapshot(self, snapshot: StabilitySnapshot) -> None:
        """Keyed by (org_id, snapshot_date, vendor)."""

    async def list_snapshots(self, org_id: str, vendor: str, since: date) -> List[StabilitySnapshot]:
        """Newest first."""


class OscillationRepository(Protocol):
    async def add_correction(self, correction: Correction) -> None:
        ...

    async def list_corrections(self, org_id: str, transaction_id: str) -> List[Correction]:
        """Oldest first."""

    async def upsert_oscillation(self, oscillation: CategoryOscillation) -> CategoryOscillation:
        """Keyed by (org_id, transaction_id) for unresolved entries."""

    async def get(self, oscillation_id: str) -> Optional[CategoryOscillation]:
        ...

    async def get_for_transaction(self, org_id: str, transaction_id: str) -> Optional[CategoryOscillation]:
        ...

    async def list_unresolved(self, org_id: str, limit: int) -> List[CategoryOscillation]:
        ...

    async def save(self, oscillation: CategoryOscillation) -> CategoryOscillation:
        ...

    async def unresolved_transaction_ids(self, org_id: str) -> List[str]:
        ...


class TransactionRepository(Protocol):
    async def labeled_sample(self, org_id: str, size: int) -> List[LabeledTransaction]:
        """Most recent reviewed transactions with their confirmed category."""

    async def write_categorization(self, org_id: str, result: CategorizationResult) -> None:
        ...
