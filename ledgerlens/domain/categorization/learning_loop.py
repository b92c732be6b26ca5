"""
Rule governance and oscillation tracking

Rule versions move through created -> (canary) -> active -> rolled back.
Manual rules activate on creation; learned and imported rules need a passing
canary test before promotion. Exactly one version per
(org_id, rule_type, rule_identifier) is active at a time: writes are
serialized by an in-process keyed lock and the repository's compare-and-swap.

Transactions whose category keeps changing are flagged as oscillating and kept
out of canary samples and training until someone resolves them.
"""
import asyncio
from collections import defaultdict
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

import structlog

from ledgerlens.domain.categorization.config import CanaryConfig
from ledgerlens.domain.categorization.exceptions import CanaryTestError, NotFoundError, RuleGovernanceError, TaxonomyError
from ledgerlens.domain.categorization.repositories import (
    OscillationRepository,
    RuleVersionRepository,
    TransactionRepository,
)
from ledgerlens.domain.categorization.rule_engine import RuleEngine, rule_version_matches
from ledgerlens.domain.categorization.schemas import (
    CanaryTestResult,
    CategoryOscillation,
    Correction,
    OscillationEntry,
    RuleOscillation,
    RuleSource,
    RuleType,
    RuleVersion,
)
from ledgerlens.domain.categorization.taxonomy import Taxonomy, taxonomy as default_taxonomy

logger = structlog.get_logger()

DEFAULT_OSCILLATION_THRESHOLD = 2
DEFAULT_RULE_OSCILLATION_THRESHOLD = 3
DEFAULT_RULE_OSCILLATION_WINDOW_DAYS = 30

RuleKey = Tuple[Optional[str], RuleType, str]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _ratio(numerator: int, denominator: int) -> float:
    return numerator / denominator if denominator else 0.0


def count_reassignments(corrections: List[Correction]) -> int:
    """Number of corrections that moved the transaction to a different category."""
    count = 0
    previous = None
    for correction in corrections:
        if correction.category_id != previous:
            count += 1
        previous = correction.category_id
    return count


class LearningLoop:
    """
    Versioned rule lifecycle plus oscillation detection.

    Usage:
        loop = LearningLoop(rule_repo, oscillation_repo, transaction_repo)
        version = await loop.create_rule_version(org_id, RuleType.VENDOR, "shipbob", category_id, 0.9, RuleSource.LEARNED)
        result = await loop.run_canary_test(org_id, version.id)
        if result.passed_threshold:
            await loop.promote_rule_version(version.id, promoted_by="ops@example.com")
    """

    def __init__(
        self,
        rule_repository: RuleVersionRepository,
        oscillation_repository: OscillationRepository,
        transaction_repository: Optional[TransactionRepository] = None,
        rule_engine: Optional[RuleEngine] = None,
        taxonomy: Taxonomy = None,
        canary_config: CanaryConfig = None,
    ):
        self.rules = rule_repository
        self.oscillations = oscillation_repository
        self.transactions = transaction_repository
        self.rule_engine = rule_engine
        self.taxonomy = taxonomy or default_taxonomy
        self.canary_config = canary_config or CanaryConfig()
        self._locks: Dict[RuleKey, asyncio.Lock] = defaultdict(asyncio.Lock)

    def _lock_for(self, version: RuleVersion) -> asyncio.Lock:
        return self._locks[(version.org_id, version.rule_type, version.rule_identifier)]

    async def _require_version(self, rule_version_id: str) -> RuleVersion:
        version = await self.rules.get(rule_version_id)
        if version is None:
            raise NotFoundError(f"Rule version {rule_version_id} not found")
        return version

    async def _refresh_rules(self, org_id: Optional[str]) -> None:
        if self.rule_engine is not None:
            await self.rule_engine.refresh_rules(org_id)

    # ---- Rule versions ------------------------------------------------------

    async def create_rule_version(
        self,
        org_id: Optional[str],
        rule_type: RuleType,
        rule_identifier: str,
        category_id: str,
        confidence: float,
        source: RuleSource,
        metadata: Dict[str, Any] = None,
        created_by: Optional[str] = None,
        parent_version_id: Optional[str] = None,
    ) -> RuleVersion:
        """
        Create the next version of a rule.

        The version number is one past the highest existing version for the
        identifier. The parent defaults to the currently active version so a
        later rollback has somewhere to go. Manual rules become active at once.

        Raises:
            TaxonomyError: category_id is not part of the taxonomy
            ConcurrentRuleUpdateError: a concurrent activation won the race
        """
        if self.taxonomy.get_by_id(category_id) is None:
            raise TaxonomyError(f"Unknown category id {category_id}")
        rule_identifier = rule_identifier.strip()
        if not rule_identifier:
            raise RuleGovernanceError("rule_identifier must not be empty")

        key = (org_id, RuleType(rule_type), rule_identifier)
        async with self._locks[key]:
            existing = await self.rules.list_versions(org_id, rule_type, rule_identifier)
            next_version = max((v.version for v in existing), default=0) + 1
            if parent_version_id is None:
                active = next((v for v in existing if v.is_active), None)
                parent_version_id = active.id if active else None

            version = await self.rules.insert(RuleVersion(
                org_id=org_id,
                rule_type=rule_type,
                rule_identifier=rule_identifier,
                category_id=category_id,
                confidence=confidence,
                version=next_version,
                source=source,
                parent_version_id=parent_version_id,
                metadata=metadata or {},
                created_by=created_by,
                is_active=False,
            ))

            if source == RuleSource.MANUAL:
                version = await self.rules.activate_exclusive(version.id, created_by, "Replaced by manual rule")

        logger.info(
            "rule_version_created",
            rule_version_id=version.id,
            org_id=org_id,
            rule_type=version.rule_type.value,
            rule_identifier=rule_identifier,
            version=version.version,
            source=version.source.value,
            is_active=version.is_active,
        )
        if version.is_active:
            await self._refresh_rules(org_id)
        return version

    async def run_canary_test(
        self,
        org_id: str,
        rule_version_id: str,
        config: CanaryConfig = None,
    ) -> CanaryTestResult:
        """
        Replay a rule version against recently reviewed transactions.

        A firing rule that agrees with the reviewed category is a true
        positive, a firing rule that disagrees a false positive; a silent rule
        on a transaction of its category is a false negative.

        Args:
            org_id: Organization whose labeled data is replayed
            rule_version_id: Candidate rule version
            config: Sample size and pass thresholds

        Returns:
            Persisted CanaryTestResult

        Raises:
            NotFoundError: unknown rule version
            CanaryTestError: no labeled sample available
        """
        config = config or self.canary_config
        version = await self._require_version(rule_version_id)
        if self.transactions is None:
            raise CanaryTestError("No transaction repository configured for canary testing")

        labeled = await self.transactions.labeled_sample(org_id, config.test_set_size)
        oscillating = set(await self.oscillations.unresolved_transaction_ids(org_id))
        sample = [item for item in labeled if item.transaction.id not in oscillating]
        excluded = len(labeled) - len(sample)

        if not sample:
            raise CanaryTestError(f"No labeled transactions available for org {org_id}")

        tp = fp = fn = tn = 0
        for item in sample:
            fires = rule_version_matches(version, item.transaction)
            correct = item.category_id == version.category_id
            if fires and correct:
                tp += 1
            elif fires:
                fp += 1
            elif correct:
                fn += 1
            else:
                tn += 1

        size = len(sample)
        accuracy = _ratio(tp + tn, size)
        precision = _ratio(tp, tp + fp)
        recall = _ratio(tp, tp + fn)
        f1 = _ratio(2 * precision * recall, precision + recall) if precision + recall else 0.0

        below_minimum = size < config.min_sample_size
        passed = (
            not below_minimum
            and accuracy >= config.accuracy_threshold
            and precision >= config.precision_threshold
        )

        result = await self.rules.save_canary_result(CanaryTestResult(
            org_id=org_id,
            rule_version_id=rule_version_id,
            test_date=date.today(),
            test_set_size=size,
            true_positives=tp,
            false_positives=fp,
            false_negatives=fn,
            true_negatives=tn,
            accuracy=accuracy,
            precision=precision,
            recall=recall,
            f1_score=f1,
            passed_threshold=passed,
            metadata={
                "accuracy_threshold": config.accuracy_threshold,
                "precision_threshold": config.precision_threshold,
                "min_sample_size": config.min_sample_size,
                "sample_below_minimum": below_minimum,
                "excluded_oscillating": excluded,
            },
        ))

        logger.info(
            "canary_test_complete",
            org_id=org_id,
            rule_version_id=rule_version_id,
            test_set_size=size,
            accuracy=round(accuracy, 3),
            precision=round(precision, 3),
            recall=round(recall, 3),
            passed=passed,
        )
        return result

    async def promote_rule_version(self, rule_version_id: str, promoted_by: Optional[str] = None) -> RuleVersion:
        """
        Activate a rule version whose latest canary test passed.

        Raises:
            NotFoundError: unknown rule version
            RuleGovernanceError: no passing canary test
            ConcurrentRuleUpdateError: the active flag changed underneath us
        """
        version = await self._require_version(rule_version_id)

        async with self._lock_for(version):
            canary = await self.rules.latest_canary_result(rule_version_id)
            if canary is None or not canary.passed_threshold:
                raise RuleGovernanceError(
                    "Cannot promote rule: canary test not passed. Run canary test first and ensure it passes."
                )
            activated = await self.rules.activate_exclusive(rule_version_id, promoted_by, "Replaced by newer version")
            await self.rules.mark_canary_promoted(canary.id)

        logger.info(
            "rule_version_promoted",
            rule_version_id=rule_version_id,
            org_id=version.org_id,
            rule_identifier=version.rule_identifier,
            version=version.version,
            promoted_by=promoted_by,
        )
        await self._refresh_rules(version.org_id)
        return activated

    async def rollback_rule_version(
        self,
        rule_version_id: str,
        reason: str = "Manual rollback",
        rolled_back_by: Optional[str] = None,
    ) -> bool:
        """
        Reactivate a version's parent, undoing that version's promotion.

        Returns:
            False when the version has no parent to return to

        Raises:
            RuleGovernanceError: the version is not the live one
        """
        version = await self._require_version(rule_version_id)
        if version.parent_version_id is None:
            logger.warning("rule_rollback_no_parent", rule_version_id=rule_version_id)
            return False

        async with self._lock_for(version):
            version = await self._require_version(rule_version_id)
            if not version.is_active:
                raise RuleGovernanceError(
                    f"Cannot roll back rule version {rule_version_id}: it is not the active version"
                )
            await self.rules.activate_exclusive(version.parent_version_id, rolled_back_by, reason)

        logger.info(
            "rule_version_rolled_back",
            rule_version_id=rule_version_id,
            parent_version_id=version.parent_version_id,
            reason=reason,
            rolled_back_by=rolled_back_by,
        )
        await self._refresh_rules(version.org_id)
        return True

    async def get_active_rule_versions(self, org_id: str, rule_type: Optional[RuleType] = None) -> List[RuleVersion]:
        return await self.rules.list_active(org_id, rule_type)

    async def detect_rule_oscillations(
        self,
        org_id: str,
        threshold: int = DEFAULT_RULE_OSCILLATION_THRESHOLD,
        window_days: int = DEFAULT_RULE_OSCILLATION_WINDOW_DAYS,
    ) -> List[RuleOscillation]:
        """Rule identifiers that gained `threshold` or more versions within the window."""
        since = _utcnow() - timedelta(days=window_days)
        grouped: Dict[Tuple[RuleType, str], List[RuleVersion]] = defaultdict(list)
        for version in await self.rules.versions_created_since(org_id, since):
            grouped[(version.rule_type, version.rule_identifier)].append(version)

        flagged = []
        for (rule_type, identifier), versions in grouped.items():
            if len(versions) < threshold:
                continue
            versions.sort(key=lambda v: v.version)
            flagged.append(RuleOscillation(
                rule_type=rule_type,
                rule_identifier=identifier,
                version_count=len(versions),
                category_ids=[v.category_id for v in versions],
            ))

        if flagged:
            logger.warning(
                "rule_oscillations_detected",
                org_id=org_id,
                rules=[f"{o.rule_type.value}:{o.rule_identifier}" for o in flagged],
            )
        return flagged

    # ---- Transaction oscillations -------------------------------------------

    async def record_correction(
        self,
        org_id: str,
        transaction_id: str,
        category_id: str,
        changed_by: Optional[str] = None,
        threshold: int = DEFAULT_OSCILLATION_THRESHOLD,
    ) -> Optional[CategoryOscillation]:
        """Store a manual recategorization, then check the transaction for oscillation."""
        await self.oscillations.add_correction(Correction(
            org_id=org_id,
            transaction_id=transaction_id,
            category_id=category_id,
            changed_by=changed_by,
        ))
        return await self.detect_oscillation(org_id, transaction_id, threshold)

    async def detect_oscillation(
        self,
        org_id: str,
        transaction_id: str,
        threshold: int = DEFAULT_OSCILLATION_THRESHOLD,
    ) -> Optional[CategoryOscillation]:
        """
        Flag a transaction reassigned across categories `threshold` or more times.

        Returns:
            The unresolved oscillation, or None when the history is stable
        """
        corrections = await self.oscillations.list_corrections(org_id, transaction_id)
        reassignments = count_reassignments(corrections)
        if reassignments < threshold:
            return None

        existing = await self.oscillations.get_for_transaction(org_id, transaction_id)
        sequence = [
            OscillationEntry(category_id=c.category_id, changed_at=c.changed_at, changed_by=c.changed_by)
            for c in corrections
        ]
        now = _utcnow()
        if existing is not None and not existing.is_resolved:
            oscillation = existing.model_copy(update={
                "oscillation_sequence": sequence,
                "oscillation_count": reassignments,
                "last_detected_at": now,
            })
        else:
            oscillation = CategoryOscillation(
                org_id=org_id,
                transaction_id=transaction_id,
                oscillation_sequence=sequence,
                oscillation_count=reassignments,
                first_detected_at=now,
                last_detected_at=now,
            )

        oscillation = await self.oscillations.upsert_oscillation(oscillation)
        logger.warning(
            "category_oscillation_detected",
            org_id=org_id,
            transaction_id=transaction_id,
            oscillation_count=reassignments,
        )
        return oscillation

    async def get_unresolved_oscillations(self, org_id: str, limit: int = 50) -> List[CategoryOscillation]:
        return await self.oscillations.list_unresolved(org_id, limit)

    async def resolve_oscillation(
        self,
        oscillation_id: str,
        resolution_category_id: str,
        resolved_by: Optional[str] = None,
    ) -> CategoryOscillation:
        oscillation = await self.oscillations.get(oscillation_id)
        if oscillation is None:
            raise NotFoundError(f"Oscillation {oscillation_id} not found")
        if self.taxonomy.get_by_id(resolution_category_id) is None:
            raise TaxonomyError(f"Unknown category id {resolution_category_id}")

        resolved = await self.oscillations.save(oscillation.model_copy(update={
            "is_resolved": True,
            "resolution_category_id": resolution_category_id,
            "resolved_at": _utcnow(),
            "resolved_by": resolved_by,
        }))
        logger.info(
            "category_oscillation_resolved",
            oscillation_id=oscillation_id,
            transaction_id=oscillation.transaction_id,
            resolution_category_id=resolution_category_id,
        )
        return resolved

    async def is_eligible_for_training(self, org_id: str, transaction_id: str) -> bool:
        """Oscillating transactions stay out of training until resolved."""
        oscillation = await self.oscillations.get_for_transaction(org_id, transaction_id)
        return oscillation is None or oscillation.is_resolved
