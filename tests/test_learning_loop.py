from __future__ import annotations

import pytest

from ledgerlens.domain.categorization.config import CanaryConfig
from ledgerlens.domain.categorization.exceptions import (
    CanaryTestError,
    NotFoundError,
    RuleGovernanceError,
    TaxonomyError,
)
from ledgerlens.domain.categorization.learning_loop import LearningLoop, count_reassignments
from ledgerlens.domain.categorization.rule_engine import RuleEngine
from ledgerlens.domain.categorization.schemas import (
    CategoryOscillation,
    Correction,
    LabeledTransaction,
    RuleSource,
    RuleType,
)
from tests.helpers.memory_repositories import ORG_ID, InMemoryTransactionRepository


# ---- Helpers ----


SMALL_SAMPLE = CanaryConfig(min_sample_size=5)


@pytest.fixture
def loop(rule_repo, oscillation_repo, transaction_repo):
    return LearningLoop(rule_repo, oscillation_repo, transaction_repo, canary_config=SMALL_SAMPLE)


def _labeled(make_tx, cat_id, rows):
    return [
        LabeledTransaction(transaction=make_tx(description, merchant_name=merchant), category_id=cat_id(slug))
        for merchant, description, slug in rows
    ]


def _payroll_sample(make_tx, cat_id):
    """Gusto fires 4 times (3 right, 1 wrong) and misses ADP: accuracy 0.8, precision 0.75."""
    return _labeled(make_tx, cat_id, [
        ("Gusto", "GUSTO PAYROLL", "labor"),
        ("Gusto", "GUSTO PAYROLL", "labor"),
        ("Gusto", "GUSTO TAX", "labor"),
        ("Gusto", "GUSTO GIFT CARD", "marketing_ads"),
        ("ADP", "ADP PAYROLL", "labor"),
        ("Meta", "FACEBK ADS", "marketing_ads"),
        ("Adobe", "ADOBE CC", "software_subscriptions"),
        ("ShipBob", "SHIPBOB", "operations_logistics"),
        ("Uline", "ULINE BOXES", "packaging"),
        ("Slack", "SLACK", "software_subscriptions"),
    ])


async def _learned(loop, cat_id, identifier="gusto", slug="labor", **kwargs):
    return await loop.create_rule_version(
        ORG_ID, RuleType.VENDOR, identifier, cat_id(slug), 0.9, RuleSource.LEARNED, **kwargs
    )


async def _manual(loop, cat_id, identifier="gusto", slug="labor"):
    return await loop.create_rule_version(
        ORG_ID, RuleType.VENDOR, identifier, cat_id(slug), 0.95, RuleSource.MANUAL, created_by="ops@example.com"
    )


# ---- Rule versions ----


async def test_manual_rules_activate_exclusively(loop, rule_repo, cat_id):
    v1 = await _manual(loop, cat_id)
    assert v1.version == 1
    assert v1.is_active
    assert v1.parent_version_id is None

    v2 = await _manual(loop, cat_id, slug="general_administrative")
    assert v2.version == 2
    assert v2.parent_version_id == v1.id

    active = rule_repo.active_for(ORG_ID, RuleType.VENDOR, "gusto")
    assert [v.id for v in active] == [v2.id]
    replaced = rule_repo.versions[v1.id]
    assert replaced.deactivated_by == "ops@example.com"
    assert replaced.deactivation_reason == "Replaced by manual rule"


async def test_learned_rules_wait_for_promotion(loop, rule_repo, cat_id):
    v1 = await _manual(loop, cat_id)
    v2 = await _learned(loop, cat_id, identifier="  gusto ")

    assert v2.rule_identifier == "gusto"
    assert v2.version == 2
    assert not v2.is_active
    assert v2.parent_version_id == v1.id
    assert [v.id for v in rule_repo.active_for(ORG_ID, RuleType.VENDOR, "gusto")] == [v1.id]


async def test_identifiers_are_versioned_independently(loop, cat_id):
    await _learned(loop, cat_id)
    other = await _learned(loop, cat_id, identifier="adp")
    assert other.version == 1


async def test_create_rejects_unknown_category(loop):
    with pytest.raises(TaxonomyError):
        await loop.create_rule_version(ORG_ID, RuleType.MCC, "5812", "nope", 0.9, RuleSource.MANUAL)


async def test_create_rejects_blank_identifier(loop, cat_id):
    with pytest.raises(RuleGovernanceError):
        await _learned(loop, cat_id, identifier="   ")


async def test_manual_rule_refreshes_the_engine(rule_repo, oscillation_repo, make_tx, cat_id):
    engine = RuleEngine(rule_repository=rule_repo)
    loop = LearningLoop(rule_repo, oscillation_repo, rule_engine=engine)
    tx = make_tx("GUSTO PAYROLL", merchant_name="Gusto")
    assert await engine.rule_version_signals(tx) == []

    await _manual(loop, cat_id)
    signals = await engine.rule_version_signals(tx)
    assert [s.evidence_key for s in signals] == ["rule:vendor:gusto:v1"]


# ---- Canary ----


async def test_canary_metrics(loop, rule_repo, transaction_repo, make_tx, cat_id):
    transaction_repo.labeled.extend(_payroll_sample(make_tx, cat_id))
    version = await _learned(loop, cat_id)

    result = await loop.run_canary_test(ORG_ID, version.id)
    assert (result.true_positives, result.false_positives, result.false_negatives, result.true_negatives) == (3, 1, 1, 5)
    assert result.test_set_size == 10
    assert result.accuracy == pytest.approx(0.8)
    assert result.precision == pytest.approx(0.75)
    assert result.recall == pytest.approx(0.75)
    assert result.f1_score == pytest.approx(0.75)
    assert result.passed_threshold
    assert rule_repo.canary_results == [result]


async def test_canary_fails_on_low_precision(loop, transaction_repo, make_tx, cat_id):
    transaction_repo.labeled.extend(_payroll_sample(make_tx, cat_id))
    version = await _learned(loop, cat_id, slug="marketing_ads")

    result = await loop.run_canary_test(ORG_ID, version.id)
    assert result.true_positives == 1
    assert result.false_positives == 3
    assert result.precision == pytest.approx(0.25)
    assert not result.passed_threshold


async def test_canary_below_minimum_sample_never_passes(loop, transaction_repo, make_tx, cat_id):
    transaction_repo.labeled.extend(_payroll_sample(make_tx, cat_id))
    version = await _learned(loop, cat_id)

    result = await loop.run_canary_test(ORG_ID, version.id, config=CanaryConfig(min_sample_size=20))
    assert result.accuracy == pytest.approx(0.8)
    assert not result.passed_threshold
    assert result.metadata["sample_below_minimum"] is True


async def test_canary_skips_oscillating_transactions(loop, transaction_repo, oscillation_repo, make_tx, cat_id):
    sample = _payroll_sample(make_tx, cat_id)
    transaction_repo.labeled.extend(sample)
    wrong = sample[3].transaction.id
    await oscillation_repo.upsert_oscillation(CategoryOscillation(org_id=ORG_ID, transaction_id=wrong))
    version = await _learned(loop, cat_id)

    result = await loop.run_canary_test(ORG_ID, version.id)
    assert result.test_set_size == 9
    assert result.false_positives == 0
    assert result.precision == pytest.approx(1.0)
    assert result.metadata["excluded_oscillating"] == 1


async def test_canary_only_samples_the_org(loop, transaction_repo, make_tx, cat_id):
    transaction_repo.labeled.append(
        LabeledTransaction(transaction=make_tx("GUSTO", merchant_name="Gusto", org_id="other_org"), category_id=cat_id("labor"))
    )
    version = await _learned(loop, cat_id)
    with pytest.raises(CanaryTestError):
        await loop.run_canary_test(ORG_ID, version.id)


async def test_canary_needs_transactions(rule_repo, oscillation_repo, cat_id):
    loop = LearningLoop(rule_repo, oscillation_repo)
    version = await _learned(loop, cat_id)
    with pytest.raises(CanaryTestError):
        await loop.run_canary_test(ORG_ID, version.id)


async def test_canary_unknown_version(loop):
    with pytest.raises(NotFoundError):
        await loop.run_canary_test(ORG_ID, "missing")


# ---- Promotion and rollback ----


async def test_promotion_requires_a_canary(loop, cat_id):
    version = await _learned(loop, cat_id)
    with pytest.raises(RuleGovernanceError):
        await loop.promote_rule_version(version.id)


async def test_promotion_requires_a_passing_canary(loop, transaction_repo, make_tx, cat_id):
    transaction_repo.labeled.extend(_payroll_sample(make_tx, cat_id))
    version = await _learned(loop, cat_id, slug="marketing_ads")
    await loop.run_canary_test(ORG_ID, version.id)
    with pytest.raises(RuleGovernanceError):
        await loop.promote_rule_version(version.id)


async def test_promote_then_rollback(loop, rule_repo, transaction_repo, make_tx, cat_id):
    transaction_repo.labeled.extend(_payroll_sample(make_tx, cat_id))
    v1 = await _manual(loop, cat_id, slug="general_administrative")
    v2 = await _learned(loop, cat_id)
    canary = await loop.run_canary_test(ORG_ID, v2.id)

    promoted = await loop.promote_rule_version(v2.id, promoted_by="ops@example.com")
    assert promoted.is_active
    assert not rule_repo.versions[v1.id].is_active
    assert rule_repo.versions[v1.id].deactivation_reason == "Replaced by newer version"
    assert (await rule_repo.latest_canary_result(v2.id)).promoted_to_production
    assert canary.id == (await rule_repo.latest_canary_result(v2.id)).id

    assert await loop.rollback_rule_version(v2.id, reason="bad batch", rolled_back_by="ops@example.com")
    active = rule_repo.active_for(ORG_ID, RuleType.VENDOR, "gusto")
    assert [v.id for v in active] == [v1.id]
    assert rule_repo.versions[v2.id].deactivation_reason == "bad batch"


async def test_rollback_without_parent(loop, rule_repo, cat_id):
    v1 = await _manual(loop, cat_id)
    assert await loop.rollback_rule_version(v1.id) is False
    assert rule_repo.versions[v1.id].is_active


async def test_rollback_of_superseded_version_keeps_live_rule(loop, rule_repo, cat_id):
    await _manual(loop, cat_id)
    v2 = await _manual(loop, cat_id, slug="general_administrative")
    v3 = await _manual(loop, cat_id, slug="marketing_ads")

    with pytest.raises(RuleGovernanceError):
        await loop.rollback_rule_version(v2.id)

    active = rule_repo.active_for(ORG_ID, RuleType.VENDOR, "gusto")
    assert [v.id for v in active] == [v3.id]


async def test_rollback_of_pending_version_is_rejected(loop, rule_repo, cat_id):
    v1 = await _manual(loop, cat_id)
    pending = await _learned(loop, cat_id, slug="general_administrative")
    assert pending.parent_version_id == v1.id

    with pytest.raises(RuleGovernanceError):
        await loop.rollback_rule_version(pending.id)
    assert rule_repo.versions[v1.id].is_active
    assert not rule_repo.versions[pending.id].is_active


async def test_promote_unknown_version(loop):
    with pytest.raises(NotFoundError):
        await loop.promote_rule_version("missing")


async def test_active_versions_include_global_rules(loop, cat_id):
    await _manual(loop, cat_id)
    await loop.create_rule_version(None, RuleType.KEYWORD, "payroll", cat_id("labor"), 0.8, RuleSource.MANUAL)
    active = await loop.get_active_rule_versions(ORG_ID)
    assert sorted(v.rule_identifier for v in active) == ["gusto", "payroll"]
    assert [v.rule_identifier for v in await loop.get_active_rule_versions(ORG_ID, RuleType.KEYWORD)] == ["payroll"]


async def test_rule_oscillations(loop, cat_id):
    for slug in ["labor", "general_administrative", "labor"]:
        await _learned(loop, cat_id, slug=slug)
    await _learned(loop, cat_id, identifier="adp")
    await _learned(loop, cat_id, identifier="adp", slug="general_administrative")

    flagged = await loop.detect_rule_oscillations(ORG_ID)
    assert len(flagged) == 1
    assert flagged[0].rule_identifier == "gusto"
    assert flagged[0].version_count == 3
    assert flagged[0].category_ids == [cat_id("labor"), cat_id("general_administrative"), cat_id("labor")]


# ---- Transaction oscillations ----


def test_count_reassignments(cat_id):
    def c(slug):
        return Correction(org_id=ORG_ID, transaction_id="tx", category_id=cat_id(slug))

    assert count_reassignments([]) == 0
    assert count_reassignments([c("labor"), c("labor")]) == 1
    assert count_reassignments([c("labor"), c("packaging"), c("labor")]) == 3


async def test_repeated_same_category_is_stable(loop, cat_id):
    assert await loop.record_correction(ORG_ID, "tx_9", cat_id("labor")) is None
    assert await loop.record_correction(ORG_ID, "tx_9", cat_id("labor")) is None
    assert await loop.is_eligible_for_training(ORG_ID, "tx_9")


async def test_oscillation_detected_and_updated(loop, oscillation_repo, cat_id):
    await loop.record_correction(ORG_ID, "tx_9", cat_id("labor"))
    first = await loop.record_correction(ORG_ID, "tx_9", cat_id("packaging"), changed_by="a@example.com")
    assert first is not None
    assert first.oscillation_count == 2
    assert [e.category_id for e in first.oscillation_sequence] == [cat_id("labor"), cat_id("packaging")]
    assert first.oscillation_sequence[1].changed_by == "a@example.com"

    second = await loop.record_correction(ORG_ID, "tx_9", cat_id("labor"))
    assert second.id == first.id
    assert second.oscillation_count == 3
    assert len(oscillation_repo.oscillations) == 1
    assert not await loop.is_eligible_for_training(ORG_ID, "tx_9")
    assert [o.id for o in await loop.get_unresolved_oscillations(ORG_ID)] == [first.id]


async def test_resolve_oscillation(loop, cat_id):
    await loop.record_correction(ORG_ID, "tx_9", cat_id("labor"))
    oscillation = await loop.record_correction(ORG_ID, "tx_9", cat_id("packaging"))

    resolved = await loop.resolve_oscillation(oscillation.id, cat_id("packaging"), resolved_by="lead@example.com")
    assert resolved.is_resolved
    assert resolved.resolution_category_id == cat_id("packaging")
    assert resolved.resolved_at is not None
    assert await loop.is_eligible_for_training(ORG_ID, "tx_9")
    assert await loop.get_unresolved_oscillations(ORG_ID) == []

    # A fresh flip after resolution opens a new record
    reopened = await loop.record_correction(ORG_ID, "tx_9", cat_id("labor"))
    assert reopened.id != oscillation.id
    assert not await loop.is_eligible_for_training(ORG_ID, "tx_9")


async def test_resolve_errors(loop, cat_id):
    with pytest.raises(NotFoundError):
        await loop.resolve_oscillation("missing", cat_id("labor"))

    await loop.record_correction(ORG_ID, "tx_9", cat_id("labor"))
    oscillation = await loop.record_correction(ORG_ID, "tx_9", cat_id("packaging"))
    with pytest.raises(TaxonomyError):
        await loop.resolve_oscillation(oscillation.id, "nope")


async def test_threshold_is_configurable(rule_repo, oscillation_repo, cat_id):
    loop = LearningLoop(rule_repo, oscillation_repo, InMemoryTransactionRepository())
    await loop.record_correction(ORG_ID, "tx_9", cat_id("labor"), threshold=3)
    assert await loop.record_correction(ORG_ID, "tx_9", cat_id("packaging"), threshold=3) is None
    assert await loop.record_correction(ORG_ID, "tx_9", cat_id("labor"), threshold=3) is not None
