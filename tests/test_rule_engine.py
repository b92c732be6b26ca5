from __future__ import annotations

import pytest

from ledgerlens.domain.categorization.embeddings import EmbeddingMatcher
from ledgerlens.domain.categorization.exceptions import EmbeddingDimensionError, EmbeddingServiceError
from ledgerlens.domain.categorization.rule_engine import RuleEngine, rule_version_matches
from ledgerlens.domain.categorization.schemas import (
    EmbeddingSearchHit,
    RuleSource,
    RuleType,
    RuleVersion,
    SignalSource,
    SignalStrength,
    VendorEmbedding,
)
from tests.helpers.embedding_stub import StubEmbeddingClient, rotated
from tests.helpers.memory_repositories import ORG_ID


# ---- Helpers ----


def _rule(rule_type, identifier, category_id, org_id=ORG_ID, active=True, version=1, confidence=0.9):
    return RuleVersion(
        org_id=org_id,
        rule_type=rule_type,
        rule_identifier=identifier,
        category_id=category_id,
        confidence=confidence,
        version=version,
        source=RuleSource.MANUAL,
        is_active=active,
    )


def _hit(vendor, category_id, similarity, confidence=0.9):
    return EmbeddingSearchHit(
        vendor=vendor,
        category_id=category_id,
        similarity=similarity,
        confidence=confidence,
        transaction_count=5,
    )


# ---- Static tables ----


async def test_mcc_only_transaction(make_tx):
    signals = await RuleEngine().collect_signals(make_tx("JOE'S DINER #12", mcc="5812", merchant_name="Joe's Diner"))
    assert len(signals) == 1
    signal = signals[0]
    assert signal.source == SignalSource.MCC
    assert signal.strength == SignalStrength.EXACT
    assert signal.confidence == pytest.approx(0.90)
    assert signal.evidence_key == "mcc:5812"


def test_family_mcc_is_strong(make_tx):
    signal = RuleEngine().mcc_signals(make_tx(mcc="5814"))[0]
    assert signal.strength == SignalStrength.STRONG


def test_vendor_signal(make_tx, cat_id):
    signal = RuleEngine().vendor_signals(make_tx(merchant_name="SHIPBOB INC"))[0]
    assert signal.source == SignalSource.VENDOR
    assert signal.category_id == cat_id("operations_logistics")
    assert signal.evidence_key == "vendor:shipbob"


def test_keywords_read_the_description_only(make_tx, cat_id):
    engine = RuleEngine()
    assert engine.keyword_signals(make_tx("PAYOUT", merchant_name="x")) != []
    assert engine.keyword_signals(make_tx("", merchant_name="Payout Co")) == []

    signal = engine.keyword_signals(make_tx("STRIPE PAYOUT 01/15"))[0]
    assert signal.category_id == cat_id("payouts_clearing")
    assert signal.strength == SignalStrength.MEDIUM
    assert signal.evidence_key == "keyword:payout"


# ---- Rule versions ----


@pytest.mark.parametrize(
    "rule_type,identifier,kwargs,expected",
    [
        (RuleType.MCC, "5812", {"mcc": " 5812"}, True),
        (RuleType.MCC, "5812", {"mcc": None}, False),
        (RuleType.VENDOR, "Blue Bottle", {"merchant_name": "BLUE BOTTLE COFFEE #4"}, True),
        (RuleType.VENDOR, "Blue Bottle", {"merchant_name": "Bottle Shop"}, False),
        (RuleType.KEYWORD, "sample box", {"description": "Sample Box order"}, True),
        (RuleType.KEYWORD, "sample box", {"description": "boxes"}, False),
        (RuleType.EMBEDDING, "adobe", {"merchant_name": "adobe"}, False),
    ],
)
def test_rule_version_matches(make_tx, cat_id, rule_type, identifier, kwargs, expected):
    version = _rule(rule_type, identifier, cat_id("labor"))
    assert rule_version_matches(version, make_tx(**kwargs)) is expected


async def test_active_rule_versions_become_signals(make_tx, rule_repo, cat_id):
    await rule_repo.insert(_rule(RuleType.VENDOR, "blue bottle", cat_id("meals_dining"), version=2))
    await rule_repo.insert(_rule(RuleType.VENDOR, "blue bottle", cat_id("labor"), active=False))
    await rule_repo.insert(_rule(RuleType.KEYWORD, "sample box", cat_id("packaging"), org_id=None))
    await rule_repo.insert(_rule(RuleType.VENDOR, "blue bottle", cat_id("labor"), org_id="other_org"))
    engine = RuleEngine(rule_repository=rule_repo)

    tx = make_tx("Sample box", merchant_name="Blue Bottle Coffee")
    signals = await engine.rule_version_signals(tx)
    keys = sorted(s.evidence_key for s in signals)
    assert keys == ["rule:keyword:sample box:v1", "rule:vendor:blue bottle:v2"]

    vendor = next(s for s in signals if s.source == SignalSource.VENDOR)
    assert vendor.strength == SignalStrength.STRONG
    assert vendor.category_id == cat_id("meals_dining")
    assert vendor.rationale.startswith("org manual rule v2")


async def test_rule_versions_with_unknown_category_are_skipped(make_tx, rule_repo):
    await rule_repo.insert(_rule(RuleType.MCC, "5812", "not-a-category"))
    signals = await RuleEngine(rule_repository=rule_repo).rule_version_signals(make_tx(mcc="5812"))
    assert signals == []


async def test_rule_cache_refresh(make_tx, rule_repo, cat_id):
    engine = RuleEngine(rule_repository=rule_repo)
    tx = make_tx(mcc="9999")
    assert await engine.rule_version_signals(tx) == []

    await rule_repo.insert(_rule(RuleType.MCC, "9999", cat_id("labor")))
    # Still cached
    assert await engine.rule_version_signals(tx) == []

    await engine.refresh_rules(ORG_ID)
    assert len(await engine.rule_version_signals(tx)) == 1

    await rule_repo.insert(_rule(RuleType.KEYWORD, "widget", cat_id("packaging"), org_id=None))
    await engine.refresh_rules(None)
    assert len(await engine.rule_version_signals(make_tx("widget", mcc="9999"))) == 2


# ---- Embeddings ----


def test_embedding_signals_keep_best_hit_per_category(cat_id):
    software = cat_id("software_subscriptions")
    signals = RuleEngine().embedding_signals([
        _hit("adobe", software, 0.95),
        _hit("adobe stock", software, 0.80),
        _hit("canva", cat_id("marketing_ads"), 0.75),
    ])
    assert len(signals) == 2

    by_category = {s.category_id: s for s in signals}
    assert by_category[software].evidence_key == "embedding:adobe"
    assert by_category[software].strength == SignalStrength.MEDIUM
    assert by_category[software].confidence == pytest.approx(0.95 * 0.9)
    assert by_category[cat_id("marketing_ads")].strength == SignalStrength.WEAK


async def test_embedding_hits_use_merchant_name(make_tx, embedding_repo, cat_id):
    embedding_repo.embeddings[(ORG_ID, "adobe")] = VendorEmbedding(
        org_id=ORG_ID, vendor="adobe", embedding=rotated(0),
        category_id=cat_id("software_subscriptions"), confidence=0.9, transaction_count=4,
    )
    client = StubEmbeddingClient({"adobe systems": rotated(2)})
    engine = RuleEngine(embedding_matcher=EmbeddingMatcher(embedding_repo, client=client))

    signals, hits = await engine.collect(make_tx("ADOBE *SYSTEMS", merchant_name="Adobe Systems"))
    assert [h.vendor for h in hits] == ["adobe"]
    assert any(s.source == SignalSource.EMBEDDING for s in signals)


async def test_embeddings_can_be_skipped(make_tx, embedding_repo):
    client = StubEmbeddingClient({})
    engine = RuleEngine(embedding_matcher=EmbeddingMatcher(embedding_repo, client=client))
    _, hits = await engine.collect(make_tx(merchant_name="Adobe"), include_embeddings=False)
    assert hits == []
    assert client.calls == []


async def test_embeddings_without_client_are_silent(make_tx, embedding_repo):
    engine = RuleEngine(embedding_matcher=EmbeddingMatcher(embedding_repo))
    assert await engine.embedding_hits(make_tx(merchant_name="Adobe")) == []


# ---- Failure isolation ----


async def test_failing_source_is_skipped(make_tx, embedding_repo):
    client = StubEmbeddingClient({}, errors={"adobe": EmbeddingServiceError("down", status_code=503)})
    engine = RuleEngine(embedding_matcher=EmbeddingMatcher(embedding_repo, client=client))

    signals = await engine.collect_signals(make_tx("ADOBE CREATIVE", merchant_name="Adobe", mcc="7372"))
    assert {s.source for s in signals} == {SignalSource.MCC, SignalSource.VENDOR}


async def test_broken_rule_repository_is_skipped(make_tx, monkeypatch, rule_repo):
    async def boom(org_id, rule_type=None):
        raise RuntimeError("db down")

    monkeypatch.setattr(rule_repo, "list_active", boom)
    signals = await RuleEngine(rule_repository=rule_repo).collect_signals(make_tx(mcc="5812"))
    assert [s.source for s in signals] == [SignalSource.MCC]


async def test_broken_static_lookup_is_skipped(make_tx, monkeypatch):
    engine = RuleEngine()

    def boom(transaction):
        raise KeyError("mcc table")

    monkeypatch.setattr(engine, "mcc_signals", boom)
    signals = await engine.collect_signals(make_tx(merchant_name="SHIPBOB INC", mcc="5812"))
    assert [s.source for s in signals] == [SignalSource.VENDOR]


async def test_stored_vector_of_wrong_size_surfaces(make_tx, embedding_repo, cat_id):
    embedding_repo.embeddings[(ORG_ID, "adobe")] = VendorEmbedding(
        org_id=ORG_ID, vendor="adobe", embedding=[1.0, 0.0, 0.0],
        category_id=cat_id("software_subscriptions"), confidence=0.9, transaction_count=5,
    )
    client = StubEmbeddingClient({"adobe": rotated(0)})
    engine = RuleEngine(embedding_matcher=EmbeddingMatcher(embedding_repo, client=client))
    with pytest.raises(EmbeddingDimensionError):
        await engine.collect_signals(make_tx(merchant_name="Adobe"))


async def test_embedding_format_errors_surface(make_tx, embedding_repo):
    client = StubEmbeddingClient({"adobe": [1.0, 0.0]})
    engine = RuleEngine(embedding_matcher=EmbeddingMatcher(embedding_repo, client=client))
    with pytest.raises(EmbeddingDimensionError):
        await engine.collect_signals(make_tx(merchant_name="Adobe"))
