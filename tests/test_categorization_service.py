from __future__ import annotations

import pytest

from ledgerlens.domain.categorization.categorization_service import CategorizationService
from ledgerlens.domain.categorization.config import CategorizerConfig
from ledgerlens.domain.categorization.embeddings import EmbeddingMatcher
from ledgerlens.domain.categorization.exceptions import EmbeddingDimensionError
from ledgerlens.domain.categorization.guardrails import GuardrailProfile
from ledgerlens.domain.categorization.llm_fallback import GenerativeFallback
from ledgerlens.domain.categorization.rule_engine import RuleEngine
from ledgerlens.domain.categorization.schemas import DecisionSource, SignalSource, VendorEmbedding
from tests.helpers.embedding_stub import StubEmbeddingClient, rotated
from tests.helpers.llm_stub import StubTextGenerator, llm_json
from tests.helpers.memory_repositories import ORG_ID


# ---- Helpers ----


def _service(generator=None, rule_engine=None, transaction_repo=None):
    fallback = GenerativeFallback(generator, max_retries=1, backoff_base_seconds=0) if generator is not None else None
    return CategorizationService(
        rule_engine=rule_engine or RuleEngine(),
        fallback=fallback,
        transaction_repository=transaction_repo,
    )


def _learned_vendor(repo, vendor, vector, category_id, transaction_count=5):
    repo.embeddings[(ORG_ID, vendor)] = VendorEmbedding(
        org_id=ORG_ID,
        vendor=vendor,
        embedding=vector,
        category_id=category_id,
        confidence=0.9,
        transaction_count=transaction_count,
    )


# ---- Pass-1 ----


async def test_mcc_only_transaction_is_decided_by_rules(make_tx):
    generator = StubTextGenerator([llm_json("marketing_ads")])
    result = await _service(generator).categorize_transaction(
        make_tx("JOE'S DINER #12", mcc="5812")
    )

    assert result.category_slug == "meals_dining"
    assert result.confidence == pytest.approx(0.90)
    assert result.source == DecisionSource.PASS1
    assert not result.needs_review
    assert result.guardrails_applied == []
    assert generator.calls == 0
    assert any(line.startswith("dominant: mcc:mcc:5812") for line in result.rationale)


async def test_processor_payout_lands_in_clearing(make_tx, cat_id):
    tx = make_tx("STRIPE PAYOUT 01/15", amount_cents=523421, merchant_name="Stripe")
    result = await _service().categorize_transaction(tx)

    assert result.category_slug == "payouts_clearing"
    assert result.category_id == cat_id("payouts_clearing")
    assert result.confidence == pytest.approx(0.72)
    assert result.source == DecisionSource.PASS1
    assert result.needs_review


async def test_refund_money_in_is_redirected_by_guardrails(make_tx):
    tx = make_tx("REFUND", amount_cents=2500, mcc="5812")
    result = await _service().categorize_transaction(tx)

    assert result.category_slug == "refunds_contra"
    assert result.confidence == pytest.approx(0.5)
    assert result.guardrails_applied == ["revenue_directionality"]
    assert result.needs_review
    assert len(result.candidates) == 2


async def test_legacy_profile_uses_legacy_accounts(make_tx):
    tx = make_tx("SHOPIFY PAYOUT", amount_cents=10000, merchant_name="Shopify", mcc="5812")
    config = CategorizerConfig(guardrail_profile=GuardrailProfile.LEGACY, llm_enabled=False)
    result = await _service().categorize_transaction(tx, config)

    assert result.category_slug == "shopify_payouts_clearing"
    assert "payout_redirect" in result.guardrails_applied


# ---- Pass-2 ----


async def test_no_evidence_and_failing_model(make_tx):
    generator = StubTextGenerator(error=RuntimeError("overloaded"))
    result = await _service(generator).categorize_transaction(make_tx("ZXQW 123"))

    assert result.category_slug == "miscellaneous"
    assert result.confidence == pytest.approx(0.25)
    assert result.source == DecisionSource.LLM
    assert result.needs_review
    assert generator.calls == 2


async def test_empty_transaction_with_unhelpful_embeddings_and_failing_model(make_tx, embedding_repo, cat_id):
    # One vendor is dissimilar, the other has too few transactions to be eligible
    _learned_vendor(embedding_repo, "canva", rotated(90), cat_id("marketing_ads"))
    _learned_vendor(embedding_repo, "adobe", rotated(0), cat_id("software_subscriptions"), transaction_count=2)
    matcher = EmbeddingMatcher(embedding_repo, client=StubEmbeddingClient({}))
    assert await matcher.search(ORG_ID, rotated(0)) == []

    generator = StubTextGenerator(error=RuntimeError("overloaded"))
    service = _service(generator, rule_engine=RuleEngine(embedding_matcher=matcher))
    result = await service.categorize_transaction(make_tx())

    assert result.category_slug == "miscellaneous"
    assert 0.25 <= result.confidence <= 0.3
    assert result.source == DecisionSource.LLM
    assert result.needs_review


async def test_no_evidence_without_fallback(make_tx):
    result = await _service().categorize_transaction(make_tx("ZXQW 123"))

    assert result.category_id is None
    assert result.category_slug is None
    assert result.confidence is None
    assert result.needs_review
    assert result.source == DecisionSource.NONE
    assert "No categorization signals found" in result.rationale
    assert result.rationale[-1] == "No category survived; transaction needs review"


async def test_confident_model_replaces_weak_pass1(make_tx):
    generator = StubTextGenerator([llm_json("software_subscriptions", 0.99, {"billing_cycle": "monthly"})])
    result = await _service(generator).categorize_transaction(make_tx("CAMPAIGN"))

    assert result.category_slug == "software_subscriptions"
    assert result.source == DecisionSource.LLM
    assert result.confidence == pytest.approx(0.85)
    assert not result.needs_review
    assert result.signals[-1].source == SignalSource.LLM
    assert any(line.startswith("llm: software_subscriptions") for line in result.rationale)


async def test_weaker_model_answer_keeps_pass1(make_tx):
    generator = StubTextGenerator([llm_json("software_subscriptions", 0.9)])
    result = await _service(generator).categorize_transaction(make_tx("CAMPAIGN"))

    assert result.category_slug == "marketing_ads"
    assert result.source == DecisionSource.PASS1
    assert result.confidence == pytest.approx(0.72)
    assert result.attributes is None
    assert generator.calls == 1


async def test_model_answer_goes_through_guardrails(make_tx):
    generator = StubTextGenerator([llm_json("marketing_ads", 0.99)])
    result = await _service(generator).categorize_transaction(make_tx("ZXQW", amount_cents=5000))

    assert result.category_slug == "miscellaneous"
    assert result.source == DecisionSource.LLM
    assert "revenue_directionality" in result.guardrails_applied
    assert result.attributes is None
    assert result.needs_review


async def test_llm_disabled(make_tx):
    generator = StubTextGenerator([llm_json("marketing_ads", 0.99)])
    config = CategorizerConfig(llm_enabled=False)
    result = await _service(generator).categorize_transaction(make_tx("CAMPAIGN"), config)

    assert result.category_slug == "marketing_ads"
    assert generator.calls == 0


# ---- Embeddings and write-back ----


async def test_embedding_matches_are_tracked(make_tx, embedding_repo, transaction_repo, cat_id):
    _learned_vendor(embedding_repo, "adobe", rotated(0), cat_id("software_subscriptions"))
    _learned_vendor(embedding_repo, "canva", rotated(30), cat_id("marketing_ads"))
    client = StubEmbeddingClient({"adobe creative": rotated(1)})
    engine = RuleEngine(embedding_matcher=EmbeddingMatcher(embedding_repo, client=client))
    service = _service(rule_engine=engine, transaction_repo=transaction_repo)

    result = await service.categorize_transaction(make_tx("ADOBE CREATIVE", merchant_name="Adobe Creative"))

    assert result.category_slug == "software_subscriptions"
    contributed = {m.matched_vendor: m.contributed_to_decision for m in embedding_repo.matches}
    assert contributed == {"adobe": True, "canva": False}
    assert transaction_repo.written == [result]


async def test_match_tracking_can_be_disabled(make_tx, embedding_repo, cat_id):
    _learned_vendor(embedding_repo, "adobe", rotated(0), cat_id("software_subscriptions"))
    client = StubEmbeddingClient({"adobe": rotated(0)})
    engine = RuleEngine(embedding_matcher=EmbeddingMatcher(embedding_repo, client=client))
    config = CategorizerConfig(track_embedding_matches=False, llm_enabled=False)

    await _service(rule_engine=engine).categorize_transaction(make_tx(merchant_name="Adobe"), config)
    assert embedding_repo.matches == []


async def test_embedding_format_errors_propagate(make_tx, embedding_repo):
    client = StubEmbeddingClient({"broken": [1.0]})
    engine = RuleEngine(embedding_matcher=EmbeddingMatcher(embedding_repo, client=client))
    with pytest.raises(EmbeddingDimensionError):
        await _service(rule_engine=engine).categorize_transaction(make_tx(merchant_name="Broken"))


async def test_stored_vector_of_wrong_size_propagates(make_tx, embedding_repo, cat_id):
    _learned_vendor(embedding_repo, "adobe", [1.0, 0.0, 0.0], cat_id("software_subscriptions"))
    client = StubEmbeddingClient({"adobe": rotated(0)})
    engine = RuleEngine(embedding_matcher=EmbeddingMatcher(embedding_repo, client=client))
    with pytest.raises(EmbeddingDimensionError):
        await _service(rule_engine=engine).categorize_transaction(make_tx(merchant_name="Adobe"))


# ---- Batch ----


async def test_batch_summary_counts_failures(make_tx, embedding_repo):
    client = StubEmbeddingClient({"broken": [1.0]})
    engine = RuleEngine(embedding_matcher=EmbeddingMatcher(embedding_repo, client=client))
    service = _service(rule_engine=engine)

    summary = await service.categorize_batch([
        make_tx(mcc="5812"),
        make_tx(),
        make_tx(merchant_name="Broken"),
    ])

    assert summary.total == 3
    assert summary.failed == 1
    assert summary.pass1_only == 1
    assert summary.llm_used == 0
    assert summary.needs_review == 1
    assert summary.avg_confidence == pytest.approx(0.90)
    assert len(summary.results) == 2


async def test_batch_counts_llm_decisions(make_tx):
    generator = StubTextGenerator([llm_json("labor", 0.99)])
    summary = await _service(generator).categorize_batch(
        [make_tx("ZXQW"), make_tx(mcc="5812")],
        CategorizerConfig(batch_concurrency=1),
    )
    assert summary.llm_used == 1
    assert summary.pass1_only == 1
    assert summary.failed == 0
