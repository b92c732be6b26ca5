from __future__ import annotations

import pytest

from ledgerlens.domain.categorization.rules.keywords import (
    KeywordMatcher,
    KeywordPenalty,
    KeywordRule,
    contains_phrase,
    keyword_matcher,
)
from ledgerlens.domain.categorization.rules.mcc import MCCStrength, mcc_table
from ledgerlens.domain.categorization.rules.vendors import (
    VendorMatcher,
    VendorMatchType,
    VendorPattern,
    normalize_vendor_name,
    vendor_matcher,
)


# ---- MCC ----


def test_mcc_exact_lookup():
    mapping = mcc_table.lookup("5812")
    assert mapping.category_slug == "meals_dining"
    assert mapping.strength == MCCStrength.EXACT
    assert mapping.base_confidence == pytest.approx(0.90)


def test_mcc_lookup_strips_and_misses():
    assert mcc_table.lookup(" 5812 ").category_slug == "meals_dining"
    assert mcc_table.lookup("0000") is None
    assert mcc_table.lookup(None) is None
    assert mcc_table.lookup("") is None


def test_mcc_compatibility():
    assert mcc_table.is_compatible(None, "dtc_sales")
    assert mcc_table.is_compatible("0000", "dtc_sales")
    assert mcc_table.is_compatible("5812", "meals_dining")
    # Sibling under operating expenses
    assert mcc_table.is_compatible("5812", "travel_vehicle")
    assert not mcc_table.is_compatible("5812", "dtc_sales")


def test_codes_for_category():
    assert set(mcc_table.codes_for_category("meals_dining")) == {"5812", "5814"}


# ---- Vendors ----


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("ADOBE *CREATIVE CLOUD", "adobe creative cloud"),
        ("Acme Widgets, LLC", "acme widgets"),
        ("AT&T Corp.", "at t corp"),
        ("  ShipBob   Inc ", "shipbob"),
        (None, ""),
    ],
)
def test_normalize_vendor_name(raw, expected):
    assert normalize_vendor_name(raw) == expected


def test_vendor_contains_match():
    match = vendor_matcher.match("ADOBE *CREATIVE CLOUD")
    assert match.pattern.category_slug == "software_subscriptions"
    assert match.match_type == VendorMatchType.CONTAINS


def test_vendor_whole_token_containment():
    # "ups" must not fire inside "startups"
    assert vendor_matcher.match("Startups Weekly") is None
    assert vendor_matcher.match("UPS Store 1234").pattern.category_slug == "shipping_postage"


def test_vendor_regex_excludes_uber_eats():
    assert vendor_matcher.match("Uber Trip").pattern.category_slug == "travel_vehicle"
    assert vendor_matcher.match("Uber Eats") is None


def test_ambiguous_processors_not_in_vendor_table():
    assert vendor_matcher.match("Stripe") is None
    assert vendor_matcher.match("Shopify") is None


def test_exact_beats_contains_regardless_of_priority():
    matcher = VendorMatcher([
        VendorPattern(pattern="acme", match_type=VendorMatchType.CONTAINS, category_slug="packaging",
                      confidence=0.9, priority=100),
        VendorPattern(pattern="acme", match_type=VendorMatchType.EXACT, category_slug="labor",
                      confidence=0.8, priority=10),
    ])
    match = matcher.match("ACME")
    assert match.pattern.category_slug == "labor"
    assert len(matcher.conflicts_for("ACME")) == 2
    assert "acme" in matcher.conflicting_patterns()


def test_invalid_regex_pattern_is_skipped():
    matcher = VendorMatcher([
        VendorPattern(pattern="([", match_type=VendorMatchType.REGEX, category_slug="labor", confidence=0.8),
    ])
    assert matcher.match("anything") is None


# ---- Keywords ----


def test_contains_phrase_is_whole_word():
    assert contains_phrase("STRIPE PAYOUT 01/15", "payout")
    assert not contains_phrase("PAYOUTS-REPORT", "payout")
    assert not contains_phrase("prefund", "refund")


def test_keyword_payout_rule():
    match = keyword_matcher.best_match("STRIPE PAYOUT 01/15")
    assert match.category_slug == "payouts_clearing"
    assert match.matched_keywords == ["payout"]
    assert match.confidence == pytest.approx(0.93)


def test_keyword_exclusions_disqualify_rule():
    # "fee" excludes the payouts rule, so the fee rule wins
    match = keyword_matcher.best_match("Stripe processing fee on payout")
    assert match is None or match.category_slug != "payouts_clearing"


def test_keyword_empty_description():
    assert keyword_matcher.best_match("") is None
    assert keyword_matcher.best_match(None) is None


def test_keyword_penalties_and_ties():
    rules = [
        KeywordRule(keywords=("widget",), category_slug="packaging", confidence=0.8, weight=5, domain="a"),
        KeywordRule(keywords=("widget",), category_slug="labor", confidence=0.9, weight=5, domain="b"),
    ]
    matcher = KeywordMatcher(rules, [KeywordPenalty(keyword="payment", penalty=0.1, reason="generic")])
    match = matcher.best_match("widget payment")
    # First rule wins the tie
    assert match.category_slug == "packaging"
    assert match.confidence == pytest.approx(0.8 + 0.05 - 0.1)
    assert any("penalties" in line for line in match.rationale)


def test_keyword_confidence_is_capped():
    rules = [
        KeywordRule(keywords=("a", "b", "c", "d", "e"), category_slug="labor", confidence=0.9, weight=1, domain="x"),
    ]
    match = KeywordMatcher(rules, []).best_match("a b c d e")
    assert match.confidence == pytest.approx(0.95)


def test_keyword_domains_in_table_order():
    domains = keyword_matcher.domains()
    assert domains[0] == "payment_processing"
    assert len(domains) == len(set(domains))
