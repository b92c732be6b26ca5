from __future__ import annotations

import pytest

from ledgerlens.domain.categorization.exceptions import TaxonomyError
from ledgerlens.domain.categorization.schemas import Category, FinancialType, Industry
from ledgerlens.domain.categorization.taxonomy import (
    CATCH_ALL_SLUG,
    Taxonomy,
    category_id_for,
    taxonomy,
)


def test_category_ids_are_stable_per_slug():
    assert category_id_for("meals_dining") == category_id_for("meals_dining")
    assert category_id_for("meals_dining") != category_id_for("travel_vehicle")
    assert taxonomy.require_slug("meals_dining").id == category_id_for("meals_dining")


def test_roots_and_children():
    roots = sorted(c.slug for c in taxonomy.all() if c.is_root)
    assert roots == ["clearing", "cogs", "operating_expenses", "revenue", "taxes_liabilities"]

    revenue_children = {c.slug for c in taxonomy.children_of("revenue")}
    assert {"dtc_sales", "refunds_contra", "discounts_contra", "shipping_income"} <= revenue_children


def test_contra_and_clearing_classification():
    refunds = taxonomy.require_slug("refunds_contra")
    assert refunds.is_contra
    assert refunds.financial_type == FinancialType.REVENUE

    payouts = taxonomy.require_slug("payouts_clearing")
    assert payouts.financial_type == FinancialType.CLEARING
    assert not payouts.is_pnl


def test_unknown_slug_raises():
    assert taxonomy.get_by_slug("vendor_stripe") is None
    with pytest.raises(TaxonomyError):
        taxonomy.require_slug("vendor_stripe")


def test_catch_all_is_prompt_eligible():
    assert taxonomy.catch_all.slug == CATCH_ALL_SLUG
    assert taxonomy.is_valid_prompt_slug(CATCH_ALL_SLUG, Industry.ECOMMERCE)


def test_prompt_eligibility_hides_roots_and_legacy_accounts():
    slugs = {c.slug for c in taxonomy.list_prompt_eligible(Industry.ECOMMERCE)}
    assert "revenue" not in slugs
    assert "refunds_allowances_contra" not in slugs
    assert "shopify_payouts_clearing" not in slugs
    assert "payouts_clearing" in slugs


def test_prompt_eligibility_is_scoped_by_industry():
    ecommerce = {c.slug for c in taxonomy.list_prompt_eligible(Industry.ECOMMERCE)}
    saas = {c.slug for c in taxonomy.list_prompt_eligible(Industry.SAAS)}
    assert "shipping_postage" in ecommerce
    assert "shipping_postage" not in saas
    assert "software_subscriptions" in saas


def test_duplicate_slug_rejected():
    root = Category(id="r", slug="revenue", name="Revenue", financial_type=FinancialType.REVENUE)
    with pytest.raises(TaxonomyError):
        Taxonomy([root, root])


def test_child_must_match_parent_financial_type():
    root = Category(id="r", slug="revenue", name="Revenue", financial_type=FinancialType.REVENUE)
    child = Category(id="c", slug="ads", name="Ads", parent_id="r", financial_type=FinancialType.OPEX)
    with pytest.raises(TaxonomyError):
        Taxonomy([root, child])


def test_unknown_parent_rejected():
    orphan = Category(id="c", slug="ads", name="Ads", parent_id="missing", financial_type=FinancialType.OPEX)
    with pytest.raises(TaxonomyError):
        Taxonomy([orphan])


# ---- Attribute validation ----


def test_validate_attributes_keeps_declared_values():
    clean, warnings = taxonomy.validate_attributes(
        "payment_processing_fees", {"processor": "Stripe", "fee_type": "transaction"}
    )
    assert clean == {"processor": "Stripe", "fee_type": "transaction"}
    assert warnings == []


def test_validate_attributes_drops_unknown_and_invalid():
    clean, warnings = taxonomy.validate_attributes(
        "payment_processing_fees", {"processor": "Stripe", "fee_type": "bogus", "color": "red", "empty": ""}
    )
    assert clean == {"processor": "Stripe"}
    assert any("fee_type" in w for w in warnings)
    assert any("color" in w for w in warnings)


def test_validate_attributes_for_category_without_schema():
    clean, warnings = taxonomy.validate_attributes("meals_dining", {"restaurant": "Joe's"})
    assert clean == {}
    assert warnings
