"""
Taxonomy - Versioned e-commerce category tree

Two-tier layout: five statement-section roots, umbrella buckets beneath them.
Vendor names are never categories; they surface as attributes (processor,
platform, carrier) on the umbrella bucket.

Category ids are UUIDv5 values derived from the slug, so they are stable
across environments without a lookup table.

- refunds_contra / refunds_allowances_contra: contra-revenue, never expenses
- payouts_clearing / shopify_payouts_clearing: unsplit processor payouts
- miscellaneous: catch-all used by the generative fallback
"""
import uuid
from typing import Any, Dict, Iterable, List, Optional, Tuple

import structlog

from ledgerlens.domain.categorization.exceptions import TaxonomyError
from ledgerlens.domain.categorization.schemas import (
    AttributeSpec,
    Category,
    FinancialType,
    Industry,
)

logger = structlog.get_logger()

TAXONOMY_VERSION = "2025.1"
TAXONOMY_NAMESPACE = uuid.UUID("6f1c3a52-8d2e-4b7a-9c41-0e5d7b2a9f10")
CATCH_ALL_SLUG = "miscellaneous"


def category_id_for(slug: str) -> str:
    """Stable id for a slug."""
    return str(uuid.uuid5(TAXONOMY_NAMESPACE, slug))


def _attr(type_: str = "string", enum_values: Optional[List[str]] = None, required: bool = False) -> AttributeSpec:
    return AttributeSpec(type=type_, enum_values=enum_values, required=required)


# (slug, name, parent slug, type, include_in_prompt, industries, description, examples, attributes)
_ECOMMERCE_NODES: List[Tuple[Any, ...]] = [
    # Roots
    ("revenue", "Revenue", None, FinancialType.REVENUE, False, None, "", [], {}),
    ("cogs", "Cost of Goods Sold", None, FinancialType.COGS, False, None, "", [], {}),
    ("operating_expenses", "Operating Expenses", None, FinancialType.OPEX, False, None, "", [], {}),
    ("taxes_liabilities", "Taxes & Liabilities", None, FinancialType.LIABILITY, False, None, "", [], {}),
    ("clearing", "Clearing", None, FinancialType.CLEARING, False, None, "", [], {}),

    # Revenue
    ("dtc_sales", "DTC Sales", "revenue", FinancialType.REVENUE, True, None,
     "Direct-to-consumer product sales", ["Shopify order", "Online store sale"],
     {"channel": _attr()}),
    ("shipping_income", "Shipping Income", "revenue", FinancialType.REVENUE, True, [Industry.ECOMMERCE],
     "Shipping charged to customers", ["Customer-paid shipping"], {}),
    ("discounts_contra", "Discounts (Contra-Revenue)", "revenue", FinancialType.REVENUE, True, None,
     "Discounts and promotions that reduce gross sales", ["Coupon redemption"], {}),
    ("refunds_contra", "Refunds (Contra-Revenue)", "revenue", FinancialType.REVENUE, True, None,
     "Customer refunds, returns, chargebacks", ["Customer refund", "Order cancellation"],
     {"reason": _attr("enum", ["return", "chargeback", "cancellation", "other"])}),
    ("refunds_allowances_contra", "Refunds & Allowances (Contra-Revenue)", "revenue", FinancialType.REVENUE, False, None,
     "Legacy refund account", [], {}),

    # COGS
    ("supplier_purchases", "Supplier Purchases", "cogs", FinancialType.COGS, True, None,
     "Inventory, wholesale orders and inbound freight", ["Alibaba order", "Wholesale invoice"],
     {"supplier": _attr()}),
    ("packaging", "Packaging", "cogs", FinancialType.COGS, True, [Industry.ECOMMERCE],
     "Boxes, mailers and packing materials", ["Uline", "Packlane"], {"supplier": _attr()}),
    ("shipping_postage", "Shipping & Postage", "cogs", FinancialType.COGS, True, [Industry.ECOMMERCE],
     "Outbound shipping paid by the business to deliver orders", ["USPS postage", "UPS label"],
     {"carrier": _attr(), "direction": _attr("enum", ["outbound", "inbound"])}),
    ("returns_processing", "Returns Processing", "cogs", FinancialType.COGS, True, [Industry.ECOMMERCE],
     "Return labels, restocking and reverse logistics", ["Return label", "Restocking fee"], {}),

    # Operating expenses
    ("payment_processing_fees", "Payment Processing Fees", "operating_expenses", FinancialType.OPEX, True, None,
     "Fees charged by payment processors", ["Stripe fee", "PayPal fee", "Shop Pay fee"],
     {"processor": _attr(), "fee_type": _attr("enum", ["transaction", "monthly", "chargeback", "other"])}),
    ("marketing_ads", "Marketing & Ads", "operating_expenses", FinancialType.OPEX, True, None,
     "Advertising, influencers and agencies", ["Facebook Ads", "Google Ads", "TikTok Ads"],
     {"platform": _attr(), "campaign_type": _attr("enum", ["paid_social", "search", "display", "influencer", "other"])}),
    ("software_subscriptions", "Software Subscriptions", "operating_expenses", FinancialType.OPEX, True, None,
     "SaaS tools, apps and hosting", ["Adobe Creative Cloud", "Klaviyo", "Shopify apps"],
     {"vendor": _attr(), "subscription_type": _attr("enum", ["monthly", "annual", "usage"])}),
    ("labor", "Labor", "operating_expenses", FinancialType.OPEX, True, None,
     "Payroll, contractors and benefits", ["Gusto payroll", "Upwork contractor"],
     {"worker_type": _attr("enum", ["employee", "contractor"])}),
    ("operations_logistics", "Operations & Logistics", "operating_expenses", FinancialType.OPEX, True, None,
     "3PL, warehousing, shipping software and support tools", ["ShipBob", "ShipStation"],
     {"provider": _attr()}),
    ("general_administrative", "General & Administrative", "operating_expenses", FinancialType.OPEX, True, None,
     "Rent, utilities, insurance, professional services and office costs", ["Rent", "Insurance premium"],
     {}),
    ("meals_dining", "Meals & Dining", "operating_expenses", FinancialType.OPEX, True, None,
     "Restaurants, cafes and business meals", ["Restaurant", "Coffee shop"], {}),
    ("travel_vehicle", "Travel & Vehicle", "operating_expenses", FinancialType.OPEX, True, None,
     "Fuel, transit, rideshare and travel", ["Shell gas station", "Uber ride"], {}),
    (CATCH_ALL_SLUG, "Miscellaneous", "operating_expenses", FinancialType.OPEX, True, None,
     "Anything that does not clearly fit another category", [], {}),

    # Taxes & liabilities
    ("sales_tax_payable", "Sales Tax Payable", "taxes_liabilities", FinancialType.LIABILITY, True, None,
     "Sales and use tax remitted to tax authorities", ["State sales tax payment"],
     {"jurisdiction": _attr()}),

    # Clearing
    ("payouts_clearing", "Payouts Clearing", "clearing", FinancialType.CLEARING, True, [Industry.ECOMMERCE],
     "Processor payouts not yet split into sales, fees and refunds", ["Shopify payout", "Stripe transfer"],
     {"platform": _attr()}),
    ("shopify_payouts_clearing", "Shopify Payouts Clearing", "clearing", FinancialType.CLEARING, False,
     [Industry.ECOMMERCE], "Legacy payout clearing account", [], {}),
]


class Taxonomy:
    """
    Read-only category catalog.

    Usage:
        category = taxonomy.get_by_slug("meals_dining")
        prompt_categories = taxonomy.list_prompt_eligible(Industry.ECOMMERCE)
    """

    def __init__(self, categories: Iterable[Category], version: str = TAXONOMY_VERSION):
        self.version = version
        self._by_id: Dict[str, Category] = {}
        self._by_slug: Dict[str, Category] = {}
        for category in categories:
            if category.slug in self._by_slug:
                raise TaxonomyError(f"Duplicate category slug: {category.slug}")
            self._by_id[category.id] = category
            self._by_slug[category.slug] = category
        self._validate_tree()

    def _validate_tree(self) -> None:
        for category in self._by_id.values():
            if category.is_root:
                continue
            parent = self._by_id.get(category.parent_id)
            if parent is None:
                raise TaxonomyError(f"Category {category.slug} has unknown parent {category.parent_id}")
            overridable = category.is_contra or category.financial_type == FinancialType.CLEARING
            if category.financial_type != parent.financial_type and not overridable:
                raise TaxonomyError(
                    f"Category {category.slug} is {category.financial_type.value} "
                    f"but its parent {parent.slug} is {parent.financial_type.value}"
                )

    def get_by_slug(self, slug: str) -> Optional[Category]:
        return self._by_slug.get(slug)

    def get_by_id(self, category_id: str) -> Optional[Category]:
        return self._by_id.get(category_id)

    def require_slug(self, slug: str) -> Category:
        category = self._by_slug.get(slug)
        if category is None:
            raise TaxonomyError(f"Unknown category slug: {slug}")
        return category

    def children_of(self, slug: str) -> List[Category]:
        parent = self.require_slug(slug)
        return [c for c in self._by_id.values() if c.parent_id == parent.id]

    def all(self) -> List[Category]:
        return list(self._by_id.values())

    def list_prompt_eligible(self, industry: Industry = Industry.ALL) -> List[Category]:
        """
        Categories offered to the generative model.

        Args:
            industry: Business vertical; ALL returns only universal categories

        Returns:
            Prompt-eligible leaves in declaration order
        """
        eligible = []
        for category in self._by_id.values():
            if not category.include_in_prompt:
                continue
            if Industry.ALL in category.industries or industry in category.industries:
                eligible.append(category)
        return eligible

    def is_valid_prompt_slug(self, slug: str, industry: Industry = Industry.ALL) -> bool:
        return any(c.slug == slug for c in self.list_prompt_eligible(industry))

    @property
    def catch_all(self) -> Category:
        return self.require_slug(CATCH_ALL_SLUG)

    def validate_attributes(self, slug: str, attributes: Dict[str, Any]) -> Tuple[Dict[str, str], List[str]]:
        """
        Keep only well-typed, non-empty attributes declared by the category.

        Args:
            slug: Category the attributes were extracted for
            attributes: Raw attribute mapping from the model

        Returns:
            (clean attributes as strings, warnings for everything dropped)
        """
        category = self.get_by_slug(slug)
        if category is None or not attributes:
            return {}, []

        clean: Dict[str, str] = {}
        warnings: List[str] = []
        for key, value in attributes.items():
            spec = category.attribute_schema.get(key)
            if spec is None:
                warnings.append(f"unknown attribute '{key}' for {slug}")
                continue
            if value is None or (isinstance(value, str) and not value.strip()):
                continue
            if not _value_matches(spec, value):
                warnings.append(f"attribute '{key}' has invalid value {value!r} for {slug}")
                continue
            clean[key] = str(value).strip() if not isinstance(value, bool) else str(value).lower()

        for key, spec in category.attribute_schema.items():
            if spec.required and key not in clean:
                warnings.append(f"required attribute '{key}' missing for {slug}")

        if warnings:
            logger.warning("attribute_validation_warnings", category=slug, warnings=warnings)
        return clean, warnings


def _value_matches(spec: AttributeSpec, value: Any) -> bool:
    if spec.type == "number":
        if isinstance(value, bool):
            return False
        if isinstance(value, (int, float)):
            return True
        try:
            float(str(value))
        except ValueError:
            return False
        return True
    if spec.type == "boolean":
        return isinstance(value, bool) or str(value).lower() in {"true", "false"}
    if spec.type == "enum":
        return str(value).strip().lower() in {v.lower() for v in (spec.enum_values or [])}
    return isinstance(value, (str, int, float)) and not isinstance(value, bool)


def build_ecommerce_taxonomy() -> Taxonomy:
    """Build the shipped e-commerce taxonomy."""
    categories = []
    for slug, name, parent, ftype, in_prompt, industries, description, examples, attrs in _ECOMMERCE_NODES:
        categories.append(Category(
            id=category_id_for(slug),
            slug=slug,
            name=name,
            parent_id=category_id_for(parent) if parent else None,
            financial_type=ftype,
            is_pnl=ftype in (FinancialType.REVENUE, FinancialType.COGS, FinancialType.OPEX),
            include_in_prompt=in_prompt,
            description=description,
            examples=examples,
            industries=industries or [Industry.ALL],
            attribute_schema=attrs,
        ))
    return Taxonomy(categories)


# Singleton instance
taxonomy = build_ecommerce_taxonomy()
