"""
Guardrails - business invariants that override the statistically best answer

Every guardrail is a row of data evaluated by one generic evaluator. Stages run
in a fixed order and each stage sees the category the previous one produced:

1. revenue_directionality - refunds and processors never land on revenue,
   money in never lands on COGS/OpEx (strict profile)
2. shipping_direction - outbound carriers, inbound freight and shipping
   software each have their own bucket; the first matching row decides
3. sales_tax - tax authority payments are a liability, not an expense
4. payout - processor payouts go to the clearing account

Penalties add up and the final confidence is clamped to [0, 1]. A row without
a target rejects the proposal; the caller then has the uncertain state.
Running the pipeline on its own output applies nothing.
"""
import re
from dataclasses import dataclass
from enum import Enum
from functools import lru_cache
from typing import Callable, Dict, FrozenSet, List, Optional, Sequence, Tuple

import structlog
from pydantic import BaseModel, Field

from ledgerlens.common.metrics import GUARDRAIL_APPLICATIONS
from ledgerlens.domain.categorization.schemas import Category, FinancialType, NormalizedTransaction
from ledgerlens.domain.categorization.taxonomy import CATCH_ALL_SLUG, Taxonomy, taxonomy as default_taxonomy

logger = structlog.get_logger()


class GuardrailStage(str, Enum):
    REVENUE_DIRECTIONALITY = "revenue_directionality"
    SHIPPING_DIRECTION = "shipping_direction"
    SALES_TAX = "sales_tax"
    PAYOUT = "payout"


STAGE_ORDER = [
    GuardrailStage.REVENUE_DIRECTIONALITY,
    GuardrailStage.SHIPPING_DIRECTION,
    GuardrailStage.SALES_TAX,
    GuardrailStage.PAYOUT,
]

# Stages where only the first matching row may act
FIRST_MATCH_STAGES = {GuardrailStage.SHIPPING_DIRECTION}


class GuardrailProfile(str, Enum):
    STRICT = "strict"
    LEGACY = "legacy"


# ---- Vocabularies -----------------------------------------------------------

REFUND_TERMS = (
    "refund", "return", "chargeback", "reversal", "void",
    "cancelled", "dispute", "adjustment", "credit",
)

REVENUE_PROCESSORS = (
    "stripe", "paypal", "square", "shopify payments", "shop pay",
    "afterpay", "affirm", "klarna", "sezzle", "adyen", "braintree",
)

PAYOUT_PROCESSORS_BASIC = ("shopify", "stripe", "paypal", "square", "amazon payments")
PAYOUT_PROCESSORS_EXTENDED = PAYOUT_PROCESSORS_BASIC + (
    "adyen", "braintree", "klarna", "affirm", "afterpay", "sezzle", "venmo",
)

PAYOUT_TERMS_BASIC = ("payout", "transfer", "deposit", "settlement")
PAYOUT_TERMS_EXTENDED = PAYOUT_TERMS_BASIC + ("disbursement", "proceeds")

INBOUND_FREIGHT_TERMS = ("freight from", "inbound freight", "supplier shipping", "wholesale freight")
SHIPPING_PLATFORMS = ("shipstation", "shippo", "easypost", "pirate ship")
OUTBOUND_CARRIERS = ("usps", "ups", "fedex", "dhl", "postal service")
OUTBOUND_TERMS = ("shipping", "postage", "delivery", "freight to")

SALES_TAX_TERMS = (
    "sales tax", "state tax", "local tax", "use tax",
    "revenue department", "tax authority", "comptroller",
    "department of revenue", "tax commission",
)
TAX_AUTHORITIES = (
    "state of", "city of", "county of", "department of revenue",
    "tax collector", "revenue service",
)


@lru_cache(maxsize=512)
def _term_pattern(term: str) -> re.Pattern:
    # Whole words with light inflection: "refund" matches "refunds" and "refunded"
    return re.compile(r"(?<!\w)" + re.escape(term) + r"(?:s|es|ed|ing)?(?!\w)", re.IGNORECASE)


def mentions(text: Optional[str], terms: Sequence[str]) -> bool:
    if not text:
        return False
    return any(_term_pattern(term).search(text) for term in terms)


# ---- Predicates -------------------------------------------------------------

Predicate = Callable[[NormalizedTransaction], bool]


def in_description(terms: Sequence[str]) -> Predicate:
    return lambda tx: mentions(tx.description, terms)


def in_merchant(terms: Sequence[str]) -> Predicate:
    return lambda tx: mentions(tx.merchant_name, terms)


def in_either(terms: Sequence[str]) -> Predicate:
    return lambda tx: mentions(tx.description, terms) or mentions(tx.merchant_name, terms)


def any_of(*predicates: Predicate) -> Predicate:
    return lambda tx: any(p(tx) for p in predicates)


def all_of(*predicates: Predicate) -> Predicate:
    return lambda tx: all(p(tx) for p in predicates)


def negate(predicate: Predicate) -> Predicate:
    return lambda tx: not predicate(tx)


def money_in(tx: NormalizedTransaction) -> bool:
    return tx.amount_cents > 0


def money_out(tx: NormalizedTransaction) -> bool:
    return tx.amount_cents <= 0


def negative_amount(tx: NormalizedTransaction) -> bool:
    return tx.amount_cents < 0


# ---- Rows -------------------------------------------------------------------

ALL_TYPES = frozenset(FinancialType)
REVENUE = frozenset({FinancialType.REVENUE})
SPEND = frozenset({FinancialType.COGS, FinancialType.OPEX})
PNL = frozenset({FinancialType.REVENUE, FinancialType.COGS, FinancialType.OPEX})


@dataclass(frozen=True)
class GuardrailRow:
    """One business rule: when predicate holds for a category it applies to, redirect or reject."""

    name: str
    stage: GuardrailStage
    predicate: Predicate
    applies_to: FrozenSet[FinancialType]
    target: Optional[str]
    penalty: float
    tag: str
    reason: str
    skip_contra: bool = False
    skip_slugs: FrozenSet[str] = frozenset()

    def applies(self, category: Category) -> bool:
        if category.financial_type not in self.applies_to:
            return False
        if self.skip_contra and category.is_contra:
            return False
        if category.slug in self.skip_slugs:
            return False
        return True


def _revenue_rows(refund_target: str, strict: bool) -> List[GuardrailRow]:
    rows = [
        GuardrailRow(
            name="refund_on_revenue",
            stage=GuardrailStage.REVENUE_DIRECTIONALITY,
            predicate=any_of(in_either(REFUND_TERMS), negative_amount),
            applies_to=REVENUE,
            skip_contra=True,
            target=refund_target,
            penalty=0.4,
            tag="revenue_block",
            reason="Refund/return cannot map to positive revenue",
        ),
        GuardrailRow(
            name="processor_on_revenue",
            stage=GuardrailStage.REVENUE_DIRECTIONALITY,
            predicate=all_of(in_either(REVENUE_PROCESSORS), negate(in_description(PAYOUT_TERMS_EXTENDED))),
            applies_to=REVENUE,
            skip_contra=True,
            target="payment_processing_fees",
            penalty=0.3,
            tag="revenue_block",
            reason="Payment processor cannot map to revenue",
        ),
    ]
    if strict:
        rows += [
            GuardrailRow(
                name="refund_money_in_on_spend",
                stage=GuardrailStage.REVENUE_DIRECTIONALITY,
                predicate=all_of(money_in, in_either(REFUND_TERMS)),
                applies_to=SPEND,
                skip_slugs=frozenset({CATCH_ALL_SLUG}),
                target="refunds_contra",
                penalty=0.4,
                tag="revenue_directionality",
                reason="Refund pattern detected on money in; routed to contra-revenue",
            ),
            GuardrailRow(
                name="money_in_on_spend",
                stage=GuardrailStage.REVENUE_DIRECTIONALITY,
                predicate=money_in,
                applies_to=SPEND,
                skip_slugs=frozenset({CATCH_ALL_SLUG}),
                target=CATCH_ALL_SLUG,
                penalty=0.6,
                tag="revenue_directionality",
                reason="Positive amount (MONEY IN) cannot map to OpEx/COGS",
            ),
        ]
    return rows


def _shipping_rows() -> List[GuardrailRow]:
    common = dict(
        stage=GuardrailStage.SHIPPING_DIRECTION,
        applies_to=SPEND,
        penalty=0.2,
        tag="shipping_direction_redirect",
    )
    return [
        GuardrailRow(
            name="inbound_freight",
            predicate=all_of(money_out, in_description(INBOUND_FREIGHT_TERMS)),
            target="supplier_purchases",
            reason="Inbound freight should map to supplier_purchases (COGS)",
            **common,
        ),
        GuardrailRow(
            name="shipping_platform",
            predicate=all_of(money_out, in_either(SHIPPING_PLATFORMS)),
            target="operations_logistics",
            reason="Shipping software should map to operations_logistics (OpEx)",
            **common,
        ),
        GuardrailRow(
            name="outbound_shipping",
            predicate=all_of(money_out, any_of(in_either(OUTBOUND_CARRIERS), in_description(OUTBOUND_TERMS))),
            target="shipping_postage",
            reason="Outbound shipping should map to shipping_postage (COGS)",
            **common,
        ),
    ]


def _sales_tax_row() -> GuardrailRow:
    return GuardrailRow(
        name="sales_tax_payment",
        stage=GuardrailStage.SALES_TAX,
        predicate=any_of(in_either(SALES_TAX_TERMS), in_merchant(TAX_AUTHORITIES)),
        applies_to=PNL,
        target="sales_tax_payable",
        penalty=0.2,
        tag="sales_tax_redirect",
        reason="Sales tax payment should map to liability account",
    )


def _payout_row(processors: Sequence[str], terms: Sequence[str], target: str) -> GuardrailRow:
    return GuardrailRow(
        name="processor_payout",
        stage=GuardrailStage.PAYOUT,
        predicate=all_of(in_merchant(processors), in_description(terms)),
        applies_to=ALL_TYPES - {FinancialType.CLEARING},
        target=target,
        penalty=0.1,
        tag="payout_redirect",
        reason="Payment processor payouts should map to clearing account",
    )


def build_guardrail_table(profile: GuardrailProfile = GuardrailProfile.STRICT) -> List[GuardrailRow]:
    """
    Rows for a profile, in evaluation order.

    strict: contra-revenue and clearing targets of the two-tier taxonomy, money
    direction checks, shipping direction, extended processor vocabulary.
    legacy: revenue block, sales tax and the basic payout row with the legacy
    refund and clearing accounts.
    """
    profile = GuardrailProfile(profile)
    if profile == GuardrailProfile.LEGACY:
        rows = _revenue_rows("refunds_allowances_contra", strict=False)
        rows.append(_sales_tax_row())
        rows.append(_payout_row(PAYOUT_PROCESSORS_BASIC, PAYOUT_TERMS_BASIC, "shopify_payouts_clearing"))
        return rows

    rows = _revenue_rows("refunds_contra", strict=True)
    rows += _shipping_rows()
    rows.append(_sales_tax_row())
    rows.append(_payout_row(PAYOUT_PROCESSORS_EXTENDED, PAYOUT_TERMS_EXTENDED, "payouts_clearing"))
    return rows


# ---- Evaluator --------------------------------------------------------------


class GuardrailOutcome(BaseModel):
    category_slug: Optional[str] = None
    category_id: Optional[str] = None
    confidence: float = Field(0.0, ge=0.0, le=1.0)
    guardrails_applied: List[str] = Field(default_factory=list)
    reasons: List[str] = Field(default_factory=list)
    rejected: bool = False

    @property
    def changed(self) -> bool:
        return bool(self.guardrails_applied)


class GuardrailEngine:
    """
    Evaluate a guardrail table against a proposed category.

    Usage:
        engine = GuardrailEngine(profile="strict")
        outcome = engine.apply(transaction, "dtc_sales", 0.82)
    """

    def __init__(
        self,
        profile: GuardrailProfile = GuardrailProfile.STRICT,
        rows: List[GuardrailRow] = None,
        taxonomy: Taxonomy = None,
    ):
        self.profile = GuardrailProfile(profile)
        self.rows = rows if rows is not None else build_guardrail_table(self.profile)
        self.taxonomy = taxonomy or default_taxonomy
        self._stages: Dict[GuardrailStage, List[GuardrailRow]] = {stage: [] for stage in STAGE_ORDER}
        for row in self.rows:
            self._stages[row.stage].append(row)

    def _fire(self, row: GuardrailRow, slug: str, outcome: GuardrailOutcome) -> Tuple[Optional[str], bool]:
        outcome.guardrails_applied.append(row.tag)
        outcome.reasons.append(f"{row.reason} ({slug} -> {row.target or 'rejected'})")
        outcome.confidence = outcome.confidence - row.penalty
        GUARDRAIL_APPLICATIONS.labels(tag=row.tag).inc()
        if row.target is None:
            return None, True
        return row.target, False

    def apply(
        self,
        transaction: NormalizedTransaction,
        category_slug: Optional[str],
        confidence: float,
    ) -> GuardrailOutcome:
        """
        Run every stage in order against a proposal.

        Args:
            transaction: Transaction being categorized
            category_slug: Proposed category (None passes straight through)
            confidence: Proposed confidence

        Returns:
            GuardrailOutcome with the final category, penalized confidence and tags
        """
        outcome = GuardrailOutcome(
            category_slug=category_slug,
            confidence=max(0.0, min(1.0, confidence or 0.0)),
        )
        if category_slug is None:
            return outcome

        if self.taxonomy.get_by_slug(category_slug) is None:
            logger.warning("guardrail_unknown_category", category=category_slug)
            outcome.category_slug = None
            outcome.rejected = True
            outcome.reasons.append(f"Unknown category {category_slug}")
            return outcome

        current: Optional[str] = category_slug
        penalty_start = outcome.confidence

        for stage in STAGE_ORDER:
            for row in self._stages[stage]:
                category = self.taxonomy.require_slug(current)
                if stage in FIRST_MATCH_STAGES:
                    if not row.predicate(transaction):
                        continue
                    if row.applies(category) and row.target != current:
                        current, rejected = self._fire(row, current, outcome)
                        if rejected:
                            break
                    break
                if row.applies(category) and row.target != current and row.predicate(transaction):
                    current, rejected = self._fire(row, current, outcome)
                    if rejected:
                        break
            if current is None:
                outcome.rejected = True
                break

        outcome.confidence = max(0.0, min(1.0, outcome.confidence))
        outcome.category_slug = current
        outcome.category_id = self.taxonomy.require_slug(current).id if current else None

        if outcome.changed:
            logger.info(
                "guardrails_applied",
                transaction_id=transaction.id,
                proposed=category_slug,
                final=current,
                tags=outcome.guardrails_applied,
                confidence_before=round(penalty_start, 3),
                confidence_after=round(outcome.confidence, 3),
            )
        return outcome


def apply_guardrails(
    transaction: NormalizedTransaction,
    category_slug: Optional[str],
    confidence: float,
    profile: GuardrailProfile = GuardrailProfile.STRICT,
) -> GuardrailOutcome:
    """Convenience wrapper over a cached engine per profile."""
    return _engine_for(GuardrailProfile(profile)).apply(transaction, category_slug, confidence)


@lru_cache(maxsize=4)
def _engine_for(profile: GuardrailProfile) -> GuardrailEngine:
    return GuardrailEngine(profile=profile)
