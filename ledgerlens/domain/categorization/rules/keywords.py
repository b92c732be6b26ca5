"""
Keyword rules for description matching

Each rule scores weight x number of matched keywords; the best rule wins.
exclude_keywords disqualify a rule outright, penalty keywords (generic terms
such as "payment" or "bill") shave confidence off whichever rule wins.
"""
import re
from functools import lru_cache
from typing import List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from ledgerlens.domain.categorization.taxonomy import taxonomy

MAX_KEYWORD_CONFIDENCE = 0.95
KEYWORD_BONUS_STEP = 0.05
MAX_KEYWORD_BONUS = 0.2


class KeywordRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    keywords: Tuple[str, ...]
    category_slug: str
    confidence: float = Field(..., ge=0.0, le=1.0)
    weight: int = Field(..., ge=1)
    domain: str
    exclude_keywords: Tuple[str, ...] = ()

    @property
    def category_name(self) -> str:
        return taxonomy.require_slug(self.category_slug).name


class KeywordPenalty(BaseModel):
    model_config = ConfigDict(frozen=True)

    keyword: str
    penalty: float
    reason: str


class KeywordRuleMatch(BaseModel):
    rule: KeywordRule
    matched_keywords: List[str]
    penalized_keywords: List[str] = Field(default_factory=list)

    @property
    def score(self) -> int:
        return self.rule.weight * len(self.matched_keywords)


class KeywordMatch(BaseModel):
    category_slug: str
    category_name: str
    confidence: float
    matched_keywords: List[str]
    rationale: List[str]
    domain: str


def _r(keywords, slug, confidence, weight, domain, exclude=()) -> KeywordRule:
    return KeywordRule(
        keywords=tuple(keywords),
        category_slug=slug,
        confidence=confidence,
        weight=weight,
        domain=domain,
        exclude_keywords=tuple(exclude),
    )


KEYWORD_RULES: List[KeywordRule] = [
    # Payment processing
    _r(["processing fee", "transaction fee", "payment fee", "merchant fee", "card fee"],
       "payment_processing_fees", 0.90, 5, "payment_processing", ["payout", "deposit", "transfer"]),
    _r(["chargeback fee", "dispute fee", "declined transaction"],
       "payment_processing_fees", 0.92, 5, "payment_disputes"),

    # Payouts
    _r(["payout", "transfer", "deposit", "settlement", "disbursement"],
       "payouts_clearing", 0.88, 5, "payouts", ["fee", "charge"]),

    # Refunds
    _r(["refund", "return", "chargeback", "reversal", "void"],
       "refunds_contra", 0.92, 6, "refunds", ["return label", "return shipping", "fee"]),
    _r(["customer return", "order cancellation", "cancelled order"],
       "refunds_contra", 0.88, 5, "order_cancellations"),

    # Supplier purchases
    _r(["wholesale", "supplier invoice", "purchase order", "po#", "net 30", "net 60"],
       "supplier_purchases", 0.90, 6, "inventory_purchasing", ["refund", "credit"]),
    _r(["inventory purchase", "product cost", "goods purchased", "merchandise"],
       "supplier_purchases", 0.85, 5, "inventory"),
    _r(["alibaba", "aliexpress", "wholesale order", "bulk purchase"],
       "supplier_purchases", 0.82, 4, "wholesale_platforms"),

    # Packaging
    _r(["packaging", "boxes", "mailers", "poly bags", "bubble wrap", "packing tape"],
       "packaging", 0.92, 6, "packaging_materials"),
    _r(["shipping supplies", "packing materials", "cartons", "labels"],
       "packaging", 0.88, 5, "packing_supplies"),

    # Outbound shipping
    _r(["postage", "shipping label", "freight", "delivery charge", "carrier fee"],
       "shipping_postage", 0.90, 5, "outbound_shipping"),
    _r(["priority mail", "ground shipping", "express delivery", "overnight"],
       "shipping_postage", 0.88, 5, "shipping_services"),

    # Returns processing
    _r(["rma", "return authorization", "return label", "restocking fee", "return processing"],
       "returns_processing", 0.90, 5, "returns_handling", ["refund"]),
    _r(["reverse logistics", "return shipping", "damaged goods"],
       "returns_processing", 0.85, 4, "returns_logistics"),

    # Marketing
    _r(["advertising", "ad spend", "campaign", "sponsored", "promotion"],
       "marketing_ads", 0.88, 5, "advertising"),
    _r(["facebook ads", "google ads", "tiktok ads", "instagram ads", "pinterest ads"],
       "marketing_ads", 0.93, 6, "digital_advertising"),
    _r(["influencer", "affiliate", "marketing agency", "creative services"],
       "marketing_ads", 0.85, 4, "marketing_services"),

    # Software
    _r(["subscription", "saas", "monthly plan", "annual plan", "license fee"],
       "software_subscriptions", 0.85, 4, "software_licensing"),
    _r(["app charge", "shopify app", "plugin", "extension", "integration"],
       "software_subscriptions", 0.88, 5, "ecommerce_apps"),
    _r(["domain", "hosting", "ssl certificate", "cdn", "cloud storage"],
       "software_subscriptions", 0.90, 5, "web_services"),
    _r(["email marketing", "sms platform", "analytics", "crm"],
       "software_subscriptions", 0.87, 4, "marketing_tools"),

    # Labor
    _r(["payroll", "wages", "salary", "contractor", "freelance"],
       "labor", 0.92, 6, "payroll"),
    _r(["employee benefits", "health insurance", "workers comp", "fica", "withholding"],
       "labor", 0.90, 5, "employment_taxes"),

    # Operations
    _r(["3pl", "fulfillment center", "pick and pack", "warehouse", "storage fee"],
       "operations_logistics", 0.92, 6, "fulfillment"),
    _r(["prep service", "kitting", "assembly", "inventory management"],
       "operations_logistics", 0.88, 5, "fulfillment_services"),
    _r(["customer service", "support tickets", "helpdesk", "live chat"],
       "operations_logistics", 0.80, 3, "customer_support"),

    # G&A
    _r(["rent", "lease", "office space", "co-working"],
       "general_administrative", 0.90, 5, "facilities", ["car", "vehicle"]),
    _r(["electric", "electricity", "gas", "water", "utilities", "internet", "phone"],
       "general_administrative", 0.88, 5, "utilities", ["gasoline", "fuel", "gas station"]),
    _r(["insurance", "liability", "coverage", "premium", "policy"],
       "general_administrative", 0.92, 5, "insurance"),
    _r(["accountant", "bookkeeping", "lawyer", "attorney", "legal fees"],
       "general_administrative", 0.90, 5, "professional_services"),
    _r(["office supplies", "paper", "pens", "furniture", "desk"],
       "general_administrative", 0.82, 3, "office_supplies"),
    _r(["bank fee", "monthly fee", "overdraft", "wire transfer"],
       "general_administrative", 0.85, 4, "banking", ["payment processing", "merchant"]),

    # Travel, vehicle and meals
    _r(["travel", "hotel", "airfare", "conference", "trade show"],
       "travel_vehicle", 0.85, 4, "business_travel"),
    _r(["gasoline", "fuel", "parking", "toll", "mileage", "gas station"],
       "travel_vehicle", 0.82, 3, "vehicle"),
    _r(["lunch", "dinner", "meal", "restaurant", "catering", "cafe", "coffee"],
       "meals_dining", 0.78, 3, "meals", ["personal"]),

    # Taxes
    _r(["sales tax", "state tax", "tax payment", "revenue department"],
       "sales_tax_payable", 0.95, 6, "tax_payments"),
]

KEYWORD_PENALTIES: List[KeywordPenalty] = [
    KeywordPenalty(keyword="com", penalty=0.10, reason="Generic domain suffix"),
    KeywordPenalty(keyword="inc", penalty=0.05, reason="Generic business suffix"),
    KeywordPenalty(keyword="llc", penalty=0.05, reason="Generic business suffix"),
    KeywordPenalty(keyword="bill", penalty=0.15, reason="Overly generic billing term"),
    KeywordPenalty(keyword="payment", penalty=0.10, reason="Generic payment term"),
    KeywordPenalty(keyword="purchase", penalty=0.10, reason="Generic purchase term"),
    KeywordPenalty(keyword="transaction", penalty=0.15, reason="Generic transaction term"),
]


@lru_cache(maxsize=1024)
def _phrase_pattern(phrase: str) -> re.Pattern:
    return re.compile(r"(?<!\w)" + re.escape(phrase.lower()) + r"(?!\w)")


def contains_phrase(text: str, phrase: str) -> bool:
    """Whole-word, case-insensitive phrase containment."""
    return bool(_phrase_pattern(phrase).search(text.lower()))


class KeywordMatcher:
    """
    Score transaction descriptions against keyword rules.

    Usage:
        best = keyword_matcher.best_match("Monthly electric bill payment")
    """

    def __init__(self, rules: List[KeywordRule] = None, penalties: List[KeywordPenalty] = None):
        self.rules = rules if rules is not None else KEYWORD_RULES
        self.penalties = penalties if penalties is not None else KEYWORD_PENALTIES
        self._penalty_by_keyword = {p.keyword: p.penalty for p in self.penalties}

    def match_rules(self, description: Optional[str]) -> List[KeywordRuleMatch]:
        text = (description or "").lower().strip()
        if not text:
            return []

        penalized = [p.keyword for p in self.penalties if contains_phrase(text, p.keyword)]
        matches = []
        for rule in self.rules:
            if any(contains_phrase(text, kw) for kw in rule.exclude_keywords):
                continue
            matched = [kw for kw in rule.keywords if contains_phrase(text, kw)]
            if matched:
                matches.append(KeywordRuleMatch(rule=rule, matched_keywords=matched, penalized_keywords=penalized))
        return matches

    def confidence_for(self, match: KeywordRuleMatch) -> float:
        bonus = min(MAX_KEYWORD_BONUS, KEYWORD_BONUS_STEP * len(match.matched_keywords))
        deduction = sum(self._penalty_by_keyword.get(k, 0.0) for k in match.penalized_keywords)
        return min(MAX_KEYWORD_CONFIDENCE, max(0.0, match.rule.confidence + bonus - deduction))

    def best_match(self, description: Optional[str]) -> Optional[KeywordMatch]:
        """
        Best keyword rule for a description.

        Args:
            description: Raw transaction description

        Returns:
            KeywordMatch with calibrated rule confidence and rationale, or None
        """
        matches = self.match_rules(description)
        if not matches:
            return None

        # First rule wins ties, so table order expresses specificity
        best = matches[0]
        for candidate in matches[1:]:
            if candidate.score > best.score:
                best = candidate

        rationale = [f"keywords: [{', '.join(best.matched_keywords)}] -> {best.rule.category_name}"]
        if best.penalized_keywords:
            rationale.append(f"penalties: [{', '.join(best.penalized_keywords)}]")

        return KeywordMatch(
            category_slug=best.rule.category_slug,
            category_name=best.rule.category_name,
            confidence=self.confidence_for(best),
            matched_keywords=best.matched_keywords,
            rationale=rationale,
            domain=best.rule.domain,
        )

    def rules_for_domain(self, domain: str) -> List[KeywordRule]:
        return [r for r in self.rules if r.domain == domain]

    def domains(self) -> List[str]:
        seen = []
        for rule in self.rules:
            if rule.domain not in seen:
                seen.append(rule.domain)
        return seen


# Singleton instance
keyword_matcher = KeywordMatcher()
