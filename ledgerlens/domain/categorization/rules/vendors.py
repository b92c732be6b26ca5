"""
Vendor pattern rules

Known merchants with high-confidence categorization for e-commerce.
Ambiguous vendors (Stripe, PayPal, Shopify, Square) are deliberately absent:
whether a charge is a fee, a payout or a subscription depends on the
description, which keyword rules and guardrails decide.
"""
import re
from enum import Enum
from typing import Dict, List, Optional

import structlog
from pydantic import BaseModel, ConfigDict, Field

from ledgerlens.domain.categorization.taxonomy import taxonomy

logger = structlog.get_logger()

MIN_VENDOR_NAME_LENGTH = 4
CORPORATE_SUFFIXES = ("llc", "inc", "corp", "ltd", "co", "company")

_SUFFIX_RE = re.compile(r"\b(" + "|".join(CORPORATE_SUFFIXES) + r")\b")
_NON_WORD_RE = re.compile(r"[^\w\s]")
_SPACES_RE = re.compile(r"\s+")


class VendorMatchType(str, Enum):
    EXACT = "exact"
    PREFIX = "prefix"
    SUFFIX = "suffix"
    CONTAINS = "contains"
    REGEX = "regex"


# exact beats the substring family, which beats regex
MATCH_TYPE_RANK = {
    VendorMatchType.EXACT: 3,
    VendorMatchType.PREFIX: 2,
    VendorMatchType.SUFFIX: 2,
    VendorMatchType.CONTAINS: 2,
    VendorMatchType.REGEX: 1,
}


class VendorPattern(BaseModel):
    model_config = ConfigDict(frozen=True)

    pattern: str
    match_type: VendorMatchType
    category_slug: str
    confidence: float = Field(..., ge=0.0, le=1.0)
    priority: int = 50

    @property
    def category_name(self) -> str:
        return taxonomy.require_slug(self.category_slug).name


class VendorMatch(BaseModel):
    pattern: VendorPattern
    match_type: VendorMatchType
    confidence: float


def normalize_vendor_name(vendor: Optional[str]) -> str:
    """
    Normalize a merchant name for matching.

    Lowercases, turns punctuation into spaces, collapses whitespace and strips
    corporate suffixes. Suffixes stay when stripping would leave a name of
    MIN_VENDOR_NAME_LENGTH characters or fewer ("AT&T Corp." -> "at t corp").
    """
    if not vendor:
        return ""
    normalized = _NON_WORD_RE.sub(" ", vendor.strip().lower())
    normalized = _SPACES_RE.sub(" ", normalized).strip()

    without_suffixes = _SPACES_RE.sub(" ", _SUFFIX_RE.sub("", normalized)).strip()
    if len(without_suffixes) <= MIN_VENDOR_NAME_LENGTH and len(normalized) > len(without_suffixes):
        return normalized
    return without_suffixes


def _p(pattern: str, match_type: str, slug: str, confidence: float, priority: int) -> VendorPattern:
    return VendorPattern(
        pattern=pattern,
        match_type=VendorMatchType(match_type),
        category_slug=slug,
        confidence=confidence,
        priority=priority,
    )


VENDOR_PATTERNS: List[VendorPattern] = [
    # Software (unambiguous SaaS)
    _p("adobe", "contains", "software_subscriptions", 0.92, 95),
    _p("microsoft", "contains", "software_subscriptions", 0.92, 95),
    _p("canva", "exact", "software_subscriptions", 0.95, 95),
    _p("squarespace", "exact", "software_subscriptions", 0.95, 100),
    _p("wix", "exact", "software_subscriptions", 0.95, 100),
    _p("zoom", "exact", "software_subscriptions", 0.92, 90),
    _p("slack", "exact", "software_subscriptions", 0.95, 90),
    _p("asana", "exact", "software_subscriptions", 0.95, 90),
    _p("klaviyo", "exact", "software_subscriptions", 0.95, 90),
    _p("mailchimp", "exact", "software_subscriptions", 0.95, 90),
    _p("attentive", "exact", "software_subscriptions", 0.92, 90),
    _p("postscript", "exact", "software_subscriptions", 0.92, 90),

    # Advertising platforms
    _p("facebook ads", "contains", "marketing_ads", 0.93, 95),
    _p("meta for business", "contains", "marketing_ads", 0.93, 95),
    _p("google ads", "contains", "marketing_ads", 0.93, 95),
    _p("tiktok ads", "contains", "marketing_ads", 0.93, 95),
    _p("pinterest ads", "contains", "marketing_ads", 0.92, 90),

    # Carriers
    _p("usps", "contains", "shipping_postage", 0.93, 95),
    _p("fedex", "contains", "shipping_postage", 0.93, 95),
    _p("ups", "contains", "shipping_postage", 0.93, 95),
    _p("dhl", "contains", "shipping_postage", 0.92, 95),

    # 3PL and fulfillment
    _p("shipbob", "contains", "operations_logistics", 0.95, 95),
    _p("shipmonk", "contains", "operations_logistics", 0.95, 95),
    _p("deliverr", "contains", "operations_logistics", 0.95, 95),

    # Payroll
    _p("gusto", "exact", "labor", 0.95, 95),
    _p("rippling", "exact", "labor", 0.95, 95),

    # G&A
    _p("quickbooks", "contains", "general_administrative", 0.95, 90),
    _p("staples", "contains", "general_administrative", 0.85, 75),
    _p("office depot", "contains", "general_administrative", 0.85, 75),
    _p("state farm", "contains", "general_administrative", 0.93, 90),
    _p("allstate", "contains", "general_administrative", 0.93, 90),
    _p("geico", "contains", "general_administrative", 0.93, 90),

    # Meals
    _p("starbucks", "contains", "meals_dining", 0.80, 70),
    _p("dunkin", "contains", "meals_dining", 0.80, 70),

    # Fuel and rideshare
    _p("shell", "prefix", "travel_vehicle", 0.80, 75),
    _p("chevron", "contains", "travel_vehicle", 0.80, 75),
    _p("exxon", "contains", "travel_vehicle", 0.80, 75),
    _p(r"^(uber|lyft)( trip| ride)?\b(?! eats)", "regex", "travel_vehicle", 0.75, 70),
]


def _contains_phrase(haystack: str, needle: str) -> bool:
    # Whole-token containment so "ups" does not fire on "startups"
    return f" {needle} " in f" {haystack} "


class VendorMatcher:
    """
    Match merchant names against vendor patterns.

    Usage:
        match = vendor_matcher.match("ADOBE *CREATIVE CLOUD")
    """

    def __init__(self, patterns: List[VendorPattern] = None):
        self.patterns = patterns if patterns is not None else VENDOR_PATTERNS
        self._compiled: Dict[str, re.Pattern] = {}
        for p in self.patterns:
            if p.match_type != VendorMatchType.REGEX:
                continue
            try:
                self._compiled[p.pattern] = re.compile(p.pattern, re.IGNORECASE)
            except re.error:
                logger.warning("vendor_regex_invalid", pattern=p.pattern, exc_info=True)

    def _matches(self, normalized: str, pattern: VendorPattern) -> bool:
        if pattern.match_type == VendorMatchType.REGEX:
            compiled = self._compiled.get(pattern.pattern)
            return bool(compiled and compiled.search(normalized))

        target = normalize_vendor_name(pattern.pattern)
        if not target:
            return False
        if pattern.match_type == VendorMatchType.EXACT:
            return normalized == target
        if pattern.match_type == VendorMatchType.PREFIX:
            return normalized == target or normalized.startswith(target + " ")
        if pattern.match_type == VendorMatchType.SUFFIX:
            return normalized == target or normalized.endswith(" " + target)
        return _contains_phrase(normalized, target)

    def all_matches(self, vendor_name: Optional[str]) -> List[VendorPattern]:
        normalized = normalize_vendor_name(vendor_name)
        if not normalized:
            return []
        return [p for p in self.patterns if self._matches(normalized, p)]

    def match(self, vendor_name: Optional[str]) -> Optional[VendorMatch]:
        """
        Best pattern for a merchant name.

        Ranking is match type first (exact > prefix/suffix/contains > regex), then
        priority, then confidence.
        """
        candidates = self.all_matches(vendor_name)
        if not candidates:
            return None
        best = max(
            candidates,
            key=lambda p: (MATCH_TYPE_RANK[p.match_type], p.priority, p.confidence),
        )
        return VendorMatch(pattern=best, match_type=best.match_type, confidence=best.confidence)

    def conflicts_for(self, vendor_name: Optional[str]) -> List[VendorPattern]:
        """All matching patterns, when they disagree on the category."""
        candidates = self.all_matches(vendor_name)
        if len({p.category_slug for p in candidates}) > 1:
            return candidates
        return []

    def patterns_for_category(self, slug: str) -> List[VendorPattern]:
        return [p for p in self.patterns if p.category_slug == slug]

    def conflicting_patterns(self) -> Dict[str, List[VendorPattern]]:
        """Table entries whose normalized pattern maps to more than one category."""
        groups: Dict[str, List[VendorPattern]] = {}
        for p in self.patterns:
            key = p.pattern if p.match_type == VendorMatchType.REGEX else normalize_vendor_name(p.pattern)
            groups.setdefault(key, []).append(p)
        return {
            vendor: patterns
            for vendor, patterns in groups.items()
            if len({p.category_slug for p in patterns}) > 1
        }


# Singleton instance
vendor_matcher = VendorMatcher()
