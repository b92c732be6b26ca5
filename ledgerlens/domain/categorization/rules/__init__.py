"""
Static rule sources for Pass-1
"""
from ledgerlens.domain.categorization.rules.keywords import KeywordMatcher, keyword_matcher
from ledgerlens.domain.categorization.rules.mcc import MCCTable, mcc_table
from ledgerlens.domain.categorization.rules.vendors import (
    VendorMatcher,
    normalize_vendor_name,
    vendor_matcher,
)

__all__ = [
    "KeywordMatcher",
    "MCCTable",
    "VendorMatcher",
    "keyword_matcher",
    "mcc_table",
    "normalize_vendor_name",
    "vendor_matcher",
]
