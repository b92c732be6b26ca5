"""
MCC (Merchant Category Code) rule table

Visa/Mastercard codes mapped onto the e-commerce umbrella buckets.
- exact: code identifies the category unambiguously
- family: code points at a family of merchants, usually right
"""
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ledgerlens.domain.categorization.taxonomy import Taxonomy, taxonomy as default_taxonomy


class MCCStrength(str, Enum):
    EXACT = "exact"
    FAMILY = "family"


class MCCMapping(BaseModel):
    model_config = ConfigDict(frozen=True)

    category_slug: str
    category_name: str
    strength: MCCStrength
    base_confidence: float = Field(..., ge=0.0, le=1.0)


def _m(slug: str, strength: MCCStrength, confidence: float) -> Dict:
    category = default_taxonomy.require_slug(slug)
    return {
        "category_slug": slug,
        "category_name": category.name,
        "strength": strength,
        "base_confidence": confidence,
    }


EXACT = MCCStrength.EXACT
FAMILY = MCCStrength.FAMILY

MCC_MAPPINGS: Dict[str, MCCMapping] = {
    code: MCCMapping(**entry)
    for code, entry in {
        # Food & dining
        "5812": _m("meals_dining", EXACT, 0.90),
        "5814": _m("meals_dining", FAMILY, 0.75),

        # Fuel and transit
        "5541": _m("travel_vehicle", EXACT, 0.90),
        "5542": _m("travel_vehicle", EXACT, 0.90),
        "4111": _m("travel_vehicle", FAMILY, 0.75),
        "4121": _m("travel_vehicle", FAMILY, 0.75),

        # Software & telecom
        "4814": _m("software_subscriptions", EXACT, 0.90),
        "4815": _m("software_subscriptions", EXACT, 0.90),
        "7372": _m("software_subscriptions", EXACT, 0.90),
        "7379": _m("software_subscriptions", EXACT, 0.85),

        # Advertising
        "7311": _m("marketing_ads", EXACT, 0.85),

        # Utilities, professional services, insurance, office, licenses
        "4900": _m("general_administrative", EXACT, 0.90),
        "8931": _m("general_administrative", FAMILY, 0.75),
        "8999": _m("general_administrative", FAMILY, 0.70),
        "6300": _m("general_administrative", EXACT, 0.90),
        "5943": _m("general_administrative", FAMILY, 0.75),
        "9399": _m("general_administrative", FAMILY, 0.80),

        # Tax payments
        "9311": _m("sales_tax_payable", EXACT, 0.90),

        # Postal and courier
        "9402": _m("shipping_postage", EXACT, 0.90),
        "4214": _m("shipping_postage", FAMILY, 0.80),

        # Business services
        "7399": _m("operations_logistics", FAMILY, 0.65),
    }.items()
}


class MCCTable:
    """
    Lookup over the MCC mapping table.

    Usage:
        mapping = mcc_table.lookup("5812")
    """

    def __init__(self, mappings: Dict[str, MCCMapping] = None, taxonomy: Taxonomy = None):
        self.mappings = mappings if mappings is not None else MCC_MAPPINGS
        self.taxonomy = taxonomy or default_taxonomy

    def lookup(self, code: Optional[str]) -> Optional[MCCMapping]:
        if not code:
            return None
        return self.mappings.get(code.strip())

    def has_mapping(self, code: str) -> bool:
        return self.lookup(code) is not None

    def codes_for_category(self, slug: str) -> List[str]:
        return [code for code, m in self.mappings.items() if m.category_slug == slug]

    def is_compatible(self, code: Optional[str], slug: str) -> bool:
        """
        Check whether a category is plausible for a merchant code.

        Unknown codes constrain nothing. Known codes allow their own category or
        a sibling under the same umbrella parent.
        """
        mapping = self.lookup(code)
        if mapping is None:
            return True
        if mapping.category_slug == slug:
            return True
        mapped = self.taxonomy.get_by_slug(mapping.category_slug)
        target = self.taxonomy.get_by_slug(slug)
        if mapped is None or target is None:
            return False
        return mapped.parent_id == target.parent_id and not target.is_contra


# Singleton instance
mcc_table = MCCTable()
