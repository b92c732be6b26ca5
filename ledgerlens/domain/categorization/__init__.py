"""
Categorization Module - rule-first transaction categorization with AI fallback

Two-pass process:
1. Pass-1 (Rules): MCC codes, vendor patterns, keywords, versioned rules and
   learned vendor embeddings emit signals; the scorer fuses them into a
   calibrated confidence and guardrails enforce accounting invariants
2. Pass-2 (AI): when Pass-1 is missing or weak, Claude picks a category seeded
   with the Pass-1 evidence; guardrails check its answer too

Example flow:
- "JOE'S DINER #12", MCC 5812 → MCC exact signal → meals_dining (0.90)
- "STRIPE PAYOUT 01/15", +$5,234.21 → keyword payout → payouts_clearing
- "REFUND FOR ORDER #12345" proposed as dtc_sales → guardrail → refunds_contra (-0.4)
"""

from ledgerlens.domain.categorization.categorization_service import CategorizationService
from ledgerlens.domain.categorization.config import CanaryConfig, CategorizerConfig
from ledgerlens.domain.categorization.guardrails import GuardrailEngine, GuardrailProfile, apply_guardrails
from ledgerlens.domain.categorization.learning_loop import LearningLoop
from ledgerlens.domain.categorization.rule_engine import RuleEngine
from ledgerlens.domain.categorization.schemas import (
    CategorizationResult,
    NormalizedTransaction,
    Signal,
)
from ledgerlens.domain.categorization.scorer import score_signals
from ledgerlens.domain.categorization.taxonomy import Taxonomy, taxonomy

__all__ = [
    "CanaryConfig",
    "CategorizationResult",
    "CategorizationService",
    "CategorizerConfig",
    "GuardrailEngine",
    "GuardrailProfile",
    "LearningLoop",
    "NormalizedTransaction",
    "RuleEngine",
    "Signal",
    "Taxonomy",
    "apply_guardrails",
    "score_signals",
    "taxonomy",
]
