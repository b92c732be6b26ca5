"""
Confidence calibration shared by Pass-1 scoring and the generative fallback

Evidence from a group of agreeing signals is combined with a noisy-OR:

    evidence = 1 - prod(1 - c_i)

and then capped by a ceiling that depends on how specific the strongest
signal is, plus a small bonus for every extra agreeing signal. Both terms only
grow when a signal is added, so calibrated confidence is monotone in the
evidence.
"""
import math
from typing import Iterable, List, Optional, Union

from ledgerlens.domain.categorization.schemas import SignalStrength

STRENGTH_CEILINGS = {
    SignalStrength.EXACT: 0.92,
    SignalStrength.STRONG: 0.85,
    SignalStrength.MEDIUM: 0.72,
    SignalStrength.WEAK: 0.55,
}

STRENGTH_RANK = {
    SignalStrength.WEAK: 0,
    SignalStrength.MEDIUM: 1,
    SignalStrength.STRONG: 2,
    SignalStrength.EXACT: 3,
}

AGREEMENT_BONUS_STEP = 0.05
MAX_AGREEMENT_BONUS = 0.10
HARD_CAP = 0.98
EVIDENCE_FLOOR = 0.05

LLM_TEMPERATURE = 2.5
LLM_MIN_CONFIDENCE = 0.25
LLM_MAX_CONFIDENCE = 0.95
STRONG_PASS1_THRESHOLD = 0.8
DISAGREEMENT_MARGIN = 0.05


def strongest(strengths: Iterable[SignalStrength]) -> Optional[SignalStrength]:
    ranked = sorted(strengths, key=lambda s: STRENGTH_RANK[s], reverse=True)
    return ranked[0] if ranked else None


def noisy_or(confidences: Iterable[float]) -> float:
    remaining = 1.0
    for c in confidences:
        remaining *= 1.0 - min(1.0, max(0.0, c))
    return 1.0 - remaining


def calibrate_confidence(
    confidences: Union[float, List[float]],
    evidence_count: int,
    strongest_strength: SignalStrength,
) -> float:
    """
    Calibrated confidence for a group of agreeing signals.

    Args:
        confidences: Per-signal confidences, or one pre-combined value
        evidence_count: Number of agreeing signals
        strongest_strength: Most specific strength in the group

    Returns:
        Confidence in [0, 0.98]; 0 only when there is no evidence at all
    """
    if isinstance(confidences, (int, float)):
        evidence = min(1.0, max(0.0, float(confidences)))
    else:
        evidence = noisy_or(confidences)

    if evidence_count <= 0:
        return 0.0

    bonus = min(MAX_AGREEMENT_BONUS, AGREEMENT_BONUS_STEP * (evidence_count - 1))
    ceiling = min(HARD_CAP, STRENGTH_CEILINGS[strongest_strength] + bonus)

    return max(EVIDENCE_FLOOR, min(ceiling, evidence))


def temperature_scale(raw: float, temperature: float = LLM_TEMPERATURE) -> float:
    """Shrink an over-confident probability toward 0.5 in logit space."""
    eps = 1e-10
    p = min(1.0 - eps, max(eps, raw))
    logit = math.log(p / (1.0 - p))
    return 1.0 / (1.0 + math.exp(-logit / temperature))


def calibrate_llm_confidence(
    raw_confidence: float,
    pass1_confidence: Optional[float] = None,
    agrees_with_pass1: bool = False,
) -> float:
    """
    Calibrate a self-reported model confidence.

    Temperature scaling first, then the shared calibration with the model
    treated as one STRONG signal. A strong Pass-1 that agrees counts as a second
    signal; a strong Pass-1 that disagrees caps the answer just below it.

    Returns:
        Confidence clamped to [0.25, 0.95]
    """
    scaled = temperature_scale(raw_confidence)
    strong_pass1 = pass1_confidence is not None and pass1_confidence >= STRONG_PASS1_THRESHOLD

    if strong_pass1 and agrees_with_pass1:
        calibrated = calibrate_confidence([scaled, pass1_confidence], 2, SignalStrength.STRONG)
    else:
        calibrated = calibrate_confidence(scaled, 1, SignalStrength.STRONG)
        if strong_pass1:
            calibrated = min(calibrated, pass1_confidence - DISAGREEMENT_MARGIN)

    return max(LLM_MIN_CONFIDENCE, min(LLM_MAX_CONFIDENCE, calibrated))
