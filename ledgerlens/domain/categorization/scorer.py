"""
Signal scorer - fuse Pass-1 evidence into ranked candidates

Signals are grouped by category. Each group scores
sum(confidence x strength weight) and gets a calibrated confidence from the
shared calibration function. The highest score wins; ties go to the category
backed by the most trusted source (mcc > vendor > embedding > keyword > llm).
"""
import statistics
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from ledgerlens.domain.categorization.calibration import calibrate_confidence, strongest
from ledgerlens.domain.categorization.schemas import (
    CategoryCandidate,
    Signal,
    SignalSource,
    SignalStrength,
)

STRENGTH_WEIGHTS = {
    SignalStrength.EXACT: 1.0,
    SignalStrength.STRONG: 0.8,
    SignalStrength.MEDIUM: 0.5,
    SignalStrength.WEAK: 0.25,
}

SOURCE_PRIORITY = {
    SignalSource.MCC: 5,
    SignalSource.VENDOR: 4,
    SignalSource.EMBEDDING: 3,
    SignalSource.KEYWORD: 2,
    SignalSource.LLM: 1,
}

COMPETING_MARGIN = 0.2
MAX_SUPPORTING = 2


class ScoringResult(BaseModel):
    best: Optional[CategoryCandidate] = None
    candidates: List[CategoryCandidate] = Field(default_factory=list)
    rationale: List[str] = Field(default_factory=list)


class ConfidenceDistribution(BaseModel):
    count: int = 0
    mean: float = 0.0
    median: float = 0.0
    p25: float = 0.0
    p75: float = 0.0
    p90: float = 0.0
    low: int = Field(0, description="confidence < 0.5")
    medium: int = Field(0, description="0.5 <= confidence < 0.8")
    high: int = Field(0, description="confidence >= 0.8")


def _dominant(signals: List[Signal]) -> Signal:
    return max(signals, key=lambda s: (s.confidence * STRENGTH_WEIGHTS[s.strength], SOURCE_PRIORITY[s.source]))


def _score_group(signals: List[Signal]) -> CategoryCandidate:
    first = signals[0]
    score = sum(s.confidence * STRENGTH_WEIGHTS[s.strength] for s in signals)
    confidence = calibrate_confidence(
        [s.confidence for s in signals],
        len(signals),
        strongest(s.strength for s in signals),
    )
    return CategoryCandidate(
        category_id=first.category_id,
        category_name=first.category_name,
        score=round(score, 6),
        confidence=confidence,
        signals=list(signals),
    )


def _best_source(candidate: CategoryCandidate) -> int:
    return max(SOURCE_PRIORITY[s.source] for s in candidate.signals)


def score_signals(signals: List[Signal]) -> ScoringResult:
    """
    Rank categories by aggregated evidence.

    Args:
        signals: Evidence from every Pass-1 source

    Returns:
        ScoringResult with the best candidate (or None), all candidates and a
        rationale trail
    """
    if not signals:
        return ScoringResult(rationale=["No categorization signals found"])

    groups: Dict[str, List[Signal]] = {}
    for signal in signals:
        groups.setdefault(signal.category_id, []).append(signal)

    candidates = [_score_group(group) for group in groups.values()]
    candidates.sort(key=lambda c: (c.score, _best_source(c), c.confidence), reverse=True)
    best = candidates[0]

    dominant = _dominant(best.signals)
    rationale = [
        f"best: {best.category_name} (confidence: {best.confidence:.3f})",
        f"dominant: {dominant.source.value}:{dominant.evidence_key} -> {dominant.rationale or dominant.category_name}",
    ]
    supporting = [s for s in best.signals if s is not dominant][:MAX_SUPPORTING]
    for signal in supporting:
        rationale.append(
            f"supporting: {signal.source.value}:{signal.evidence_key} -> {signal.rationale or signal.category_name}"
        )
    if len(candidates) > 1:
        runner_up = candidates[1]
        diff = best.score - runner_up.score
        if diff < COMPETING_MARGIN:
            rationale.append(f"competing: {runner_up.category_name} (score diff: {diff:.3f})")

    return ScoringResult(best=best, candidates=candidates, rationale=rationale)


def _percentile(ordered: List[float], q: float) -> float:
    if len(ordered) == 1:
        return ordered[0]
    position = (len(ordered) - 1) * q
    lower = int(position)
    upper = min(lower + 1, len(ordered) - 1)
    return ordered[lower] + (ordered[upper] - ordered[lower]) * (position - lower)


def confidence_distribution(confidences: List[float]) -> ConfidenceDistribution:
    """Summary statistics for a batch of confidences."""
    if not confidences:
        return ConfidenceDistribution()

    ordered = sorted(confidences)
    return ConfidenceDistribution(
        count=len(ordered),
        mean=statistics.fmean(ordered),
        median=statistics.median(ordered),
        p25=_percentile(ordered, 0.25),
        p75=_percentile(ordered, 0.75),
        p90=_percentile(ordered, 0.90),
        low=sum(1 for c in ordered if c < 0.5),
        medium=sum(1 for c in ordered if 0.5 <= c < 0.8),
        high=sum(1 for c in ordered if c >= 0.8),
    )
