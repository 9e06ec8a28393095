from __future__ import annotations

from typing import Optional

from .config import ConfidenceThresholds
from .pipeline_types import ConfidenceTier, SystemAction


def confidence_tier(top_score: float, thresholds: Optional[ConfidenceThresholds] = None) -> ConfidenceTier:
    t = thresholds or ConfidenceThresholds()
    if top_score < t.no_match_floor:
        return ConfidenceTier.LOW
    if top_score >= t.high:
        return ConfidenceTier.HIGH
    if top_score >= t.medium:
        return ConfidenceTier.MEDIUM
    return ConfidenceTier.LOW


def system_action(tier: ConfidenceTier, candidate_count: int) -> SystemAction:
    if candidate_count <= 0:
        return SystemAction.FALLBACK_TO_MANUAL
    if tier == ConfidenceTier.HIGH:
        return SystemAction.SHOW_SINGLE_MATCH
    if tier == ConfidenceTier.MEDIUM:
        return SystemAction.SHOW_MULTIPLE_CANDIDATES
    return SystemAction.FALLBACK_TO_EXTERNAL


def route(
    top_score: float,
    candidate_count: int,
    thresholds: Optional[ConfidenceThresholds] = None,
):
    tier = confidence_tier(top_score, thresholds)
    return tier, system_action(tier, candidate_count)


# explanation text per score band, highest first
EXPLANATION_BANDS = [
    (0.80, "Excellent match with high confidence"),
    (0.65, "Very good match with strong similarity"),
    (0.50, "Good match with moderate similarity"),
    (0.35, "Fair match with some similarity"),
]
LOW_EXPLANATION = "Low similarity match"


def explain_score(score: float) -> str:
    for floor, text in EXPLANATION_BANDS:
        if score >= floor:
            return text
    return LOW_EXPLANATION
