"""
Match interaction log and the acceptance metrics computed from it.

Every reranked match is recorded with its scores, tier and action; user
picks and rejections are recorded against the same match id. The
metrics are what offline recalibration of boosts and thresholds reads.
"""

from __future__ import annotations

import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pandas as pd
from loguru import logger

from .pipeline_types import ConfidenceTier, RankingResult

TIERS = [t.value for t in ConfidenceTier]


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Interaction:
    match_id: str
    scope: str
    query: str
    candidate_ids: List[str]
    vector_scores: List[float]
    reranked_scores: List[float]
    tier: str
    action: str
    model: str
    processing_ms: float
    created_at: datetime = field(default_factory=_now)


@dataclass
class UserFeedback:
    match_id: str
    selected_index: Optional[int]
    rejected: bool
    text: Optional[str] = None
    created_at: datetime = field(default_factory=_now)

    @property
    def positive(self) -> bool:
        return self.selected_index is not None and not self.rejected


class InteractionLog:
    def __init__(self) -> None:
        self._interactions: List[Interaction] = []
        self._feedback: List[UserFeedback] = []
        self._lock = threading.Lock()

    def record_interaction(self, match_id: str, scope: str, query: str, result: RankingResult) -> Interaction:
        item = Interaction(
            match_id=match_id,
            scope=scope,
            query=query,
            candidate_ids=[r.candidate.candidate_id for r in result.candidates],
            vector_scores=[r.candidate.score for r in result.candidates],
            reranked_scores=[r.score for r in result.candidates],
            tier=result.tier.value,
            action=result.action.value,
            model=result.model,
            processing_ms=result.processing_ms,
        )
        with self._lock:
            self._interactions.append(item)
        logger.debug("Logged match interaction {} ({} candidates, tier={})", match_id, len(item.candidate_ids), item.tier)
        return item

    def record_feedback(
        self,
        match_id: str,
        selected_index: Optional[int] = None,
        rejected: bool = False,
        text: Optional[str] = None,
    ) -> UserFeedback:
        fb = UserFeedback(match_id=match_id, selected_index=selected_index, rejected=rejected, text=text)
        with self._lock:
            self._feedback.append(fb)
        logger.info("User feedback for {}: selected={} rejected={}", match_id, selected_index, rejected)
        return fb

    # ---------- frames ----------

    def interactions_frame(self) -> pd.DataFrame:
        with self._lock:
            rows = [asdict(i) for i in self._interactions]
        return pd.DataFrame(rows, columns=list(Interaction.__dataclass_fields__))

    def feedback_frame(self) -> pd.DataFrame:
        with self._lock:
            rows = [{**asdict(f), "positive": f.positive} for f in self._feedback]
        return pd.DataFrame(rows, columns=list(UserFeedback.__dataclass_fields__) + ["positive"])

    # ---------- metrics ----------

    def performance_metrics(self, days: int = 7, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Matching performance over the last `days` days:

            total_matches, tier_distribution, acceptance_rate,
            avg_processing_ms, tier_accuracy (positive share per tier)
        """
        since = (now or _now()) - timedelta(days=days)
        inter = self.interactions_frame()
        if not inter.empty:
            inter = inter[inter["created_at"] >= since]

        empty = {
            "total_matches": 0,
            "tier_distribution": {t: 0 for t in TIERS},
            "acceptance_rate": 0.0,
            "avg_processing_ms": 0.0,
            "tier_accuracy": {t: 0.0 for t in TIERS},
        }
        if inter.empty:
            return empty

        counts = inter["tier"].value_counts()
        distribution = {t: int(counts.get(t, 0)) for t in TIERS}

        fb = self.feedback_frame()
        if not fb.empty:
            # last word per match wins
            fb = fb.sort_values("created_at", kind="stable").drop_duplicates("match_id", keep="last")
        joined = inter.merge(fb[["match_id", "positive"]], on="match_id", how="inner") if not fb.empty else fb

        acceptance = float(joined["positive"].mean()) if len(joined) else 0.0
        accuracy = {t: 0.0 for t in TIERS}
        if len(joined):
            per_tier = joined.groupby("tier")["positive"].mean()
            for t in TIERS:
                if t in per_tier.index:
                    accuracy[t] = float(per_tier[t])

        return {
            "total_matches": int(len(inter)),
            "tier_distribution": distribution,
            "acceptance_rate": acceptance,
            "avg_processing_ms": float(inter["processing_ms"].mean()),
            "tier_accuracy": accuracy,
        }
