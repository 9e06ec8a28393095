from __future__ import annotations

import math
import time
from typing import Dict, List, Optional, Sequence

from loguru import logger

from .config import CallPolicy, FusionWeights, MatchingConfig, RerankWeights
from .normalize import count_punctuation, url_host, words
from .pipeline_types import (
    Candidate,
    CollaboratorError,
    ConfidenceTier,
    Outcome,
    RankedCandidate,
    RankingResult,
    SystemAction,
)
from .ports import RemoteReranker
from .resilience import guarded_call
from .routing import explain_score, route

FALLBACK_EXPLANATION = "Fallback scoring due to reranker error"
FALLBACK_MODEL = "fallback"
VECTOR_ONLY_MODEL = "vector-only"

DEFAULT_QUERY = "Find the best matching product for this search"
MAX_DOC_DESCRIPTION_CHARS = 500


# ---------------------------------------------------------------------------
# Query / document text
# ---------------------------------------------------------------------------

def synthesize_query(text_query: Optional[str] = None, image_url: Optional[str] = None) -> str:
    """Free-text query for the reranker; image context wins over plain text."""
    if image_url:
        query = (
            f"Find the EXACT MATCHING product shown in this image: {image_url}. "
            "Match brand, model and variant; similar-looking products are not a match."
        )
        if text_query and text_query.strip():
            query += f" Additional context: {text_query.strip()}"
        return query
    if text_query and text_query.strip():
        return text_query.strip()
    return DEFAULT_QUERY


def build_candidate_text(c: Candidate) -> str:
    bits = [c.title.strip()]
    if c.description:
        bits.append(c.description.strip()[:MAX_DOC_DESCRIPTION_CHARS])
    if c.price is not None and c.price > 0:
        bits.append(f"Price: ${c.price:.2f}")
    host = url_host(c.source_url)
    if host:
        bits.append(f"Source: {host}")
    return " ".join(b for b in bits if b).strip()


# ---------------------------------------------------------------------------
# Scoring primitives
# ---------------------------------------------------------------------------

def _clamp01(x: float) -> float:
    x = float(x)
    if math.isnan(x):
        return 0.0
    return max(0.0, min(1.0, x))


def basic_similarity(query: str, text: str) -> float:
    """Share of query words found in `text`, over the longer word list."""
    qwords = words(query)
    twords = words(text)
    if not qwords or not twords:
        return 0.0
    present = set(twords)
    hits = sum(1 for w in qwords if w in present)
    return hits / max(len(qwords), len(twords))


def vector_hybrid(c: Candidate, weights: Optional[FusionWeights] = None) -> float:
    w = weights or FusionWeights()
    combined = _clamp01(c.score)
    if c.image_similarity is None and c.text_similarity is None:
        return combined
    img = _clamp01(c.image_similarity or 0.0)
    txt = _clamp01(c.text_similarity or 0.0)
    return max(combined, w.hybrid_image_weight * img + w.hybrid_text_weight * txt)


def fuse_score(base: float, hybrid: float, weights: Optional[RerankWeights] = None) -> float:
    w = weights or RerankWeights()
    bonus = w.high_vector_bonus if hybrid >= w.high_vector_threshold else 0.0
    return min(1.0, w.reranker_weight * _clamp01(base) + w.vector_weight * hybrid + bonus)


def is_reputable_host(url: Optional[str], hosts: Sequence[str]) -> bool:
    host = url_host(url)
    if not host:
        return False
    return any(host == h or host.endswith("." + h) for h in hosts)


def heuristic_bonuses(query: str, c: Candidate, weights: Optional[RerankWeights] = None) -> Dict[str, float]:
    """Each bonus is individually capped; the caller sums and clamps."""
    w = weights or RerankWeights()
    punct = count_punctuation(c.title)
    clean_title = max(0.0, 1.0 - min(1.0, punct / w.clean_title_punctuation_cap)) * w.clean_title_max
    price = w.price_boost if (c.price is not None and c.price > 0) else 0.0
    host = w.host_boost if is_reputable_host(c.source_url, w.reputable_hosts) else 0.0
    overlap = basic_similarity(query, f"{c.title} {c.description}")
    token = min(w.token_overlap_max, overlap * w.token_overlap_factor)
    return {"clean_title": clean_title, "price": price, "host": host, "token_overlap": token}


def adjusted_score(query: str, base: float, c: Candidate, cfg: MatchingConfig) -> float:
    hybrid = vector_hybrid(c, cfg.fusion)
    fused = fuse_score(base, hybrid, cfg.rerank)
    bonus = sum(heuristic_bonuses(query, c, cfg.rerank).values())
    return _clamp01(fused + bonus)


# ---------------------------------------------------------------------------
# Deterministic ordering
# ---------------------------------------------------------------------------

def order_and_rank(items: List[RankedCandidate]) -> List[RankedCandidate]:
    """Sort by adjusted score desc, raw vector score desc, id asc; ranks 1..N."""
    items = sorted(items, key=lambda r: (-r.score, -r.candidate.score, r.candidate.candidate_id))
    for i, item in enumerate(items, start=1):
        item.rank = i
    return items


# ---------------------------------------------------------------------------
# Main entry
# ---------------------------------------------------------------------------

class ScoreFusionReranker:
    """
    Fuses a remote reranker's relevance with vector similarity and a few
    capped heuristics, then routes the top score to a confidence tier.

    Without a remote reranker the vector-hybrid score stands in for the
    base relevance. When the remote call fails, candidates are scored by
    token overlap against their title and the result is forced to low
    confidence.
    """

    def __init__(
        self,
        reranker: Optional[RemoteReranker] = None,
        config: Optional[MatchingConfig] = None,
        calls: Optional[CallPolicy] = None,
    ):
        self.reranker = reranker
        self.config = config or MatchingConfig()
        self.calls = calls or self.config.calls

    @property
    def model_name(self) -> str:
        if self.reranker is None:
            return VECTOR_ONLY_MODEL
        return getattr(self.reranker, "name", "remote")

    async def _base_scores(self, query: str, candidates: Sequence[Candidate]) -> List[float]:
        docs = [build_candidate_text(c) for c in candidates]
        scores = await guarded_call(
            "reranker",
            lambda: self.reranker.rerank(query, docs, len(docs)),
            self.calls,
        )
        scores = list(scores)
        if len(scores) != len(docs):
            raise CollaboratorError("reranker", f"returned {len(scores)} scores for {len(docs)} candidates")
        return [float(s) for s in scores]

    def _fallback(self, query: str, candidates: Sequence[Candidate]) -> List[RankedCandidate]:
        ranked = [
            RankedCandidate(
                candidate=c,
                score=_clamp01(basic_similarity(query, c.title)),
                rank=0,
                explanation=FALLBACK_EXPLANATION,
            )
            for c in candidates
        ]
        return order_and_rank(ranked)

    async def rank(
        self,
        query: str,
        candidates: Sequence[Candidate],
        max_results: Optional[int] = None,
    ) -> RankingResult:
        started = time.perf_counter()
        query = query.strip() if query and query.strip() else DEFAULT_QUERY
        candidates = list(candidates)
        max_results = max_results or len(candidates)

        if not candidates:
            tier, action = route(0.0, 0, self.config.thresholds)
            return RankingResult(query, [], tier, action, self.model_name)

        outcome = Outcome.ok()
        if self.reranker is None:
            bases = [vector_hybrid(c, self.config.fusion) for c in candidates]
            outcome = Outcome.degraded("vector_only")
        else:
            try:
                bases = await self._base_scores(query, candidates)
            except CollaboratorError as e:
                logger.warning("Remote reranker unavailable, using token-overlap fallback: {}", e)
                ranked = self._fallback(query, candidates)[:max_results]
                return RankingResult(
                    query=query,
                    candidates=ranked,
                    tier=ConfidenceTier.LOW,
                    action=SystemAction.FALLBACK_TO_EXTERNAL,
                    model=FALLBACK_MODEL,
                    outcome=Outcome.degraded("token_overlap", str(e)),
                    processing_ms=(time.perf_counter() - started) * 1000.0,
                )

        ranked: List[RankedCandidate] = []
        for c, base in zip(candidates, bases):
            score = adjusted_score(query, base, c, self.config)
            ranked.append(RankedCandidate(candidate=c, score=score, rank=0, explanation=explain_score(score), base_score=base))

        ranked = order_and_rank(ranked)[:max_results]
        tier, action = route(ranked[0].score, len(ranked), self.config.thresholds)
        elapsed = (time.perf_counter() - started) * 1000.0

        logger.info(
            "Reranked {} candidates with {} in {:.1f}ms: top={:.3f} tier={}",
            len(candidates),
            self.model_name,
            elapsed,
            ranked[0].score,
            tier.value,
        )
        return RankingResult(query, ranked, tier, action, self.model_name, outcome, elapsed)


async def rerank_candidates(
    query: str,
    candidates: Sequence[Candidate],
    reranker: Optional[RemoteReranker] = None,
    config: Optional[MatchingConfig] = None,
    max_results: Optional[int] = None,
) -> RankingResult:
    return await ScoreFusionReranker(reranker, config).rank(query, candidates, max_results)
