from __future__ import annotations

import re
from dataclasses import dataclass
from typing import List, Sequence, Tuple

from loguru import logger
from rapidfuzz import fuzz

from .pipeline_types import Candidate, ConfidenceTier
from .ports import RemoteReranker

STOP_WORDS = frozenset(
    """
    the a an and or but in on at to for of with by is are was were be been
    have has had do does did will would could should can may might
    """.split()
)
MAX_KEYWORDS = 10
ENTITY_TOKENS = 3
ENTITY_BOOST = 0.2

W_EXACT = 0.5
W_FUZZY = 0.25
W_TITLE = 0.15
W_VECTOR = 0.1

HIGH_TIER = 0.6
MEDIUM_TIER = 0.3

_NON_WORD_RE = re.compile(r"[^\w\s]")
_WS_RE = re.compile(r"\s+")


def _normalize(text: str) -> str:
    return _WS_RE.sub(" ", _NON_WORD_RE.sub(" ", (text or "").lower())).strip()


def extract_keywords(text: str) -> List[str]:
    return [w for w in _normalize(text).split(" ") if len(w) >= 2 and w not in STOP_WORDS][:MAX_KEYWORDS]


def _fuzzy_keyword_score(keywords: Sequence[str], text: str) -> float:
    if not keywords:
        return 0.0
    total = 0.0
    for kw in keywords:
        if kw in text:
            total += 1.0
        else:
            # partial credit for OCR-mangled tokens
            total += fuzz.partial_ratio(kw, text) / 100.0 * 0.6 if len(kw) >= 4 else 0.0
    return total / len(keywords)


def _title_jaccard(query: str, title: str) -> float:
    a = {w for w in _normalize(query).split(" ") if len(w) >= 2}
    b = {w for w in _normalize(title).split(" ") if len(w) >= 2}
    union = a | b
    return len(a & b) / len(union) if union else 0.0


@dataclass
class KeywordScore:
    score: float
    exact: float
    fuzzy: float
    title: float
    method: str


def score_text(query: str, text: str, title: str = "", vector_score: float = 0.0) -> KeywordScore:
    keywords = extract_keywords(query)
    haystack = _normalize(text)
    exact = sum(1 for k in keywords if k in haystack) / max(len(keywords), 1)
    fuzzy = _fuzzy_keyword_score(keywords, haystack)
    title_sim = _title_jaccard(query, title or text)
    boost = ENTITY_BOOST if any(k in haystack for k in keywords[:ENTITY_TOKENS]) else 0.0
    score = exact * W_EXACT + fuzzy * W_FUZZY + title_sim * W_TITLE + vector_score * W_VECTOR + boost

    if exact > 0.3:
        method = "exact_match"
    elif fuzzy > 0.4:
        method = "fuzzy_match"
    elif title_sim > 0.6:
        method = "semantic_similarity"
    else:
        method = "vector_fallback"
    return KeywordScore(min(1.0, score), exact, fuzzy, title_sim, method)


class KeywordReranker(RemoteReranker):
    """
    In-process reranker for OCR / keyword-heavy queries.

    Usable wherever a remote reranker is expected; scores are in [0, 1].
    """

    name = "keyword"

    async def rerank(self, query: str, documents: Sequence[str], top_k: int) -> List[float]:
        return [score_text(query, doc).score for doc in documents]

    def rank(
        self,
        query: str,
        candidates: Sequence[Candidate],
        max_results: int = 10,
    ) -> Tuple[List[Tuple[Candidate, KeywordScore]], ConfidenceTier]:
        scored = [
            (c, score_text(query, f"{c.title} {c.description}", c.title, c.score))
            for c in candidates
        ]
        scored.sort(key=lambda t: (-t[1].score, -t[0].score, t[0].candidate_id))
        scored = scored[:max_results]

        top = scored[0][1].score if scored else 0.0
        if top >= HIGH_TIER:
            tier = ConfidenceTier.HIGH
        elif top >= MEDIUM_TIER:
            tier = ConfidenceTier.MEDIUM
        else:
            tier = ConfidenceTier.LOW

        if scored:
            logger.info(
                "Keyword rerank of {} candidates: top={:.4f} ({}) tier={}",
                len(candidates),
                top,
                scored[0][1].method,
                tier.value,
            )
        return scored, tier
