from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional

from loguru import logger

from .config import CallPolicy, TitleMatchPolicy
from .normalize import normalize_title
from .pipeline_types import CollaboratorError, Outcome, RowState, TitleMatch
from .ports import CatalogLookup
from .resilience import guarded_call


@dataclass
class TitleLookup:
    matches: List[TitleMatch] = field(default_factory=list)
    outcome: Outcome = field(default_factory=Outcome.ok)


@dataclass
class TitleDecision:
    state: RowState
    matches: List[TitleMatch]

    @property
    def top(self) -> Optional[TitleMatch]:
        return self.matches[0] if self.matches else None


def order_matches(matches: List[TitleMatch]) -> List[TitleMatch]:
    # similarity desc, variant id asc
    return sorted(matches, key=lambda m: (-m.similarity, m.variant.variant_id))


class FuzzyTitleMatcher:
    def __init__(
        self,
        catalog: CatalogLookup,
        policy: Optional[TitleMatchPolicy] = None,
        calls: Optional[CallPolicy] = None,
    ):
        self.catalog = catalog
        self.policy = policy or TitleMatchPolicy()
        self.calls = calls or CallPolicy()

    async def find(self, scope: str, title: str, limit: Optional[int] = None) -> TitleLookup:
        """
        Ranked (variant, similarity) pairs for `title` within `scope`.

        A failing similarity function yields an empty, degraded lookup
        instead of an exception, so the caller records a NONE placeholder.
        """
        key = normalize_title(title)
        if not key:
            return TitleLookup()

        limit = limit or self.policy.candidate_limit
        try:
            found = await guarded_call(
                "catalog.find_similar_titles",
                lambda: self.catalog.find_similar_titles(scope, key, limit),
                self.calls,
            )
        except CollaboratorError as e:
            logger.warning("Fuzzy title lookup failed for '{}': {}", key, e)
            return TitleLookup(outcome=Outcome.degraded("no_title_candidates", str(e)))

        return TitleLookup(matches=order_matches(list(found))[:limit])


def decide(matches: List[TitleMatch], policy: TitleMatchPolicy) -> TitleDecision:
    """
    Apply the title decision policy to an ordered match list.

    top > auto_match_above          -> TITLE_HIT with the single top match
    review_above < top <= auto      -> AMBIGUOUS with every match > review_above
    otherwise (or no matches)       -> NO_MATCH
    """
    if not matches:
        return TitleDecision(RowState.NO_MATCH, [])

    top = matches[0].similarity
    if top > policy.auto_match_above:
        return TitleDecision(RowState.TITLE_HIT, [matches[0]])
    if top > policy.review_above:
        plausible = [m for m in matches if m.similarity > policy.review_above]
        return TitleDecision(RowState.AMBIGUOUS, plausible)
    return TitleDecision(RowState.NO_MATCH, [])
