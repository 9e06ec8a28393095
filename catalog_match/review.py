from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timezone
from typing import List, Optional, Sequence

from loguru import logger

from .pipeline_types import MatchCandidate, MatchingError, MatchType, ReviewStatus, UserAction

_STATUS_FOR_ACTION = {
    UserAction.ACCEPT: ReviewStatus.USER_CONFIRMED,
    UserAction.REJECT: ReviewStatus.USER_REJECTED,
    UserAction.CREATE_NEW: ReviewStatus.USER_REJECTED,
}


def apply_user_action(
    candidate: MatchCandidate,
    action: UserAction,
    at: Optional[datetime] = None,
) -> MatchCandidate:
    """
    Record a reviewer's decision on one MatchCandidate (returns a copy).

    IGNORE keeps the computed status; CREATE_NEW rejects the proposed
    variant in favour of a new catalog entry.
    """
    if action == UserAction.ACCEPT and candidate.match_type == MatchType.NONE:
        raise MatchingError(f"item {candidate.item_id}: cannot accept a placeholder without a variant")
    status = _STATUS_FOR_ACTION.get(action, candidate.status)
    return replace(
        candidate,
        status=status,
        user_action=action,
        user_action_at=at or datetime.now(timezone.utc),
    )


def resolve_group(
    candidates: Sequence[MatchCandidate],
    accepted_variant_id: str,
    at: Optional[datetime] = None,
) -> List[MatchCandidate]:
    """
    Accept one candidate of an ambiguous item and reject its siblings.

    All candidates must belong to the same item.
    """
    item_ids = {c.item_id for c in candidates}
    if len(item_ids) != 1:
        raise MatchingError(f"resolve_group expects candidates of one item, got {sorted(item_ids)}")
    if accepted_variant_id not in {c.variant_id for c in candidates}:
        raise MatchingError(f"variant {accepted_variant_id} is not among the candidates")

    at = at or datetime.now(timezone.utc)
    out = [
        apply_user_action(c, UserAction.ACCEPT if c.variant_id == accepted_variant_id else UserAction.REJECT, at)
        for c in candidates
    ]
    logger.info("Resolved item {} to variant {} ({} siblings rejected)", next(iter(item_ids)), accepted_variant_id, len(out) - 1)
    return out


def pending_review(candidates: Sequence[MatchCandidate]) -> List[MatchCandidate]:
    return [c for c in candidates if c.status == ReviewStatus.NEEDS_REVIEW and c.user_action is None]
