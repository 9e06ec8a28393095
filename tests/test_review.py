from datetime import datetime, timezone

import pytest

from catalog_match.pipeline_types import (
    MatchCandidate,
    MatchingError,
    MatchType,
    ReviewStatus,
    UserAction,
)
from catalog_match.review import apply_user_action, pending_review, resolve_group

AT = datetime(2024, 5, 1, tzinfo=timezone.utc)


def _mc(variant_id, item_id="item-1", status=ReviewStatus.NEEDS_REVIEW, match_type=MatchType.TITLE):
    return MatchCandidate(item_id=item_id, variant_id=variant_id, match_type=match_type, confidence=0.7, status=status)


def test_accept_and_reject():
    accepted = apply_user_action(_mc("v1"), UserAction.ACCEPT, AT)
    assert accepted.status == ReviewStatus.USER_CONFIRMED
    assert accepted.user_action == UserAction.ACCEPT
    assert accepted.user_action_at == AT

    assert apply_user_action(_mc("v1"), UserAction.REJECT).status == ReviewStatus.USER_REJECTED
    assert apply_user_action(_mc("v1"), UserAction.CREATE_NEW).status == ReviewStatus.USER_REJECTED


def test_ignore_keeps_status_and_original_untouched():
    original = _mc("v1")
    ignored = apply_user_action(original, UserAction.IGNORE, AT)
    assert ignored.status == ReviewStatus.NEEDS_REVIEW
    assert ignored.user_action == UserAction.IGNORE
    assert original.user_action is None


def test_cannot_accept_placeholder():
    placeholder = _mc(None, status=ReviewStatus.NO_MATCH, match_type=MatchType.NONE)
    with pytest.raises(MatchingError):
        apply_user_action(placeholder, UserAction.ACCEPT)


def test_resolve_group():
    resolved = resolve_group([_mc("v1"), _mc("v2"), _mc("v3")], "v2", AT)
    assert [c.status for c in resolved] == [
        ReviewStatus.USER_REJECTED,
        ReviewStatus.USER_CONFIRMED,
        ReviewStatus.USER_REJECTED,
    ]


def test_resolve_group_validation():
    with pytest.raises(MatchingError):
        resolve_group([_mc("v1"), _mc("v2", item_id="item-2")], "v1")
    with pytest.raises(MatchingError):
        resolve_group([_mc("v1")], "v9")


def test_pending_review():
    done = apply_user_action(_mc("v2"), UserAction.IGNORE)
    auto = _mc("v3", status=ReviewStatus.AUTO_MATCHED)
    assert [c.variant_id for c in pending_review([_mc("v1"), done, auto])] == ["v1"]
