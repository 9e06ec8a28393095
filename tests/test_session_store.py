import asyncio
from datetime import timedelta

import pytest

from catalog_match.pipeline_types import (
    Candidate,
    ConfidenceTier,
    Outcome,
    RankedCandidate,
    SessionError,
    SourceKind,
    Stage,
    SystemAction,
)
from catalog_match.session_store import (
    ACCESS_DENIED,
    InMemorySessionStore,
    OrchestratorSession,
    SourceMatch,
    SourceRecognition,
)


def _recognition():
    c = Candidate(product_id="p1", variant_id="v1", title="Red Shoe", score=0.9)
    return SourceRecognition(
        index=0,
        kind=SourceKind.IMAGE,
        reference="https://img.example/1.jpg",
        candidates=[c],
        confidence=ConfidenceTier.HIGH,
        outcome=Outcome.degraded("external_only", "index offline"),
    )


def test_create_and_get_scoped():
    store = InMemorySessionStore()
    session = store.create("shop-a", {"text_query": "red shoe"})
    assert session.session_id.startswith("orch_")
    assert session.current_stage == Stage.RECOGNIZE
    assert store.get(session.session_id, "shop-a") is session


def test_foreign_scope_and_unknown_ids_denied():
    store = InMemorySessionStore()
    session = store.create("shop-a")
    with pytest.raises(SessionError, match=ACCESS_DENIED):
        store.get(session.session_id, "shop-b")
    with pytest.raises(SessionError):
        store.get("orch_missing", "shop-a")


def test_expired_session_is_removed_on_access():
    store = InMemorySessionStore(max_age=timedelta(hours=1))
    session = store.create("shop")
    session.created_at -= timedelta(hours=2)
    with pytest.raises(SessionError):
        store.get(session.session_id, "shop")
    assert store.count() == 0


def test_sweep_expired_keeps_fresh_sessions():
    store = InMemorySessionStore()
    old = store.create("shop")
    fresh = store.create("shop")
    old.created_at -= timedelta(hours=30)
    assert store.sweep_expired() == 1
    assert store.count() == 1
    assert store.get(fresh.session_id, "shop") is fresh


@pytest.mark.asyncio
async def test_sweep_skips_session_mid_transition():
    store = InMemorySessionStore()
    session = store.create("shop")
    async with store.transition(session.session_id, "shop"):
        session.created_at -= timedelta(hours=30)
        assert store.sweep_expired() == 0


@pytest.mark.asyncio
async def test_transitions_are_serialized():
    store = InMemorySessionStore()
    session = store.create("shop")
    order = []

    async def writer(name):
        async with store.transition(session.session_id, "shop") as s:
            order.append(f"{name}-in")
            await asyncio.sleep(0.01)
            s.request.setdefault("writers", []).append(name)
            order.append(f"{name}-out")

    await asyncio.gather(writer("a"), writer("b"))
    # no interleaving
    assert order in (["a-in", "a-out", "b-in", "b-out"], ["b-in", "b-out", "a-in", "a-out"])
    assert sorted(store.get(session.session_id, "shop").request["writers"]) == ["a", "b"]


@pytest.mark.asyncio
async def test_transition_not_saved_on_error():
    store = InMemorySessionStore()
    session = store.create("shop")
    before = session.updated_at
    with pytest.raises(RuntimeError):
        async with store.transition(session.session_id, "shop") as s:
            s.current_stage = Stage.MATCH
            raise RuntimeError("stage failed")
    stored = store.get(session.session_id, "shop")
    assert stored.current_stage == Stage.RECOGNIZE
    assert stored.updated_at == before


@pytest.mark.asyncio
async def test_cancelled_transition_leaves_session_untouched():
    store = InMemorySessionStore()
    session = store.create("shop")
    entered = asyncio.Event()

    async def slow_writer():
        async with store.transition(session.session_id, "shop") as s:
            s.current_stage = Stage.GENERATE
            entered.set()
            await asyncio.sleep(10)

    task = asyncio.create_task(slow_writer())
    await entered.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert store.get(session.session_id, "shop").current_stage == Stage.RECOGNIZE
    # the lock was released, so the next writer gets in
    async with store.transition(session.session_id, "shop") as s:
        s.current_stage = Stage.MATCH
    assert store.get(session.session_id, "shop").current_stage == Stage.MATCH


def test_session_dict_round_trip():
    session = OrchestratorSession(session_id="orch_1", scope="shop")
    session.recognition = [_recognition()]
    ranked = RankedCandidate(session.recognition[0].candidates[0], 0.91, 1, "Excellent match", 0.8)
    session.matches = [
        SourceMatch(index=0, ranked=[ranked], confidence=ConfidenceTier.HIGH, action=SystemAction.SHOW_SINGLE_MATCH)
    ]
    session.current_stage = Stage.MATCH
    session.overall_confidence = ConfidenceTier.HIGH

    restored = OrchestratorSession.from_dict(session.to_dict())

    assert restored.current_stage == Stage.MATCH
    assert restored.recognition[0].outcome.fallback == "external_only"
    assert restored.recognition[0].candidates[0].title == "Red Shoe"
    assert restored.matches[0].selected.score == 0.91
    assert restored.matches[0].action == SystemAction.SHOW_SINGLE_MATCH
    assert restored.created_at == session.created_at


@pytest.mark.asyncio
async def test_checkpoint_persists_across_instances(tmp_path):
    path = tmp_path / "sessions.json"
    store = InMemorySessionStore(checkpoint_path=path)
    session = store.create("shop")
    async with store.transition(session.session_id, "shop") as s:
        s.recognition = [_recognition()]
        s.current_stage = Stage.MATCH
    assert path.exists()

    reloaded = InMemorySessionStore(checkpoint_path=path)
    restored = reloaded.get(session.session_id, "shop")
    assert restored.current_stage == Stage.MATCH
    assert restored.recognition[0].reference == "https://img.example/1.jpg"


def test_unreadable_checkpoint_is_ignored(tmp_path):
    path = tmp_path / "sessions.json"
    path.write_text("{not json")
    store = InMemorySessionStore(checkpoint_path=path)
    assert store.count() == 0
