"""
Orchestrator session records and the keyed store that owns them.

SessionStore                -- abstract interface
InMemorySessionStore        -- dict + lock, per-session asyncio.Lock for
                               stage transitions, expiry sweep and an
                               optional JSON checkpoint file
"""

from __future__ import annotations

import asyncio
import copy
import json
import os
import threading
import uuid
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional

from loguru import logger

from .pipeline_types import (
    Candidate,
    ConfidenceTier,
    Outcome,
    RankedCandidate,
    SessionError,
    SourceKind,
    Stage,
    StageStatus,
    SystemAction,
)

SESSION_PREFIX = "orch_"
ACCESS_DENIED = "Invalid session or access denied"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _outcome_from_dict(data: Mapping[str, Any]) -> Outcome:
    return Outcome(
        status=StageStatus(data.get("status", "ok")),
        fallback=data.get("fallback"),
        error=data.get("error"),
    )


# ---------------------------
# Stage records
# ---------------------------

@dataclass
class SourceRecognition:
    index: int
    kind: SourceKind
    reference: str
    candidates: List[Candidate] = field(default_factory=list)
    external: List[Candidate] = field(default_factory=list)
    confidence: ConfidenceTier = ConfidenceTier.LOW
    outcome: Outcome = field(default_factory=Outcome.ok)
    processing_ms: float = 0.0

    @property
    def all_candidates(self) -> List[Candidate]:
        return self.candidates + self.external

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "kind": self.kind.value,
            "reference": self.reference,
            "candidates": [c.to_dict() for c in self.candidates],
            "external": [c.to_dict() for c in self.external],
            "confidence": self.confidence.value,
            "outcome": self.outcome.to_dict(),
            "processing_ms": self.processing_ms,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SourceRecognition":
        return cls(
            index=int(data["index"]),
            kind=SourceKind(data["kind"]),
            reference=str(data.get("reference", "")),
            candidates=[Candidate.from_dict(c) for c in data.get("candidates", [])],
            external=[Candidate.from_dict(c) for c in data.get("external", [])],
            confidence=ConfidenceTier(data.get("confidence", "low")),
            outcome=_outcome_from_dict(data.get("outcome", {})),
            processing_ms=float(data.get("processing_ms", 0.0)),
        )


@dataclass
class SourceMatch:
    index: int
    ranked: List[RankedCandidate] = field(default_factory=list)
    confidence: ConfidenceTier = ConfidenceTier.LOW
    action: Optional[SystemAction] = None
    selected_index: Optional[int] = None
    rejected: bool = False
    reasoning: str = ""
    outcome: Outcome = field(default_factory=Outcome.ok)

    @property
    def selected(self) -> Optional[RankedCandidate]:
        return self.ranked[0] if self.ranked else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "ranked": [r.to_dict() for r in self.ranked],
            "confidence": self.confidence.value,
            "action": self.action.value if self.action else None,
            "selected_index": self.selected_index,
            "rejected": self.rejected,
            "reasoning": self.reasoning,
            "outcome": self.outcome.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SourceMatch":
        action = data.get("action")
        return cls(
            index=int(data["index"]),
            ranked=[RankedCandidate.from_dict(r) for r in data.get("ranked", [])],
            confidence=ConfidenceTier(data.get("confidence", "low")),
            action=SystemAction(action) if action else None,
            selected_index=data.get("selected_index"),
            rejected=bool(data.get("rejected", False)),
            reasoning=str(data.get("reasoning", "")),
            outcome=_outcome_from_dict(data.get("outcome", {})),
        )


@dataclass
class OrchestratorSession:
    session_id: str
    scope: str
    request: Dict[str, Any] = field(default_factory=dict)
    current_stage: Stage = Stage.RECOGNIZE
    recognition: Optional[List[SourceRecognition]] = None
    recommended_next: Optional[str] = None
    matches: Optional[List[SourceMatch]] = None
    overall_confidence: Optional[ConfidenceTier] = None
    next_action: Optional[str] = None
    generated: Optional[Dict[str, Any]] = None
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)

    def touch(self) -> None:
        self.updated_at = _now()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "scope": self.scope,
            "request": self.request,
            "current_stage": self.current_stage.value,
            "recognition": [r.to_dict() for r in self.recognition] if self.recognition is not None else None,
            "recommended_next": self.recommended_next,
            "matches": [m.to_dict() for m in self.matches] if self.matches is not None else None,
            "overall_confidence": self.overall_confidence.value if self.overall_confidence else None,
            "next_action": self.next_action,
            "generated": self.generated,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "OrchestratorSession":
        recognition = data.get("recognition")
        matches = data.get("matches")
        overall = data.get("overall_confidence")
        return cls(
            session_id=str(data["session_id"]),
            scope=str(data["scope"]),
            request=dict(data.get("request") or {}),
            current_stage=Stage(data.get("current_stage", "recognize")),
            recognition=[SourceRecognition.from_dict(r) for r in recognition] if recognition is not None else None,
            recommended_next=data.get("recommended_next"),
            matches=[SourceMatch.from_dict(m) for m in matches] if matches is not None else None,
            overall_confidence=ConfidenceTier(overall) if overall else None,
            next_action=data.get("next_action"),
            generated=data.get("generated"),
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
        )


# ---------------------------
# Abstract interface
# ---------------------------

class SessionStore(ABC):
    @abstractmethod
    def create(self, scope: str, request: Optional[Mapping[str, Any]] = None) -> OrchestratorSession: ...

    @abstractmethod
    def get(self, session_id: str, scope: str) -> OrchestratorSession:
        """Session owned by `scope`; SessionError when missing, expired or foreign."""

    @abstractmethod
    def save(self, session: OrchestratorSession) -> None: ...

    @abstractmethod
    def delete(self, session_id: str) -> bool: ...

    @abstractmethod
    def sweep_expired(self, max_age: Optional[timedelta] = None) -> int: ...

    @abstractmethod
    def transition(self, session_id: str, scope: str):
        """Async context manager granting exclusive write access to one session."""


# ---------------------------
# In-memory implementation
# ---------------------------

class InMemorySessionStore(SessionStore):
    """
    Process-local session map.

    The map itself is guarded by an RLock; stage transitions additionally
    hold a per-session asyncio.Lock so two callers can never advance the
    same session at once. When `checkpoint_path` is set, the whole map is
    written as JSON after every transition and reloaded on construction.
    """

    def __init__(
        self,
        max_age: timedelta = timedelta(hours=24),
        checkpoint_path: Optional[Path] = None,
    ) -> None:
        self.max_age = max_age
        self.checkpoint_path = Path(checkpoint_path) if checkpoint_path else None
        self._sessions: Dict[str, OrchestratorSession] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._guard = threading.RLock()
        if self.checkpoint_path is not None:
            self._load_checkpoint()

    # --- basic access ---

    def create(self, scope: str, request: Optional[Mapping[str, Any]] = None) -> OrchestratorSession:
        session = OrchestratorSession(
            session_id=f"{SESSION_PREFIX}{uuid.uuid4().hex}",
            scope=scope,
            request=dict(request or {}),
        )
        with self._guard:
            self._sessions[session.session_id] = session
            self._locks[session.session_id] = asyncio.Lock()
        logger.info("[session:{}] created for scope {}", session.session_id, scope)
        return session

    def _expired(self, session: OrchestratorSession, now: Optional[datetime] = None) -> bool:
        return (now or _now()) - session.created_at > self.max_age

    def get(self, session_id: str, scope: str) -> OrchestratorSession:
        with self._guard:
            session = self._sessions.get(session_id)
        if session is None or session.scope != scope:
            raise SessionError(ACCESS_DENIED)
        if self._expired(session):
            self.delete(session_id)
            raise SessionError(f"session {session_id} has expired")
        return session

    def save(self, session: OrchestratorSession) -> None:
        session.touch()
        with self._guard:
            self._sessions[session.session_id] = session
            self._locks.setdefault(session.session_id, asyncio.Lock())
        self._write_checkpoint()

    def delete(self, session_id: str) -> bool:
        with self._guard:
            removed = self._sessions.pop(session_id, None)
            self._locks.pop(session_id, None)
        return removed is not None

    def count(self) -> int:
        with self._guard:
            return len(self._sessions)

    def sweep_expired(self, max_age: Optional[timedelta] = None) -> int:
        """Drop sessions older than `max_age`; sessions mid-transition are kept."""
        max_age = max_age or self.max_age
        cutoff = _now() - max_age
        removed = 0
        with self._guard:
            for sid in list(self._sessions):
                session = self._sessions[sid]
                lock = self._locks.get(sid)
                if session.created_at >= cutoff or (lock is not None and lock.locked()):
                    continue
                del self._sessions[sid]
                self._locks.pop(sid, None)
                removed += 1
        if removed:
            logger.info("Swept {} expired orchestrator sessions", removed)
            self._write_checkpoint()
        return removed

    # --- single writer ---

    @asynccontextmanager
    async def transition(self, session_id: str, scope: str) -> AsyncIterator[OrchestratorSession]:
        self.get(session_id, scope)
        with self._guard:
            lock = self._locks.setdefault(session_id, asyncio.Lock())
        async with lock:
            # re-read under the lock; a concurrent writer may have advanced it.
            # Callers work on a copy that replaces the stored session only when
            # the block exits cleanly, so errors and task cancellation leave
            # the stored session untouched.
            working = copy.deepcopy(self.get(session_id, scope))
            yield working
            self.save(working)

    # --- checkpoint ---

    def _write_checkpoint(self) -> None:
        if self.checkpoint_path is None:
            return
        with self._guard:
            payload = {"sessions": [s.to_dict() for s in self._sessions.values()]}
        tmp = self.checkpoint_path.with_suffix(self.checkpoint_path.suffix + ".tmp")
        try:
            self.checkpoint_path.parent.mkdir(parents=True, exist_ok=True)
            with tmp.open("w", encoding="utf-8") as f:
                json.dump(payload, f)
            os.replace(tmp, self.checkpoint_path)
        except OSError as e:
            logger.warning("Failed to write session checkpoint {}: {}", self.checkpoint_path, e)

    def _load_checkpoint(self) -> None:
        path = self.checkpoint_path
        if path is None or not path.exists():
            return
        try:
            with path.open("r", encoding="utf-8") as f:
                raw = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Ignoring unreadable session checkpoint {}: {}", path, e)
            return

        loaded = 0
        now = _now()
        for item in raw.get("sessions", []):
            try:
                session = OrchestratorSession.from_dict(item)
            except (KeyError, ValueError, TypeError) as e:
                logger.warning("Skipping malformed checkpointed session: {}", e)
                continue
            if self._expired(session, now):
                continue
            self._sessions[session.session_id] = session
            self._locks[session.session_id] = asyncio.Lock()
            loaded += 1
        logger.info("Restored {} orchestrator sessions from {}", loaded, path)
