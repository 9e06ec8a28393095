"""Typed containers and errors shared across pipeline modules."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

import numpy as np


# ---------------------------
# Errors
# ---------------------------

class MatchingError(Exception):
    """Base class for every error raised by the matching engine."""


class ConfigError(MatchingError):
    """Invalid or inconsistent configuration. Fatal at startup."""


class InputError(MatchingError):
    """A single unit of work (row, source, request) is unusable."""


class EmbeddingFusionError(MatchingError):
    """No vector supplied, or vectors that cannot live in one space."""


class CollaboratorError(MatchingError):
    """A collaborator call failed after its timeout / retry budget."""

    def __init__(self, collaborator: str, message: str):
        super().__init__(f"{collaborator}: {message}")
        self.collaborator = collaborator


class SessionError(MatchingError):
    """Unknown session, expired session or access from another scope."""


class StageOrderError(SessionError):
    """A session stage was requested before its prerequisite stage."""


# ---------------------------
# Enums
# ---------------------------

class ConfidenceTier(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def level(self) -> int:
        return _TIER_LEVEL[self]


_TIER_LEVEL = {ConfidenceTier.LOW: 0, ConfidenceTier.MEDIUM: 1, ConfidenceTier.HIGH: 2}


class SystemAction(str, Enum):
    SHOW_SINGLE_MATCH = "show_single_match"
    SHOW_MULTIPLE_CANDIDATES = "show_multiple_candidates"
    FALLBACK_TO_EXTERNAL = "fallback_to_external"
    FALLBACK_TO_MANUAL = "fallback_to_manual"


class MatchType(str, Enum):
    SKU = "SKU"
    BARCODE = "BARCODE"
    TITLE = "TITLE"
    NONE = "NONE"


class ReviewStatus(str, Enum):
    AUTO_MATCHED = "AUTO_MATCHED"
    NEEDS_REVIEW = "NEEDS_REVIEW"
    NO_MATCH = "NO_MATCH"
    USER_CONFIRMED = "USER_CONFIRMED"
    USER_REJECTED = "USER_REJECTED"


class UserAction(str, Enum):
    ACCEPT = "ACCEPT"
    REJECT = "REJECT"
    CREATE_NEW = "CREATE_NEW"
    IGNORE = "IGNORE"


class RowState(str, Enum):
    """Per-row state of the batch cascade."""

    PENDING = "pending"
    SKU_HIT = "sku_hit"
    BARCODE_HIT = "barcode_hit"
    TITLE_HIT = "title_hit"
    AMBIGUOUS = "ambiguous"
    NO_MATCH = "no_match"


class StageStatus(str, Enum):
    OK = "ok"
    DEGRADED = "degraded"
    FAILED = "failed"


class Stage(str, Enum):
    RECOGNIZE = "recognize"
    MATCH = "match"
    GENERATE = "generate"
    COMPLETED = "completed"


class SourceKind(str, Enum):
    IMAGE = "image"
    LINK = "link"
    TEXT = "text"


# ---------------------------
# Result type
# ---------------------------

@dataclass(frozen=True)
class Outcome:
    """
    How a stage finished: cleanly, on a named fallback, or not at all.

    `fallback` names the path that produced the result when status is
    degraded (e.g. "token_overlap", "vector_only"); `error` keeps the
    message of the failure that forced it.
    """

    status: StageStatus = StageStatus.OK
    fallback: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def ok(cls) -> "Outcome":
        return cls()

    @classmethod
    def degraded(cls, fallback: str, error: Optional[str] = None) -> "Outcome":
        return cls(status=StageStatus.DEGRADED, fallback=fallback, error=error)

    @classmethod
    def failed(cls, error: str) -> "Outcome":
        return cls(status=StageStatus.FAILED, error=error)

    @property
    def is_ok(self) -> bool:
        return self.status == StageStatus.OK

    def to_dict(self) -> Dict[str, Any]:
        return {"status": self.status.value, "fallback": self.fallback, "error": self.error}


# ---------------------------
# Embeddings
# ---------------------------

@dataclass(frozen=True)
class FusedEmbedding:
    """Unit vector plus the modalities (and weights) it was built from."""

    vector: np.ndarray
    modalities: Tuple[str, ...]
    weights: Tuple[float, ...]

    @property
    def dim(self) -> int:
        return int(self.vector.shape[0])


# ---------------------------
# Catalog / candidates
# ---------------------------

@dataclass(frozen=True)
class CatalogVariant:
    variant_id: str
    product_id: str
    title: str
    sku: Optional[str] = None
    barcode: Optional[str] = None
    price: Optional[float] = None


@dataclass(frozen=True)
class TitleMatch:
    variant: CatalogVariant
    similarity: float


@dataclass(frozen=True)
class IndexHit:
    """One row returned by a vector index query."""

    product_id: str
    variant_id: Optional[str]
    score: float
    payload: Mapping[str, Any] = field(default_factory=dict)


@dataclass
class Candidate:
    """
    A catalog (or external) entity proposed for one query.

    `score` is the raw combined vector similarity; the per-modality
    similarities are optional and only present when the caller ran
    separate image / text comparisons.
    """

    product_id: Optional[str]
    variant_id: Optional[str]
    title: str
    description: str = ""
    price: Optional[float] = None
    image_url: Optional[str] = None
    source_url: Optional[str] = None
    score: float = 0.0
    image_similarity: Optional[float] = None
    text_similarity: Optional[float] = None
    origin: str = "catalog"

    @property
    def candidate_id(self) -> str:
        return str(self.variant_id or self.product_id or self.source_url or self.title)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "product_id": self.product_id,
            "variant_id": self.variant_id,
            "title": self.title,
            "description": self.description,
            "price": self.price,
            "image_url": self.image_url,
            "source_url": self.source_url,
            "score": self.score,
            "image_similarity": self.image_similarity,
            "text_similarity": self.text_similarity,
            "origin": self.origin,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Candidate":
        return cls(**{k: data.get(k) for k in _CANDIDATE_FIELDS if k in data})


_CANDIDATE_FIELDS = (
    "product_id",
    "variant_id",
    "title",
    "description",
    "price",
    "image_url",
    "source_url",
    "score",
    "image_similarity",
    "text_similarity",
    "origin",
)


@dataclass
class RankedCandidate:
    candidate: Candidate
    score: float
    rank: int
    explanation: str
    base_score: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "candidate": self.candidate.to_dict(),
            "score": self.score,
            "rank": self.rank,
            "explanation": self.explanation,
            "base_score": self.base_score,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RankedCandidate":
        return cls(
            candidate=Candidate.from_dict(data["candidate"]),
            score=float(data["score"]),
            rank=int(data["rank"]),
            explanation=str(data.get("explanation", "")),
            base_score=data.get("base_score"),
        )


@dataclass
class RankingResult:
    """Output of one reranking pass, including how it was produced."""

    query: str
    candidates: List[RankedCandidate]
    tier: ConfidenceTier
    action: SystemAction
    model: str
    outcome: Outcome = field(default_factory=Outcome.ok)
    processing_ms: float = 0.0

    @property
    def top_score(self) -> float:
        return self.candidates[0].score if self.candidates else 0.0


# ---------------------------
# Bulk import
# ---------------------------

@dataclass(frozen=True)
class RawImportItem:
    """One imported row: the original cells plus normalized fields."""

    item_id: str
    scope: str
    raw: Mapping[str, Any]
    sku: Optional[str] = None
    barcode: Optional[str] = None
    title: Optional[str] = None
    price: Optional[float] = None
    quantity: Optional[int] = None
    source: str = "csv"
    job_id: Optional[str] = None


@dataclass(frozen=True)
class MatchCandidate:
    item_id: str
    variant_id: Optional[str]
    match_type: MatchType
    confidence: float
    status: ReviewStatus
    match_data: Mapping[str, Any] = field(default_factory=dict)
    explanation: Optional[str] = None
    user_action: Optional[UserAction] = None
    user_action_at: Optional[datetime] = None
