from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from loguru import logger

from .config import CallPolicy, FusionWeights, SearchSettings
from .embed_fusion import fuse
from .payloads import candidate_from_hit
from .pipeline_types import Candidate, CollaboratorError, FusedEmbedding, IndexHit, InputError, Outcome
from .ports import VectorIndex
from .resilience import guarded_call


@dataclass
class SearchResult:
    candidates: List[Candidate] = field(default_factory=list)
    outcome: Outcome = field(default_factory=Outcome.ok)
    modalities: Sequence[str] = ()

    @property
    def top_score(self) -> float:
        return self.candidates[0].score if self.candidates else 0.0


def build_filter(category: Optional[str] = None, template_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
    out: Dict[str, Any] = {}
    if category:
        out["category"] = category
    if template_id:
        out["template_id"] = template_id
    return out or None


def _hits_to_candidates(hits: Iterable[IndexHit], threshold: float) -> List[Candidate]:
    candidates: List[Candidate] = []
    for hit in hits:
        if hit.score < threshold:
            continue
        try:
            candidates.append(candidate_from_hit(hit))
        except InputError as e:
            logger.warning("Dropping index hit {}: {}", hit.product_id, e)
    # similarity desc, id asc
    candidates.sort(key=lambda c: (-c.score, c.candidate_id))
    return candidates


class SimilaritySearch:
    """
    Nearest-neighbour lookup over the catalog vector index.

    Image and text vectors are always fused into one query vector first;
    the index is never queried twice for one entity.
    """

    def __init__(
        self,
        index: VectorIndex,
        settings: Optional[SearchSettings] = None,
        fusion: Optional[FusionWeights] = None,
        calls: Optional[CallPolicy] = None,
    ):
        self.index = index
        self.settings = settings or SearchSettings()
        self.fusion = fusion or FusionWeights()
        self.calls = calls or CallPolicy()

    async def search(
        self,
        embedding: FusedEmbedding,
        filter: Optional[Mapping[str, Any]] = None,
        limit: Optional[int] = None,
        threshold: Optional[float] = None,
    ) -> SearchResult:
        limit = limit or self.settings.default_limit
        threshold = self.settings.default_threshold if threshold is None else threshold

        try:
            hits = await guarded_call(
                "vector_index",
                lambda: self.index.query(embedding.vector, filter, limit, threshold),
                self.calls,
            )
        except CollaboratorError as e:
            logger.warning("Vector search failed ({}): {}", "+".join(embedding.modalities), e)
            return SearchResult(outcome=Outcome.failed(str(e)), modalities=embedding.modalities)

        candidates = _hits_to_candidates(hits, threshold)[:limit]
        logger.debug(
            "Vector search ({}) returned {} candidates >= {}",
            "+".join(embedding.modalities),
            len(candidates),
            threshold,
        )
        return SearchResult(candidates=candidates, modalities=embedding.modalities)

    async def search_vectors(
        self,
        images: Optional[Sequence[Sequence[float]]] = None,
        text: Optional[Sequence[float]] = None,
        filter: Optional[Mapping[str, Any]] = None,
        limit: Optional[int] = None,
        threshold: Optional[float] = None,
    ) -> SearchResult:
        """Image-only, text-only or combined search with one fused query."""
        fused = fuse(
            images,
            text,
            image_weight=self.fusion.image_weight,
            text_weight=self.fusion.text_weight,
        )
        return await self.search(fused, filter=filter, limit=limit, threshold=threshold)
