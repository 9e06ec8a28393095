from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional, Sequence

import faiss
import numpy as np

from .embed_fusion import normalize_vector
from .pipeline_types import EmbeddingFusionError, IndexHit
from .ports import VectorIndex


class FaissVectorIndex(VectorIndex):
    """
    Exact inner-product index over unit vectors (inner product == cosine).

    Each row carries a payload dict (title, price, category, ...) that is
    returned with its hit; `filter` keys are matched against it exactly.
    """

    def __init__(self, dim: int):
        self.dim = int(dim)
        self.index = faiss.IndexFlatIP(self.dim)
        self._refs: List[Dict[str, Any]] = []

    def __len__(self) -> int:
        return len(self._refs)

    def add(
        self,
        product_id: str,
        vector: Sequence[float],
        variant_id: Optional[str] = None,
        payload: Optional[Mapping[str, Any]] = None,
    ) -> None:
        vec = normalize_vector(vector)
        if vec.shape[0] != self.dim:
            raise EmbeddingFusionError(f"vector dim {vec.shape[0]} != index dim {self.dim}")
        self.index.add(vec.reshape(1, -1).astype("float32"))
        self._refs.append(
            {"product_id": str(product_id), "variant_id": variant_id, "payload": dict(payload or {})}
        )

    async def query(
        self,
        vector: np.ndarray,
        filter: Optional[Mapping[str, Any]] = None,
        limit: int = 20,
        threshold: float = 0.0,
    ) -> List[IndexHit]:
        if len(self._refs) == 0:
            return []
        q = normalize_vector(vector)
        if q.shape[0] != self.dim:
            raise EmbeddingFusionError(f"query dim {q.shape[0]} != index dim {self.dim}")

        # over-fetch when filtering; the flat index is exhaustive anyway
        k = len(self._refs) if filter else min(limit, len(self._refs))
        scores, ids = self.index.search(q.reshape(1, -1).astype("float32"), k)

        hits: List[IndexHit] = []
        for score, idx in zip(scores[0], ids[0]):
            if idx < 0:
                continue
            ref = self._refs[int(idx)]
            payload = ref["payload"]
            if filter and any(payload.get(key) != value for key, value in filter.items()):
                continue
            sim = max(0.0, min(1.0, float(score)))
            if sim < threshold:
                continue
            hits.append(IndexHit(ref["product_id"], ref["variant_id"], sim, payload))
            if len(hits) >= limit:
                break
        return hits

