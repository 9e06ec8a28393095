"""Collaborator interfaces consumed by the matching engine."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

import numpy as np

from .pipeline_types import CatalogVariant, IndexHit, TitleMatch

ImageInput = Union[str, bytes]


class EmbeddingProvider(ABC):
    """Turns text / images into vectors of a fixed, provider-declared dimension."""

    @abstractmethod
    async def embed_text(
        self,
        title: str,
        description: Optional[str] = None,
        instruction: Optional[str] = None,
    ) -> np.ndarray: ...

    @abstractmethod
    async def embed_image(
        self,
        image: ImageInput,
        instruction: Optional[str] = None,
    ) -> np.ndarray: ...


class VectorIndex(ABC):
    @abstractmethod
    async def query(
        self,
        vector: np.ndarray,
        filter: Optional[Mapping[str, Any]] = None,
        limit: int = 20,
        threshold: float = 0.0,
    ) -> List[IndexHit]:
        """Nearest entries, scores in [0, 1], higher is more similar."""


class RemoteReranker(ABC):
    name: str = "remote"

    @abstractmethod
    async def rerank(
        self,
        query: str,
        documents: Sequence[str],
        top_k: int,
    ) -> List[float]:
        """Relevance score per document, aligned with `documents`."""


class CatalogLookup(ABC):
    @abstractmethod
    async def find_by_sku(self, scope: str, sku: str) -> Optional[CatalogVariant]: ...

    @abstractmethod
    async def find_by_barcode(self, scope: str, barcode: str) -> Optional[CatalogVariant]: ...

    @abstractmethod
    async def find_similar_titles(
        self,
        scope: str,
        title: str,
        limit: int,
    ) -> List[TitleMatch]:
        """Descending by similarity; ties in a stable, deterministic order."""


class ExternalSearch(ABC):
    @abstractmethod
    async def search(self, query: str, limit: int = 10) -> List[Dict[str, Any]]: ...

    async def extract(
        self,
        urls: Sequence[str],
        schema: Mapping[str, Any],
    ) -> List[Dict[str, Any]]:
        """Structured records for `urls`; providers without extraction return none."""
        return []


class PageFetcher(ABC):
    @abstractmethod
    async def fetch(self, url: str) -> Optional[str]:
        """Main text of the page, or None when it cannot be fetched."""


class ActivitySink(ABC):
    @abstractmethod
    async def record(
        self,
        scope: str,
        entity_type: str,
        event_type: str,
        details: Mapping[str, Any],
    ) -> None: ...


class ProgressReporter(ABC):
    @abstractmethod
    async def report(self, percent: int, message: str) -> None: ...


class ContentGenerator(ABC):
    @abstractmethod
    async def generate(
        self,
        selections: Sequence[Mapping[str, Any]],
        options: Mapping[str, Any],
    ) -> Dict[str, Any]: ...
