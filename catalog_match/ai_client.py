from __future__ import annotations

import asyncio
import base64
import time
from typing import Any, Dict, List, Optional, Sequence

import httpx
import numpy as np
from loguru import logger

from .config import ClientSettings
from .pipeline_types import CollaboratorError
from .ports import EmbeddingProvider, ImageInput, RemoteReranker
from .resilience import NonRetryableError

RETRYABLE_STATUS = {429, 500, 502, 503, 504}

TEXT_INSTRUCTION = "Represent this product for retrieving matching catalog items"
IMAGE_INSTRUCTION = "Represent this product image for retrieving matching catalog items"


def encode_image(image: ImageInput) -> str:
    """URLs and data URLs pass through; raw bytes become a base64 string."""
    if isinstance(image, (bytes, bytearray)):
        return base64.b64encode(bytes(image)).decode("ascii")
    return str(image)


class AIServerClient(EmbeddingProvider, RemoteReranker):
    """
    Async client for the model server.

    POST /embed/text   {texts, instruction, normalize} -> {embeddings}
    POST /embed/image  {image_data, instruction}       -> {embeddings}
    POST /rerank       {query, candidates, top_k}      -> {ranked_candidates, scores, model}
    GET  /health                                       -> {status}

    Timeouts, 429 and 5xx are retried up to `max_retries` times; other
    HTTP errors are raised at once.
    """

    name = "ai-server"

    def __init__(
        self,
        settings: Optional[ClientSettings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings or ClientSettings()
        headers = {"Content-Type": "application/json"}
        if self.settings.api_key:
            headers["Authorization"] = f"Bearer {self.settings.api_key}"
        self._client = httpx.AsyncClient(
            base_url=self.settings.base_url,
            timeout=httpx.Timeout(self.settings.timeout_s, connect=self.settings.connect_timeout_s),
            headers=headers,
            transport=transport,
        )
        self.last_model: Optional[str] = None
        self._healthy: Optional[bool] = None
        self._health_checked_at = 0.0

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "AIServerClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    # ---------------------------
    # Transport
    # ---------------------------

    async def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        attempts = 1 + self.settings.max_retries
        last = ""
        for attempt in range(1, attempts + 1):
            try:
                resp = await self._client.post(path, json=payload)
            except httpx.TimeoutException:
                last = "timeout"
                logger.warning("AI server {} timed out (attempt {}/{})", path, attempt, attempts)
            except httpx.TransportError as e:
                last = str(e) or type(e).__name__
                logger.warning("AI server {} transport error (attempt {}/{}): {}", path, attempt, attempts, e)
            else:
                if resp.status_code == 200:
                    return resp.json()
                if resp.status_code not in RETRYABLE_STATUS:
                    raise NonRetryableError("ai-server", f"{path} returned HTTP {resp.status_code}")
                last = f"HTTP {resp.status_code}"
                logger.warning("AI server {} returned {} (attempt {}/{})", path, resp.status_code, attempt, attempts)

            if attempt < attempts:
                await asyncio.sleep(self.settings.retry_delay_s * attempt)

        raise CollaboratorError("ai-server", f"{path} failed after {attempts} attempt(s): {last}")

    @staticmethod
    def _first_embedding(data: Dict[str, Any], path: str) -> np.ndarray:
        embeddings = data.get("embeddings") or []
        if not embeddings:
            raise CollaboratorError("ai-server", f"{path} returned no embeddings")
        return np.asarray(embeddings[0], dtype="float32")

    # ---------------------------
    # EmbeddingProvider
    # ---------------------------

    async def embed_text(
        self,
        title: str,
        description: Optional[str] = None,
        instruction: Optional[str] = None,
    ) -> np.ndarray:
        text = title if not description else f"{title}. {description}"
        data = await self._post(
            "/embed/text",
            {"texts": [text], "instruction": instruction or TEXT_INSTRUCTION, "normalize": True},
        )
        return self._first_embedding(data, "/embed/text")

    async def embed_image(self, image: ImageInput, instruction: Optional[str] = None) -> np.ndarray:
        data = await self._post(
            "/embed/image",
            {"image_data": encode_image(image), "instruction": instruction or IMAGE_INSTRUCTION},
        )
        return self._first_embedding(data, "/embed/image")

    # ---------------------------
    # RemoteReranker
    # ---------------------------

    async def rerank(self, query: str, documents: Sequence[str], top_k: int) -> List[float]:
        candidates = [{"id": str(i), "text": doc} for i, doc in enumerate(documents)]
        data = await self._post("/rerank", {"query": query, "candidates": candidates, "top_k": top_k})
        self.last_model = data.get("model")

        scores = [0.0] * len(documents)
        for cand, score in zip(data.get("ranked_candidates") or [], data.get("scores") or []):
            try:
                idx = int(cand["id"] if isinstance(cand, dict) else cand)
            except (KeyError, TypeError, ValueError) as e:
                raise CollaboratorError("ai-server", f"/rerank returned an unknown candidate: {cand!r}") from e
            if 0 <= idx < len(scores):
                scores[idx] = float(score)
        return scores

    # ---------------------------
    # Health
    # ---------------------------

    async def health(self, force: bool = False) -> bool:
        now = time.monotonic()
        if not force and self._healthy is not None and now - self._health_checked_at < self.settings.health_ttl_s:
            return self._healthy
        try:
            resp = await self._client.get("/health")
            healthy = resp.status_code == 200 and resp.json().get("status") == "healthy"
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("AI server health check failed: {}", e)
            healthy = False
        self._healthy = healthy
        self._health_checked_at = now
        return healthy
