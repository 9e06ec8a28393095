import json

import httpx
import numpy as np
import pytest

from catalog_match.ai_client import AIServerClient, encode_image
from catalog_match.config import ClientSettings
from catalog_match.pipeline_types import CollaboratorError
from catalog_match.resilience import NonRetryableError

SETTINGS = ClientSettings(base_url="http://ai.test", api_key="secret", max_retries=2, retry_delay_s=0.0)


def _client(handler, settings=SETTINGS):
    return AIServerClient(settings, transport=httpx.MockTransport(handler))


def test_encode_image():
    assert encode_image(b"abc") == "YWJj"
    assert encode_image("https://img.example/1.jpg") == "https://img.example/1.jpg"


@pytest.mark.asyncio
async def test_embed_text_posts_expected_payload():
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["auth"] = request.headers.get("Authorization")
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"embeddings": [[0.1, 0.2, 0.3]]})

    async with _client(handler) as client:
        vec = await client.embed_text("Red Shoe", "Leather")

    assert seen["path"] == "/embed/text"
    assert seen["auth"] == "Bearer secret"
    assert seen["body"]["texts"] == ["Red Shoe. Leather"]
    assert seen["body"]["normalize"] is True
    assert vec.dtype == np.float32
    assert np.allclose(vec, [0.1, 0.2, 0.3])


@pytest.mark.asyncio
async def test_embed_image_sends_base64():
    seen = {}

    def handler(request):
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"embeddings": [[1.0, 0.0]]})

    async with _client(handler) as client:
        await client.embed_image(b"abc")
    assert seen["body"]["image_data"] == "YWJj"


@pytest.mark.asyncio
async def test_retries_on_5xx_then_succeeds():
    attempts = []

    def handler(request):
        attempts.append(1)
        if len(attempts) < 3:
            return httpx.Response(503)
        return httpx.Response(200, json={"embeddings": [[1.0]]})

    async with _client(handler) as client:
        await client.embed_text("x")
    assert len(attempts) == 3


@pytest.mark.asyncio
async def test_retry_budget_exhausted():
    attempts = []

    def handler(request):
        attempts.append(1)
        raise httpx.ConnectError("refused", request=request)

    async with _client(handler) as client:
        with pytest.raises(CollaboratorError):
            await client.embed_text("x")
    assert len(attempts) == 3


@pytest.mark.asyncio
async def test_client_errors_are_not_retried():
    attempts = []

    def handler(request):
        attempts.append(1)
        return httpx.Response(400, json={"detail": "bad"})

    async with _client(handler) as client:
        with pytest.raises(NonRetryableError):
            await client.embed_text("x")
    assert len(attempts) == 1


@pytest.mark.asyncio
async def test_empty_embeddings_rejected():
    async with _client(lambda r: httpx.Response(200, json={"embeddings": []})) as client:
        with pytest.raises(CollaboratorError):
            await client.embed_text("x")


@pytest.mark.asyncio
async def test_rerank_scores_realigned_to_documents():
    def handler(request):
        body = json.loads(request.content)
        assert [c["text"] for c in body["candidates"]] == ["doc a", "doc b", "doc c"]
        return httpx.Response(
            200,
            json={
                "ranked_candidates": [{"id": "2"}, {"id": "0"}],
                "scores": [0.9, 0.4],
                "model": "bge-reranker",
            },
        )

    async with _client(handler) as client:
        scores = await client.rerank("query", ["doc a", "doc b", "doc c"], top_k=2)
        assert client.last_model == "bge-reranker"
    assert scores == [0.4, 0.0, 0.9]


@pytest.mark.asyncio
async def test_health_is_cached():
    calls = []

    def handler(request):
        calls.append(request.url.path)
        return httpx.Response(200, json={"status": "healthy"})

    async with _client(handler) as client:
        assert await client.health()
        assert await client.health()
        assert await client.health(force=True)
    assert calls == ["/health", "/health"]


@pytest.mark.asyncio
async def test_health_unhealthy_on_error():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    async with _client(handler) as client:
        assert await client.health() is False
