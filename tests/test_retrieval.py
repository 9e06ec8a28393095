import numpy as np
import pytest

from catalog_match.config import CallPolicy, SearchSettings
from catalog_match.pipeline_types import IndexHit, StageStatus
from catalog_match.retrieval import SimilaritySearch, build_filter

FAST = CallPolicy(timeout_s=1.0, max_retries=0, retry_delay_s=0.0)


class DummyIndex:
    def __init__(self, hits=None, fail=False):
        self.hits = hits or []
        self.fail = fail
        self.queries = []

    async def query(self, vector, filter=None, limit=20, threshold=0.0):
        self.queries.append((np.asarray(vector), filter, limit, threshold))
        if self.fail:
            raise RuntimeError("index offline")
        return list(self.hits)


def _hit(pid, score, **payload):
    payload.setdefault("title", f"Product {pid}")
    return IndexHit(pid, f"{pid}-v", score, payload)


def test_build_filter():
    assert build_filter() is None
    assert build_filter("shoes", "tpl-1") == {"category": "shoes", "template_id": "tpl-1"}


@pytest.mark.asyncio
async def test_search_vectors_queries_once_with_fused_vector():
    index = DummyIndex(hits=[_hit("a", 0.7), _hit("b", 0.9)])
    search = SimilaritySearch(index, calls=FAST)

    result = await search.search_vectors(images=[[1.0, 0.0]], text=[0.0, 1.0], limit=5, threshold=0.6)

    assert len(index.queries) == 1
    vec, _, limit, threshold = index.queries[0]
    assert np.isclose(np.linalg.norm(vec), 1.0)
    assert (limit, threshold) == (5, 0.6)
    assert result.modalities == ("image", "text")
    assert [c.product_id for c in result.candidates] == ["b", "a"]
    assert result.top_score == pytest.approx(0.9)


@pytest.mark.asyncio
async def test_search_filters_below_threshold_and_invalid_payloads():
    hits = [
        _hit("a", 0.8),
        _hit("b", 0.4),
        IndexHit("c", None, 0.9, {"title": "Bad", "image_similarity": 3.0}),
    ]
    result = await SimilaritySearch(DummyIndex(hits), calls=FAST).search_vectors(text=[1.0, 0.0], threshold=0.5)
    assert [c.product_id for c in result.candidates] == ["a"]


@pytest.mark.asyncio
async def test_search_defaults_and_ties():
    hits = [_hit("b", 0.7), _hit("a", 0.7)]
    index = DummyIndex(hits)
    result = await SimilaritySearch(index, SearchSettings(), calls=FAST).search_vectors(text=[1.0])
    _, _, limit, threshold = index.queries[0]
    assert (limit, threshold) == (20, 0.5)
    assert [c.product_id for c in result.candidates] == ["a", "b"]


@pytest.mark.asyncio
async def test_search_failure_is_failed_outcome():
    result = await SimilaritySearch(DummyIndex(fail=True), calls=FAST).search_vectors(text=[1.0, 0.0])
    assert result.candidates == []
    assert result.outcome.status == StageStatus.FAILED
    assert "vector_index" in result.outcome.error
