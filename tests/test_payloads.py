import pytest

from catalog_match.payloads import (
    CatalogPayload,
    ExternalPayload,
    candidate_from_hit,
    candidates_from_search,
    parse_payload,
)
from catalog_match.pipeline_types import IndexHit, InputError


def test_parse_catalog_payload_cleans_fields():
    p = parse_payload({"product_id": 42, "title": "<b>Red</b>  Shoe", "price": "$19.99"})
    assert isinstance(p, CatalogPayload)
    assert p.product_id == "42"
    assert p.title == "Red Shoe"
    assert p.price == 19.99


def test_parse_external_payload_uses_snippet():
    p = parse_payload({"title": "Shop", "url": "https://x.example", "snippet": "great deal"}, default_kind="external")
    assert isinstance(p, ExternalPayload)
    assert p.description == "great deal"


def test_parse_payload_invalid():
    with pytest.raises(InputError):
        parse_payload({"title": "no id"})
    with pytest.raises(InputError):
        parse_payload({"kind": "mystery", "title": "x"})


def test_candidate_from_hit():
    hit = IndexHit("p1", "v1", 0.83, {"title": "Red Shoe", "image_similarity": 0.9, "category": "shoes"})
    c = candidate_from_hit(hit)
    assert (c.product_id, c.variant_id, c.score) == ("p1", "v1", 0.83)
    assert c.image_similarity == 0.9
    assert c.origin == "catalog"


def test_candidates_from_search_drops_invalid():
    found = candidates_from_search(
        [
            {"title": "A", "url": "https://a.example"},
            {"title": "missing url"},
        ]
    )
    assert len(found) == 1
    assert found[0].source_url == "https://a.example"
    assert found[0].origin == "external"
    assert found[0].score == 0.0
