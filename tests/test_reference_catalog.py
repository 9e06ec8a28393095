import pandas as pd
import pytest

from catalog_match.reference_catalog import FrameCatalog


def _catalog():
    return FrameCatalog.from_records(
        [
            {"variant_id": "v2", "product_id": "p1", "scope": "shop", "title": "Red Running Shoe", "sku": "SKU-2", "barcode": "222", "price": "19.99"},
            {"variant_id": "v1", "product_id": "p1", "scope": "shop", "title": "Red Shoe", "sku": "SKU-1", "barcode": 111.0, "price": None},
            {"variant_id": "v3", "product_id": "p2", "scope": "shop", "title": "Blue Mug", "sku": "SKU-3", "barcode": None, "price": 5},
            {"variant_id": "v4", "product_id": "p3", "scope": "other", "title": "Red Shoe", "sku": "SKU-1", "barcode": None, "price": 1},
            {"variant_id": "v1", "product_id": "p9", "scope": "shop", "title": "Duplicate", "sku": "DUP", "barcode": None, "price": 1},
        ]
    )


def test_missing_required_columns():
    with pytest.raises(ValueError):
        FrameCatalog(pd.DataFrame({"variant_id": ["v1"]}))


def test_duplicate_variants_dropped():
    cat = _catalog()
    assert len(cat.df) == 4
    assert list(cat.df["variant_id"]) == ["v1", "v2", "v3", "v4"]


@pytest.mark.asyncio
async def test_identifier_lookups_are_scoped():
    cat = _catalog()
    v = await cat.find_by_sku("shop", " SKU-1 ")
    assert v.variant_id == "v1"
    assert v.price is None
    other = await cat.find_by_sku("other", "SKU-1")
    assert other.variant_id == "v4"
    assert await cat.find_by_sku("shop", "DUP") is None
    assert (await cat.find_by_barcode("shop", "111")).variant_id == "v1"
    assert await cat.find_by_barcode("shop", "") is None


@pytest.mark.asyncio
async def test_find_similar_titles_ranked():
    cat = _catalog()
    matches = await cat.find_similar_titles("shop", "red shoe", limit=5)
    assert matches[0].variant.variant_id == "v1"
    assert matches[0].similarity == 1.0
    sims = [m.similarity for m in matches]
    assert sims == sorted(sims, reverse=True)
    assert all(0.0 <= s <= 1.0 for s in sims)
    # other scopes never leak in
    assert "v4" not in [m.variant.variant_id for m in matches]


@pytest.mark.asyncio
async def test_find_similar_titles_limit_and_cutoff():
    cat = FrameCatalog(_catalog().df.drop(columns=["_title_key"]), min_similarity=0.9)
    matches = await cat.find_similar_titles("shop", "Red Shoe", limit=1)
    assert [m.variant.variant_id for m in matches] == ["v1"]
    assert await cat.find_similar_titles("shop", "!!!", limit=3) == []
