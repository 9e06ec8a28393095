import pytest

from catalog_match.csv_import import read_import_file
from catalog_match.pipeline_types import InputError

SHOPIFY_EXPORT = """Handle,Title,Variant SKU,Variant Barcode,Variant Price,Variant Inventory Qty
red-shoe,Red Shoe (Men's),SKU-1,4006381333931,$19.99,12
blue-mug,Blue Mug,,,"12,50",
empty,,,,,
"""


def test_read_import_text_standardizes_columns():
    items = read_import_file(SHOPIFY_EXPORT, scope="shop", job_id="job-1")
    assert len(items) == 3

    first = items[0]
    assert first.title == "red shoe mens"
    assert first.sku == "SKU-1"
    assert first.barcode == "4006381333931"
    assert first.price == pytest.approx(19.99)
    assert first.quantity == 12
    assert first.scope == "shop"
    assert first.job_id == "job-1"
    assert first.source == "csv"
    # original cells are kept untouched
    assert first.raw["Title"] == "Red Shoe (Men's)"

    second = items[1]
    assert second.sku is None
    assert second.price == pytest.approx(12.5)
    assert second.quantity is None

    # rows without usable fields are still imported
    assert items[2].title is None
    assert len({i.item_id for i in items}) == 3


def test_read_import_file_from_path(tmp_path):
    path = tmp_path / "items.csv"
    path.write_text("name,upc\nGreen Shoe,0123\n")
    (item,) = read_import_file(path, scope="shop", origin="ocr")
    assert item.title == "green shoe"
    assert item.barcode == "0123"
    assert item.source == "ocr"


def test_missing_file_and_bad_origin():
    with pytest.raises(InputError):
        read_import_file("/no/such/file.csv", scope="shop")
    with pytest.raises(InputError):
        read_import_file(SHOPIFY_EXPORT, scope="shop", origin="fax")


def test_empty_file_yields_no_items(tmp_path):
    path = tmp_path / "empty.csv"
    path.write_text("")
    assert read_import_file(path, scope="shop") == []
