from __future__ import annotations

import io
import uuid
from pathlib import Path
from typing import Dict, List, Optional, Union

import pandas as pd
from loguru import logger

from .normalize import normalize_identifier, normalize_title, parse_price, parse_quantity
from .pipeline_types import InputError, RawImportItem


# ---------------------------
# Column detection / standardization
# ---------------------------

# Exports from different shop platforms name the same fields differently.
COLUMN_CANDIDATES: Dict[str, List[str]] = {
    "title": ["title", "Title", "TITLE", "Name", "Product Name", "product_title"],
    "sku": ["sku", "SKU", "Sku", "Variant SKU", "variant_sku"],
    "barcode": ["barcode", "Barcode", "GTIN", "UPC", "EAN", "Variant Barcode"],
    "price": ["price", "Price", "PRICE", "Variant Price"],
    "quantity": ["qty", "Qty", "Quantity", "quantity", "Variant Inventory Qty"],
}

VALID_SOURCES = {"csv", "ocr", "freeform"}


def _standardize_columns(df: pd.DataFrame) -> pd.DataFrame:
    """
    Rename import columns to the canonical names:

    - title
    - sku
    - barcode
    - price
    - quantity
    """
    col_map: Dict[str, str] = {}
    lower_to_original = {str(c).lower(): c for c in df.columns}

    for canon, candidates in COLUMN_CANDIDATES.items():
        for candidate in candidates:
            if candidate in df.columns:
                col_map[candidate] = canon
                break
            if candidate.lower() in lower_to_original:
                col_map[lower_to_original[candidate.lower()]] = canon
                break

    logger.info("Standardizing import columns with map: {}", col_map)
    df_std = df.rename(columns=col_map)

    if not any(c in df_std.columns for c in ("title", "sku", "barcode")):
        logger.warning("Import has no title, sku or barcode column; every row will end as NO_MATCH")
    return df_std


# ---------------------------
# Row -> RawImportItem
# ---------------------------

def _cell(row: pd.Series, name: str):
    if name not in row.index:
        return None
    value = row[name]
    if isinstance(value, str) and not value.strip():
        return None
    return value


def row_to_item(
    row: pd.Series,
    raw: Dict[str, object],
    scope: str,
    job_id: Optional[str],
    source: str = "csv",
) -> RawImportItem:
    title = normalize_title(_cell(row, "title"))
    return RawImportItem(
        item_id=uuid.uuid4().hex,
        scope=scope,
        raw=raw,
        sku=normalize_identifier(_cell(row, "sku")),
        barcode=normalize_identifier(_cell(row, "barcode")),
        title=title or None,
        price=parse_price(_cell(row, "price")),
        quantity=parse_quantity(_cell(row, "quantity")),
        source=source,
        job_id=job_id,
    )


def read_import_frame(source: Union[str, Path, io.StringIO]) -> pd.DataFrame:
    try:
        return pd.read_csv(source, dtype=str, keep_default_na=False, skipinitialspace=True)
    except pd.errors.EmptyDataError:
        return pd.DataFrame()
    except (pd.errors.ParserError, UnicodeDecodeError) as e:
        raise InputError(f"cannot parse import file: {e}") from e


def read_import_file(
    source: Union[str, Path],
    scope: str,
    job_id: Optional[str] = None,
    origin: str = "csv",
) -> List[RawImportItem]:
    """
    Parse a CSV export into immutable RawImportItems.

    `source` is a path, or the CSV text itself when it contains a newline.
    Rows without any usable field are kept; they end as NO_MATCH.
    """
    if origin not in VALID_SOURCES:
        raise InputError(f"unknown import source '{origin}', expected one of {sorted(VALID_SOURCES)}")

    if isinstance(source, str) and "\n" in source:
        df = read_import_frame(io.StringIO(source))
    else:
        path = Path(source)
        if not path.exists():
            raise InputError(f"import file not found: {path}")
        df = read_import_frame(path)

    if df.empty:
        logger.warning("Import {} contained no rows", job_id or "<anonymous>")
        return []

    raw_rows = df.to_dict(orient="records")
    df_std = _standardize_columns(df)

    items = [
        row_to_item(row, raw_rows[i], scope, job_id, origin)
        for i, (_, row) in enumerate(df_std.iterrows())
    ]
    logger.info("Parsed {} import rows for scope {}", len(items), scope)
    return items
