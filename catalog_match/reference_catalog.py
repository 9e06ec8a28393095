from __future__ import annotations

from typing import Any, Dict, Iterable, List, Mapping, Optional

import pandas as pd
from loguru import logger
from rapidfuzz import fuzz, process

from .normalize import normalize_identifier, normalize_title, parse_price
from .pipeline_types import CatalogVariant, TitleMatch
from .ports import CatalogLookup

CATALOG_COLUMNS = ["variant_id", "product_id", "scope", "sku", "barcode", "title", "price"]


class FrameCatalog(CatalogLookup):
    """
    Catalog lookup over an in-memory DataFrame of variants.

    Titles are compared with rapidfuzz token_sort_ratio on normalized
    titles, scaled to [0, 1]. Identifier lookups are exact within scope.
    """

    def __init__(self, df: pd.DataFrame, min_similarity: float = 0.0):
        missing = [c for c in ("variant_id", "product_id", "scope", "title") if c not in df.columns]
        if missing:
            raise ValueError(f"catalog frame is missing columns: {missing}")

        df = df.copy()
        for col in CATALOG_COLUMNS:
            if col not in df.columns:
                df[col] = None
        df["variant_id"] = df["variant_id"].astype(str)
        df["product_id"] = df["product_id"].astype(str)
        df["scope"] = df["scope"].astype(str)
        df["sku"] = df["sku"].map(normalize_identifier)
        df["barcode"] = df["barcode"].map(normalize_identifier)
        df["price"] = df["price"].map(parse_price)
        df["_title_key"] = df["title"].map(normalize_title)

        dupes = df["variant_id"].duplicated()
        if dupes.any():
            logger.warning("Dropping {} duplicate variant ids from catalog", int(dupes.sum()))
            df = df[~dupes]

        self.df = df.sort_values("variant_id").reset_index(drop=True)
        self.min_similarity = min_similarity
        logger.info("Loaded reference catalog with {} variants", len(self.df))

    @classmethod
    def from_records(cls, records: Iterable[Mapping[str, Any]], **kwargs) -> "FrameCatalog":
        return cls(pd.DataFrame(list(records)), **kwargs)

    # ---------------------------
    # Helpers
    # ---------------------------

    @staticmethod
    def _variant(row: pd.Series) -> CatalogVariant:
        price = row["price"]
        return CatalogVariant(
            variant_id=str(row["variant_id"]),
            product_id=str(row["product_id"]),
            title=str(row["title"] or ""),
            sku=row["sku"],
            barcode=row["barcode"],
            price=None if pd.isna(price) else float(price),
        )

    def _first(self, scope: str, column: str, value: str) -> Optional[CatalogVariant]:
        value = normalize_identifier(value)
        if not value:
            return None
        hits = self.df[(self.df["scope"] == scope) & (self.df[column] == value)]
        if hits.empty:
            return None
        if len(hits) > 1:
            logger.warning("{} '{}' is shared by {} variants in scope {}", column, value, len(hits), scope)
        return self._variant(hits.iloc[0])

    # ---------------------------
    # CatalogLookup
    # ---------------------------

    async def find_by_sku(self, scope: str, sku: str) -> Optional[CatalogVariant]:
        return self._first(scope, "sku", sku)

    async def find_by_barcode(self, scope: str, barcode: str) -> Optional[CatalogVariant]:
        return self._first(scope, "barcode", barcode)

    async def find_similar_titles(self, scope: str, title: str, limit: int) -> List[TitleMatch]:
        key = normalize_title(title)
        subset = self.df[self.df["scope"] == scope]
        if not key or subset.empty:
            return []

        choices: Dict[int, str] = subset["_title_key"].to_dict()
        found = process.extract(
            key,
            choices,
            scorer=fuzz.token_sort_ratio,
            limit=None,
            score_cutoff=self.min_similarity * 100.0,
        )
        scored = [(self._variant(self.df.loc[idx]), round(score / 100.0, 4)) for _, score, idx in found]
        # similarity desc, variant id asc
        scored.sort(key=lambda t: (-t[1], t[0].variant_id))
        return [TitleMatch(variant=v, similarity=s) for v, s in scored[:limit]]
