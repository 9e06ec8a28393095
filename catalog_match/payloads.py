"""
Boundary validation of candidate payloads.

Vector-index rows and external-search records arrive as loose mappings.
They are validated here into one of a closed set of payload kinds and
turned into `Candidate` objects, so scoring code never sees untyped data.
"""

from __future__ import annotations

from typing import Annotated, Any, Dict, Iterable, List, Literal, Mapping, Optional, Union

from loguru import logger
from pydantic import BaseModel, Field, TypeAdapter, ValidationError, field_validator

from .normalize import basic_clean, parse_price
from .pipeline_types import Candidate, IndexHit, InputError

MAX_DESCRIPTION_CHARS = 2_000


class _PayloadBase(BaseModel):
    title: str = ""
    description: str = ""
    price: Optional[float] = None
    image_url: Optional[str] = None

    @field_validator("title", "description", mode="before")
    @classmethod
    def _clean_text(cls, v: Any) -> str:
        return basic_clean(v)[:MAX_DESCRIPTION_CHARS]

    @field_validator("price", mode="before")
    @classmethod
    def _coerce_price(cls, v: Any) -> Optional[float]:
        return parse_price(v)


class CatalogPayload(_PayloadBase):
    kind: Literal["catalog"] = "catalog"
    product_id: str
    variant_id: Optional[str] = None
    source_url: Optional[str] = None
    category: Optional[str] = None
    image_similarity: Optional[float] = Field(None, ge=0.0, le=1.0)
    text_similarity: Optional[float] = Field(None, ge=0.0, le=1.0)

    @field_validator("product_id", "variant_id", mode="before")
    @classmethod
    def _ids_as_str(cls, v: Any) -> Any:
        return None if v is None else str(v)


class ExternalPayload(_PayloadBase):
    kind: Literal["external"] = "external"
    url: str
    platform: Optional[str] = None


CandidatePayload = Annotated[
    Union[CatalogPayload, ExternalPayload],
    Field(discriminator="kind"),
]

_ADAPTER: TypeAdapter = TypeAdapter(CandidatePayload)


def parse_payload(raw: Mapping[str, Any], default_kind: str = "catalog") -> Union[CatalogPayload, ExternalPayload]:
    data: Dict[str, Any] = dict(raw)
    data.setdefault("kind", default_kind)
    # search providers commonly call the description "snippet" or "text"
    if data["kind"] == "external" and not data.get("description"):
        data["description"] = data.get("snippet") or data.get("text") or ""
    try:
        return _ADAPTER.validate_python(data)
    except ValidationError as e:
        raise InputError(f"invalid {data['kind']} payload: {e.error_count()} error(s)") from e


def to_candidate(
    payload: Union[CatalogPayload, ExternalPayload],
    score: float = 0.0,
) -> Candidate:
    if isinstance(payload, CatalogPayload):
        return Candidate(
            product_id=payload.product_id,
            variant_id=payload.variant_id,
            title=payload.title,
            description=payload.description,
            price=payload.price,
            image_url=payload.image_url,
            source_url=payload.source_url,
            score=float(score),
            image_similarity=payload.image_similarity,
            text_similarity=payload.text_similarity,
            origin="catalog",
        )
    return Candidate(
        product_id=None,
        variant_id=None,
        title=payload.title,
        description=payload.description,
        price=payload.price,
        image_url=payload.image_url,
        source_url=payload.url,
        score=float(score),
        origin="external",
    )


def candidate_from_hit(hit: IndexHit) -> Candidate:
    raw = dict(hit.payload)
    raw["product_id"] = hit.product_id
    raw["variant_id"] = hit.variant_id
    payload = parse_payload(raw, default_kind="catalog")
    return to_candidate(payload, score=hit.score)


def candidates_from_search(results: Iterable[Mapping[str, Any]]) -> List[Candidate]:
    """Validate external search records; invalid records are dropped and logged."""
    out: List[Candidate] = []
    for raw in results:
        try:
            payload = parse_payload(raw, default_kind="external")
        except InputError as e:
            logger.warning("Dropping external search record: {}", e)
            continue
        out.append(to_candidate(payload))
    return out
