from __future__ import annotations

import json
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from loguru import logger
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from .pipeline_types import ConfigError


# ---------------------------
# Environment variable names
# ---------------------------

CONFIG_FILE_ENV = "CATALOG_MATCH_CONFIG_FILE"

DEFAULT_REPUTABLE_HOSTS: List[str] = [
    "amazon.com",
    "ebay.com",
    "bestbuy.com",
    "target.com",
    "walmart.com",
]

HTTP_USER_AGENT = "catalog-match/1.0 (+https://example.com; contact=catalog@placeholder.com)"


# ---------------------------
# Configuration sections
# ---------------------------

class FusionWeights(BaseModel):
    """Weights for combining modality vectors and modality similarities."""

    image_weight: float = Field(0.7, ge=0.0)
    text_weight: float = Field(0.3, ge=0.0)
    # product embeddings built from several photos plus a description
    product_image_weight: float = Field(0.8, ge=0.0)
    product_text_weight: float = Field(0.2, ge=0.0)
    # per-candidate "vector hybrid" score in reranking
    hybrid_image_weight: float = Field(0.6, ge=0.0)
    hybrid_text_weight: float = Field(0.4, ge=0.0)

    @model_validator(mode="after")
    def _non_zero_pairs(self) -> "FusionWeights":
        pairs = [
            ("image_weight", "text_weight"),
            ("product_image_weight", "product_text_weight"),
            ("hybrid_image_weight", "hybrid_text_weight"),
        ]
        for a, b in pairs:
            if getattr(self, a) + getattr(self, b) <= 0:
                raise ValueError(f"{a} and {b} cannot both be zero")
        return self


class RerankWeights(BaseModel):
    reranker_weight: float = Field(0.5, ge=0.0, le=1.0)
    vector_weight: float = Field(0.5, ge=0.0, le=1.0)
    high_vector_threshold: float = Field(0.60, ge=0.0, le=1.0)
    high_vector_bonus: float = Field(0.15, ge=0.0, le=1.0)

    clean_title_max: float = Field(0.03, ge=0.0, le=1.0)
    clean_title_punctuation_cap: int = Field(10, gt=0)
    price_boost: float = Field(0.05, ge=0.0, le=1.0)
    host_boost: float = Field(0.08, ge=0.0, le=1.0)
    token_overlap_factor: float = Field(0.20, ge=0.0)
    token_overlap_max: float = Field(0.10, ge=0.0, le=1.0)

    reputable_hosts: List[str] = Field(default_factory=lambda: list(DEFAULT_REPUTABLE_HOSTS))

    @field_validator("reputable_hosts", mode="before")
    @classmethod
    def _split_hosts(cls, v: Any) -> Any:
        if isinstance(v, str):
            v = v.split(",")
        if isinstance(v, (list, tuple)):
            return [h.strip().lower() for h in v if str(h).strip()]
        return v


class ConfidenceThresholds(BaseModel):
    no_match_floor: float = Field(0.35, ge=0.0, le=1.0)
    medium: float = Field(0.50, ge=0.0, le=1.0)
    high: float = Field(0.80, ge=0.0, le=1.0)

    @model_validator(mode="after")
    def _ordered(self) -> "ConfidenceThresholds":
        if not (self.no_match_floor <= self.medium <= self.high):
            raise ValueError(
                f"thresholds must satisfy no_match_floor <= medium <= high, got "
                f"{self.no_match_floor} / {self.medium} / {self.high}"
            )
        return self


class TitleMatchPolicy(BaseModel):
    """Decision policy for fuzzy title matches, plus identifier confidences."""

    auto_match_above: float = Field(0.8, ge=0.0, le=1.0)
    review_above: float = Field(0.5, ge=0.0, le=1.0)
    candidate_limit: int = Field(5, gt=0)
    sku_confidence: float = Field(1.0, ge=0.0, le=1.0)
    barcode_confidence: float = Field(0.95, ge=0.0, le=1.0)

    @model_validator(mode="after")
    def _ordered(self) -> "TitleMatchPolicy":
        if self.review_above > self.auto_match_above:
            raise ValueError("review_above must not exceed auto_match_above")
        return self


class SearchSettings(BaseModel):
    limit: int = Field(15, gt=0)
    threshold: float = Field(0.6, ge=0.0, le=1.0)
    default_limit: int = Field(20, gt=0)
    default_threshold: float = Field(0.5, ge=0.0, le=1.0)
    # external search fires when a source has fewer vector results than this
    image_external_below: int = Field(1, ge=0)
    text_external_below: int = Field(3, ge=0)
    external_result_limit: int = Field(10, gt=0)


class SourceConfidence(BaseModel):
    """Per-source tiering used by the recognition stage."""

    high: float = Field(0.85, ge=0.0, le=1.0)
    medium: float = Field(0.65, ge=0.0, le=1.0)
    # share of high (or high+medium) sources needed to move forward
    advance_share: float = Field(0.7, ge=0.0, le=1.0)


class CallPolicy(BaseModel):
    """Timeout and retry budget applied to every collaborator call."""

    timeout_s: float = Field(15.0, gt=0.0)
    max_retries: int = Field(2, ge=0)
    retry_delay_s: float = Field(0.5, ge=0.0)


class ClientSettings(BaseModel):
    """
    AI server HTTP settings. Calls made through the engine also run under
    `CallPolicy.timeout_s`, which wins when it is the shorter of the two;
    keep the per-request timeout below it so the client can still retry.
    """

    base_url: str = "http://localhost:8000"
    api_key: Optional[str] = None
    timeout_s: float = Field(10.0, gt=0.0)
    connect_timeout_s: float = Field(5.0, gt=0.0)
    max_retries: int = Field(3, ge=0)
    retry_delay_s: float = Field(1.0, ge=0.0)
    health_ttl_s: float = Field(300.0, ge=0.0)


class LinkFetchSettings(BaseModel):
    connect_timeout_s: float = Field(3.0, gt=0.0)
    read_timeout_s: float = Field(7.0, gt=0.0)
    max_redirects: int = Field(2, ge=0)
    max_bytes: int = Field(1_000_000, gt=0)
    user_agent: str = HTTP_USER_AGENT


class SessionSettings(BaseModel):
    max_age_hours: float = Field(24.0, gt=0.0)
    checkpoint_path: Optional[Path] = None
    max_concurrency: int = Field(4, gt=0)


class BatchSettings(BaseModel):
    sub_batch_size: int = Field(100, gt=0)


class MatchingConfig(BaseModel):
    """
    Every threshold and weight used by the engine, in one place.

    Components receive this (or the relevant section) explicitly; nothing
    in the scoring code reads the environment.
    """

    fusion: FusionWeights = Field(default_factory=FusionWeights)
    rerank: RerankWeights = Field(default_factory=RerankWeights)
    thresholds: ConfidenceThresholds = Field(default_factory=ConfidenceThresholds)
    title_match: TitleMatchPolicy = Field(default_factory=TitleMatchPolicy)
    search: SearchSettings = Field(default_factory=SearchSettings)
    source_confidence: SourceConfidence = Field(default_factory=SourceConfidence)
    calls: CallPolicy = Field(default_factory=CallPolicy)
    client: ClientSettings = Field(default_factory=ClientSettings)
    link_fetch: LinkFetchSettings = Field(default_factory=LinkFetchSettings)
    session: SessionSettings = Field(default_factory=SessionSettings)
    batch: BatchSettings = Field(default_factory=BatchSettings)

    def with_boosts(
        self,
        price_boost: Optional[float] = None,
        host_boost: Optional[float] = None,
    ) -> "MatchingConfig":
        """Copy with recalibrated bonus magnitudes."""
        update: Dict[str, float] = {}
        if price_boost is not None:
            update["price_boost"] = price_boost
        if host_boost is not None:
            update["host_boost"] = host_boost
        try:
            rerank = RerankWeights.model_validate({**self.rerank.model_dump(), **update})
        except ValidationError as e:
            raise ConfigError(f"invalid boost values: {e}") from e
        return self.model_copy(update={"rerank": rerank})


# ---------------------------
# Loading
# ---------------------------

def _hosts(v: str) -> List[str]:
    return [h.strip() for h in v.split(",") if h.strip()]


def _ms_to_s(v: str) -> float:
    return float(v) / 1000.0


# env var -> (section, field, parser)
ENV_OVERRIDES: Dict[str, Tuple[str, str, Callable[[str], Any]]] = {
    "CATALOG_MATCH_IMAGE_WEIGHT": ("fusion", "image_weight", float),
    "CATALOG_MATCH_TEXT_WEIGHT": ("fusion", "text_weight", float),
    "CATALOG_MATCH_RERANK_PRICE_BOOST": ("rerank", "price_boost", float),
    "CATALOG_MATCH_RERANK_HOST_BOOST": ("rerank", "host_boost", float),
    "RERANK_REPUTABLE_HOSTS": ("rerank", "reputable_hosts", _hosts),
    "CATALOG_MATCH_REPUTABLE_HOSTS": ("rerank", "reputable_hosts", _hosts),
    "CATALOG_MATCH_NO_MATCH_FLOOR": ("thresholds", "no_match_floor", float),
    "CATALOG_MATCH_MEDIUM_THRESHOLD": ("thresholds", "medium", float),
    "CATALOG_MATCH_HIGH_THRESHOLD": ("thresholds", "high", float),
    "CATALOG_MATCH_TITLE_AUTO_MATCH": ("title_match", "auto_match_above", float),
    "CATALOG_MATCH_TITLE_REVIEW": ("title_match", "review_above", float),
    "CATALOG_MATCH_TITLE_LIMIT": ("title_match", "candidate_limit", int),
    "CATALOG_MATCH_SEARCH_LIMIT": ("search", "limit", int),
    "CATALOG_MATCH_SEARCH_THRESHOLD": ("search", "threshold", float),
    "CATALOG_MATCH_CALL_TIMEOUT": ("calls", "timeout_s", float),
    "CATALOG_MATCH_CALL_RETRIES": ("calls", "max_retries", int),
    "CATALOG_MATCH_BATCH_SIZE": ("batch", "sub_batch_size", int),
    "CATALOG_MATCH_SESSION_MAX_AGE_HOURS": ("session", "max_age_hours", float),
    "CATALOG_MATCH_SESSION_CHECKPOINT": ("session", "checkpoint_path", Path),
    "CATALOG_MATCH_MAX_CONCURRENCY": ("session", "max_concurrency", int),
    "AI_SERVER_URL": ("client", "base_url", str),
    "AI_SERVER_API_KEY": ("client", "api_key", str),
    "AI_SERVER_TIMEOUT": ("client", "timeout_s", _ms_to_s),
    "AI_SERVER_MAX_RETRIES": ("client", "max_retries", int),
}


def _read_override_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise ConfigError(f"config file not found: {path}")
    try:
        with path.open("r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigError(f"cannot read config file {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"config file {path} must contain a JSON object")
    return data


def _merge(base: Dict[str, Any], extra: Mapping[str, Any]) -> Dict[str, Any]:
    out = dict(base)
    for key, value in extra.items():
        if isinstance(value, Mapping) and isinstance(out.get(key), dict):
            out[key] = _merge(out[key], value)
        else:
            out[key] = value
    return out


def load_config(
    path: Optional[Path] = None,
    env: Optional[Mapping[str, str]] = None,
) -> MatchingConfig:
    """
    Build the configuration from defaults, an optional JSON file and the
    environment (in that order of precedence, lowest first).

    Any invalid value raises ConfigError.
    """
    env = os.environ if env is None else env

    data: Dict[str, Any] = {}
    file_path = path or (Path(env[CONFIG_FILE_ENV]) if env.get(CONFIG_FILE_ENV) else None)
    if file_path is not None:
        logger.info("Loading matching config overrides from {}", file_path)
        data = _merge(data, _read_override_file(Path(file_path)))

    for var, (section, name, parse) in ENV_OVERRIDES.items():
        raw = env.get(var)
        if raw is None or raw == "":
            continue
        try:
            value = parse(raw)
        except (TypeError, ValueError) as e:
            raise ConfigError(f"invalid value for {var}: {raw!r}") from e
        data = _merge(data, {section: {name: value}})

    try:
        cfg = MatchingConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"invalid matching configuration: {e}") from e

    logger.info(
        "Matching config: thresholds={}/{}/{}, title auto>{} review>{}",
        cfg.thresholds.no_match_floor,
        cfg.thresholds.medium,
        cfg.thresholds.high,
        cfg.title_match.auto_match_above,
        cfg.title_match.review_above,
    )
    return cfg


@lru_cache(maxsize=1)
def get_config() -> MatchingConfig:
    return load_config()
