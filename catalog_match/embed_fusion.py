from __future__ import annotations

from typing import Iterable, List, Optional, Sequence

import numpy as np
from loguru import logger

from .config import CallPolicy, FusionWeights
from .pipeline_types import CollaboratorError, EmbeddingFusionError, FusedEmbedding, InputError
from .ports import EmbeddingProvider, ImageInput
from .resilience import guarded_call

MAX_TEXT_DESCRIPTION_CHARS = 500


# ---------------------------------------------------------------------------
# Vector primitives
# ---------------------------------------------------------------------------

def _as_vector(v: Iterable[float]) -> np.ndarray:
    arr = np.asarray(v, dtype="float32").reshape(-1)
    if arr.size == 0:
        raise EmbeddingFusionError("empty embedding vector")
    return arr


def normalize_vector(v: Iterable[float]) -> np.ndarray:
    """
    L2-normalise `v`.

    A zero vector is returned unchanged (and logged): it cannot be
    normalised and means an upstream embedding call produced garbage.
    """
    arr = _as_vector(v)
    norm = float(np.linalg.norm(arr))
    if norm == 0.0:
        logger.warning("Cannot normalize zero vector (dim={}); returning it unchanged", arr.size)
        return arr
    return (arr / norm).astype("float32")


def cosine_similarity(a: Iterable[float], b: Iterable[float]) -> float:
    """Dot product of two already-normalised vectors; 0.0 when dims differ."""
    va = np.asarray(a, dtype="float32").reshape(-1)
    vb = np.asarray(b, dtype="float32").reshape(-1)
    if va.shape != vb.shape:
        logger.warning("Cosine similarity on mismatched dims {} vs {}", va.size, vb.size)
        return 0.0
    return float(np.dot(va, vb))


def _check_same_space(vectors: Sequence[np.ndarray]) -> None:
    dims = {int(v.shape[0]) for v in vectors}
    if len(dims) > 1:
        raise EmbeddingFusionError(f"cannot fuse vectors of different dimensions: {sorted(dims)}")


def combine_embeddings(
    image: Iterable[float],
    text: Iterable[float],
    image_weight: float = 0.7,
    text_weight: float = 0.3,
) -> np.ndarray:
    img = normalize_vector(image)
    txt = normalize_vector(text)
    _check_same_space([img, txt])
    fused = image_weight * img + text_weight * txt
    return normalize_vector(fused)


def average_images(images: Sequence[Iterable[float]]) -> np.ndarray:
    """Equal-weight mean of the normalised image vectors, re-normalised."""
    if not images:
        raise EmbeddingFusionError("no image embeddings to combine")
    vectors = [normalize_vector(v) for v in images]
    if len(vectors) == 1:
        return vectors[0]
    _check_same_space(vectors)
    return normalize_vector(np.mean(np.stack(vectors), axis=0))


# ---------------------------------------------------------------------------
# Fusion entry point
# ---------------------------------------------------------------------------

def fuse(
    images: Optional[Sequence[Iterable[float]]] = None,
    text: Optional[Iterable[float]] = None,
    image_weight: float = 0.7,
    text_weight: float = 0.3,
) -> FusedEmbedding:
    """
    Fuse zero or more image vectors and an optional text vector.

    - one modality: that modality's normalised vector, weight 1.0
    - several images: equal-weight average, re-normalised
    - image(s) + text: normalize(w_i * image + w_t * text)

    Raises EmbeddingFusionError when nothing is supplied.
    """
    images = list(images or [])
    if not images and text is None:
        raise EmbeddingFusionError("no embedding supplied")

    if not images:
        return FusedEmbedding(normalize_vector(text), ("text",), (1.0,))

    image_vec = average_images(images)
    if text is None:
        return FusedEmbedding(image_vec, ("image",), (1.0,))

    fused = combine_embeddings(image_vec, text, image_weight, text_weight)
    return FusedEmbedding(fused, ("image", "text"), (float(image_weight), float(text_weight)))


# ---------------------------------------------------------------------------
# Provider-backed helpers
# ---------------------------------------------------------------------------

def product_text(
    title: str,
    description: Optional[str] = None,
    brand: Optional[str] = None,
    category: Optional[str] = None,
    price: Optional[float] = None,
    tags: Optional[Sequence[str]] = None,
) -> str:
    """Flatten product fields into the " | "-joined text used for text embeddings."""
    parts: List[str] = [title.strip()] if title and title.strip() else []
    if brand:
        parts.append(f"Brand: {brand}")
    if category:
        parts.append(f"Category: {category}")
    if price is not None and price > 0:
        parts.append(f"Price: ${price}")
    if description:
        parts.append(description[:MAX_TEXT_DESCRIPTION_CHARS])
    if tags:
        parts.append(f"Tags: {', '.join(tags)}")
    return " | ".join(parts)


async def embed_product(
    provider: EmbeddingProvider,
    images: Sequence[ImageInput] = (),
    text: Optional[str] = None,
    weights: Optional[FusionWeights] = None,
    policy: Optional[CallPolicy] = None,
) -> FusedEmbedding:
    """
    Embed a product from its photos and/or text.

    Individual image failures are logged and skipped; the product fails
    only when no image and no text could be embedded.
    """
    weights = weights or FusionWeights()
    policy = policy or CallPolicy()

    image_vectors: List[np.ndarray] = []
    for i, image in enumerate(images):
        try:
            vec = await guarded_call("embedding", lambda image=image: provider.embed_image(image), policy)
        except (CollaboratorError, InputError) as e:
            logger.warning("Skipping image {} of product embedding: {}", i, e)
            continue
        image_vectors.append(vec)

    text_vector = None
    if text and text.strip():
        text_vector = await guarded_call("embedding", lambda: provider.embed_text(text), policy)

    if not image_vectors and text_vector is None:
        raise InputError("No valid images or text provided")

    return fuse(
        image_vectors,
        text_vector,
        image_weight=weights.product_image_weight,
        text_weight=weights.product_text_weight,
    )
