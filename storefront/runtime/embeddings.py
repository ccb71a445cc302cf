"""
Thin wrapper around OpenAI / Azure OpenAI embeddings API.

Returns a callable ``embed_fn(texts) -> List[List[float]]`` used by the
retrieval engine for query vectors and by the indexer for documents.
"""
from __future__ import annotations

import math
import os
from typing import Callable, List

import openai

from storefront.runtime.errors import UpstreamUnavailable
from storefront.runtime.models import SparseVector

# Per-request input cap for the embeddings endpoint.
_BATCH_SIZE = 100

EmbedFn = Callable[[List[str]], List[List[float]]]


def _normalize(vec: List[float]) -> List[float]:
    """L2-normalize a vector for dot-product similarity."""
    norm = math.sqrt(sum(v * v for v in vec))
    if norm < 1e-9:
        return vec
    return [v / norm for v in vec]


def scale_hybrid(dense: List[float], sparse: SparseVector, alpha: float):
    """Balance the two halves of a hybrid query: dense * (1 - alpha), sparse * alpha."""
    if not 0.0 <= alpha <= 1.0:
        raise ValueError(f"alpha must be within [0, 1], got {alpha}")
    return [v * (1 - alpha) for v in dense], sparse.scaled(alpha)


def get_embed_fn(
    model: str | None = None,
    batch_size: int = _BATCH_SIZE,
) -> EmbedFn:
    """
    Build the embedding callable for documents and queries.

    Texts go out in chunks of ``batch_size``; every vector comes back
    unit-length so the index can score with a plain dot product.
    Connection failures surface as UpstreamUnavailable.
    """
    from storefront.llm_client import get_client

    model = model or os.getenv("SA_EMBEDDING_MODEL", "text-embedding-3-small")

    def _embed(texts: List[str]) -> List[List[float]]:
        if not texts:
            return []
        client = get_client()
        all_vecs: List[List[float]] = []

        for start in range(0, len(texts), batch_size):
            batch = texts[start : start + batch_size]
            try:
                response = client.embeddings.create(input=batch, model=model)
            except (openai.APIConnectionError, openai.APITimeoutError) as e:
                raise UpstreamUnavailable(f"embedding service unavailable: {e}") from e
            vecs = [item.embedding for item in response.data]
            all_vecs.extend(_normalize(v) for v in vecs)

        return all_vecs

    return _embed
