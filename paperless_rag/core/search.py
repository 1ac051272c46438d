"""Similarity search over the local index."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from paperless_rag.core.errors import ConfigurationError, ValidationError

if TYPE_CHECKING:
    from paperless_rag.core.embedding_providers import EmbeddingProvider
    from paperless_rag.core.storage import SearchResult, VectorStore

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 10
DEFAULT_THRESHOLD = 0.7


@dataclass
class SearchSummary:
    results: list["SearchResult"] = field(default_factory=list)
    total_results: int = 0
    query_time_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "results": [r.to_dict() for r in self.results],
            "total_results": self.total_results,
            "query_time_ms": self.query_time_ms,
        }


async def search_index(
    store: "VectorStore | None",
    embedder: "EmbeddingProvider | None",
    query: str,
    limit: int = DEFAULT_LIMIT,
    threshold: float = DEFAULT_THRESHOLD,
) -> SearchSummary:
    """Embed query and return the stored documents most similar to it.

    A limit <= 0 falls back to DEFAULT_LIMIT and a threshold of 0 falls back
    to DEFAULT_THRESHOLD.

    Raises:
        ConfigurationError: If store or embedder is missing.
        ValidationError: If query is blank or threshold is outside [0, 1].
        TransportError: If the query could not be embedded.
    """
    if store is None:
        raise ConfigurationError("vector store is required")
    if embedder is None:
        raise ConfigurationError("embedder is required")
    if not query or not query.strip():
        raise ValidationError("query is required")
    if threshold < 0 or threshold > 1:
        raise ValidationError(f"threshold must be between 0 and 1, got {threshold}")
    if limit <= 0:
        limit = DEFAULT_LIMIT
    if threshold == 0:
        threshold = DEFAULT_THRESHOLD

    start = time.monotonic()
    vector = await embedder.embed_single(query)
    results = store.search_similar(vector, limit, threshold)
    elapsed_ms = int((time.monotonic() - start) * 1000)

    logger.info(f"Search returned {len(results)} results in {elapsed_ms}ms (limit={limit}, threshold={threshold})")
    return SearchSummary(results=results, total_results=len(results), query_time_ms=elapsed_ms)
