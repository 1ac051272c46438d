"""Error types shared by the indexer, search and storage layers."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from paperless_rag.core.index_job import BuildSummary


class RagError(Exception):
    """Base class for all paperless-rag errors."""


class ConfigurationError(RagError):
    """A required collaborator or option is missing. Raised before any I/O."""


class TransportError(RagError):
    """A remote backend (embeddings API, Paperless) could not be reached or failed."""


class StorageError(RagError):
    """Local persistence failed. Never retried."""


class ValidationError(RagError):
    """Caller input is invalid (empty query, out-of-range threshold, malformed vector)."""


class IndexCancelledError(RagError):
    """An index build was cancelled. Carries the counters accumulated so far."""

    def __init__(self, summary: "BuildSummary"):
        super().__init__("index build cancelled")
        self.summary = summary
