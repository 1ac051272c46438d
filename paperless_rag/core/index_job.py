"""Index build: pull documents from the source, embed what changed, store it.

A build walks every source page in ascending id order. Unchanged documents
that already have an embedding are skipped, so re-running an interrupted
build only pays for the documents it had not finished. A failure on one
document is recorded in index_failures and the build moves on.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

from paperless_rag.core.errors import (
    ConfigurationError,
    IndexCancelledError,
    StorageError,
    TransportError,
    ValidationError,
)
from paperless_rag.core.storage import Document, as_utc
from paperless_rag.providers.content_types import Page, SourceDocument, Tag

if TYPE_CHECKING:
    from paperless_rag.core.embedding_providers import EmbeddingProvider
    from paperless_rag.core.storage import VectorStore

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 100


class DocumentSource(Protocol):
    def list_documents(
        self, page: int = 1, page_size: int = DEFAULT_PAGE_SIZE, ordering: str = "id"
    ) -> Page[SourceDocument]: ...

    def list_tags(self, page: int = 1, page_size: int = DEFAULT_PAGE_SIZE) -> Page[Tag]: ...


@dataclass
class BuildOptions:
    page_size: int = DEFAULT_PAGE_SIZE
    max_docs: int = 0  # 0 = no limit
    tag_name: str | None = None  # exact tag name a document must carry


@dataclass
class BuildSummary:
    documents_fetched: int = 0
    documents_indexed: int = 0
    documents_skipped: int = 0
    documents_failed: int = 0
    embeddings_generated: int = 0
    duration_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "documents_fetched": self.documents_fetched,
            "documents_indexed": self.documents_indexed,
            "documents_skipped": self.documents_skipped,
            "documents_failed": self.documents_failed,
            "embeddings_generated": self.embeddings_generated,
            "duration_ms": self.duration_ms,
        }


def format_tags(tag_ids: tuple[int, ...] | list[int], tags_by_id: dict[int, str]) -> str:
    """Resolve tag IDs to names, sorted and comma-joined. Unknown IDs become tag-<id>."""
    names = [tags_by_id.get(tag_id) or f"tag-{tag_id}" for tag_id in tag_ids]
    return ", ".join(sorted(names))


def format_document_text(title: str, tags: str) -> str:
    if not tags:
        return title
    return f"{title}. Tags: {tags}"


def build_embedding_text(title: str, tags: str, content: str) -> str:
    """Build the text that gets embedded for a document.

    "<title>. Tags: <tags>", followed by a blank line and the body when the
    body is non-empty. Returns "" when there is nothing to embed.
    """
    base = format_document_text(title.strip(), tags.strip()).strip()
    content = content.strip()

    if not content:
        return base
    if not base:
        return content
    return f"{base}\n\n{content}"


def document_has_tag(doc: SourceDocument, tags_by_id: dict[int, str], tag_name: str) -> bool:
    return any(tags_by_id.get(tag_id) == tag_name for tag_id in doc.tag_ids)


def _check_cancelled(cancel: threading.Event | None, summary: BuildSummary, start: float) -> None:
    if cancel is not None and cancel.is_set():
        summary.duration_ms = int((time.monotonic() - start) * 1000)
        logger.info(f"Index build cancelled: {summary.to_dict()}")
        raise IndexCancelledError(summary)


def list_all_tags(
    source: DocumentSource,
    page_size: int,
    cancel: threading.Event | None = None,
    summary: BuildSummary | None = None,
    start: float | None = None,
) -> dict[int, str]:
    """Fetch every tag page and return a tag-id -> name map."""
    summary = summary or BuildSummary()
    start = time.monotonic() if start is None else start
    tags_by_id: dict[int, str] = {}
    page = 1

    while True:
        _check_cancelled(cancel, summary, start)
        result = source.list_tags(page=page, page_size=page_size)
        for tag in result.items:
            tags_by_id[tag.id] = tag.name
        if not result.has_next or not result.items:
            break
        page += 1

    return tags_by_id


async def build_index(
    source: DocumentSource | None,
    store: "VectorStore | None",
    embedder: "EmbeddingProvider | None",
    options: BuildOptions | None = None,
    cancel: threading.Event | None = None,
) -> BuildSummary:
    """Fetch documents from the source and bring the local index up to date.

    Args:
        source: Paginated document/tag source (e.g. PaperlessClient).
        store: Vector store to update.
        embedder: Embedding provider.
        options: Page size, document cap and tag filter. With a cap, every
            document page is requested at min(page_size, max_docs) and the
            last one is cut client-side, so page offsets stay consistent.
        cancel: Optional event; when set the build stops at the next page or
            document boundary.

    Returns:
        BuildSummary. documents_fetched always equals
        indexed + skipped + failed.

    Raises:
        ConfigurationError: If a collaborator is missing (before any I/O) or
            the embedder is misconfigured.
        IndexCancelledError: If cancel was set. Carries the partial summary.
        StorageError, TransportError: On failures that are not tied to a
            single document (tag/page fetches, cursor updates, lookups).
    """
    if source is None:
        raise ConfigurationError("document source is required")
    if store is None:
        raise ConfigurationError("vector store is required")
    if embedder is None:
        raise ConfigurationError("embedder is required")

    options = options or BuildOptions()
    page_size = options.page_size if options.page_size > 0 else DEFAULT_PAGE_SIZE
    max_docs = max(options.max_docs, 0)
    doc_page_size = page_size
    if max_docs:
        # Page numbers are offsets of page_size, so the size stays fixed for
        # the whole walk and the last page is cut client-side.
        doc_page_size = min(page_size, max_docs)

    summary = BuildSummary()
    start = time.monotonic()

    tags_by_id = list_all_tags(source, page_size, cancel, summary, start)
    logger.info(f"Loaded {len(tags_by_id)} tags")

    state = store.get_index_state()
    if state.last_external_id > 0:
        logger.info(
            f"Resuming index build: last_external_id={state.last_external_id}, "
            f"last_updated_at={state.updated_at}"
        )

    page = 1
    while not (max_docs and summary.documents_fetched >= max_docs):
        _check_cancelled(cancel, summary, start)

        result = source.list_documents(page=page, page_size=doc_page_size, ordering="id")
        if not result.items:
            break

        for doc in result.items:
            if max_docs and summary.documents_fetched >= max_docs:
                break
            _check_cancelled(cancel, summary, start)

            summary.documents_fetched += 1
            await _process_document(store, embedder, tags_by_id, options, doc, summary)
            store.update_index_state(doc.external_id)

        if not result.has_next:
            break
        page += 1

    summary.duration_ms = int((time.monotonic() - start) * 1000)
    logger.info(f"Index build complete: {summary.to_dict()}")
    return summary


async def _process_document(
    store: "VectorStore",
    embedder: "EmbeddingProvider",
    tags_by_id: dict[int, str],
    options: BuildOptions,
    doc: SourceDocument,
    summary: BuildSummary,
) -> None:
    if options.tag_name and not document_has_tag(doc, tags_by_id, options.tag_name):
        logger.info(f"Skipping document {doc.external_id}: missing tag {options.tag_name!r}")
        summary.documents_skipped += 1
        return

    tags = format_tags(doc.tag_ids, tags_by_id)
    text = build_embedding_text(doc.title, tags, doc.content)
    if not text:
        logger.info(f"Skipping document {doc.external_id}: empty embedding text")
        summary.documents_skipped += 1
        return

    existing = store.get_document_by_external_id(doc.external_id)
    if (
        existing is not None
        and existing.last_modified == as_utc(doc.last_modified)
        and existing.embedded_at is not None
    ):
        logger.info(f"Skipping unchanged document {doc.external_id} (modified {doc.last_modified})")
        summary.documents_skipped += 1
        return

    # Embedding runs outside any open transaction.
    try:
        vector = await embedder.embed_single(text)
    except (TransportError, ValidationError) as e:
        _record_failure(store, summary, doc.external_id, f"generate embedding for document {doc.external_id}: {e}")
        return

    logger.info(f"Embedded document {doc.external_id}: tags={tags!r}, text_len={len(text)}")

    try:
        store.upsert_document_with_embedding(
            Document(
                external_id=doc.external_id,
                url=doc.url,
                title=doc.title,
                tags=tags,
                last_modified=doc.last_modified,
            ),
            text,
            vector,
        )
    except StorageError as e:
        _record_failure(store, summary, doc.external_id, f"update index for document {doc.external_id}: {e}")
        return

    store.clear_index_failure(doc.external_id)
    summary.documents_indexed += 1
    summary.embeddings_generated += 1


def _record_failure(store: "VectorStore", summary: BuildSummary, external_id: int, error: str) -> None:
    logger.error(f"Failed to index document {external_id}: {error}")
    store.record_index_failure(external_id, error)
    summary.documents_failed += 1
