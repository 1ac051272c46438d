from __future__ import annotations

import logging
import os
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from paperless_rag.core.embeddings import cosine_similarity, deserialize_f32, serialize_f32
from paperless_rag.core.errors import StorageError
from paperless_rag.core.settings import Settings

logger = logging.getLogger(__name__)

MEMORY_PATH = ":memory:"

# Tried in order, first match wins. Covers SQLite CURRENT_TIMESTAMP values
# and the isoformat() strings written by this module.
TIMESTAMP_FORMATS = (
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d %H:%M:%S.%f",
    "%Y-%m-%d %H:%M:%S%z",
    "%Y-%m-%d %H:%M:%S.%f%z",
    "%Y-%m-%dT%H:%M:%S",
    "%Y-%m-%dT%H:%M:%S.%f",
    "%Y-%m-%dT%H:%M:%S%z",
    "%Y-%m-%dT%H:%M:%S.%f%z",
)


def parse_timestamp(value: str) -> datetime:
    """Parse a stored timestamp. Naive values are taken as UTC.

    Raises:
        StorageError: If no known format matches.
    """
    text = value.strip()
    for fmt in TIMESTAMP_FORMATS:
        try:
            parsed = datetime.strptime(text, fmt)
        except ValueError:
            continue
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed
    raise StorageError(f"unable to parse timestamp: {value!r}")


def as_utc(value: datetime | None) -> datetime | None:
    """Return value with naive datetimes taken as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _format_timestamp(value: datetime | None) -> str | None:
    if value is None:
        return None
    return as_utc(value).isoformat()


def _optional_timestamp(value: str | None) -> datetime | None:
    if value is None or value == "":
        return None
    return parse_timestamp(value)


SCHEMA_SQL = """
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS documents (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  external_id INTEGER UNIQUE NOT NULL,
  url TEXT NOT NULL,
  title TEXT,
  tags TEXT,
  embedded_at TEXT,
  last_modified TEXT
);

CREATE TABLE IF NOT EXISTS embeddings (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  document_id INTEGER NOT NULL REFERENCES documents(id) ON DELETE CASCADE,
  content TEXT NOT NULL,
  vector BLOB NOT NULL,
  created_at TEXT DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_embeddings_document_id ON embeddings(document_id);

-- Singleton row: last processed external id
CREATE TABLE IF NOT EXISTS index_state (
  id INTEGER PRIMARY KEY CHECK (id = 1),
  last_external_id INTEGER NOT NULL DEFAULT 0,
  updated_at TEXT DEFAULT CURRENT_TIMESTAMP
);

INSERT OR IGNORE INTO index_state (id, last_external_id) VALUES (1, 0);

CREATE TABLE IF NOT EXISTS index_failures (
  external_id INTEGER PRIMARY KEY,
  error TEXT NOT NULL,
  failed_at TEXT DEFAULT CURRENT_TIMESTAMP
);
"""


@dataclass
class Document:
    """A source document as stored in the index."""

    external_id: int
    url: str
    title: str
    tags: str
    last_modified: datetime | None = None
    embedded_at: datetime | None = None
    id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "external_id": self.external_id,
            "url": self.url,
            "title": self.title,
            "tags": self.tags,
            "last_modified": _format_timestamp(self.last_modified),
            "embedded_at": _format_timestamp(self.embedded_at),
        }


@dataclass
class Embedding:
    id: int
    document_id: int
    content: str
    vector: list[float]
    created_at: datetime | None = None


@dataclass
class IndexState:
    last_external_id: int = 0
    updated_at: datetime | None = None


@dataclass
class IndexFailure:
    external_id: int
    error: str
    failed_at: datetime | None = None


@dataclass
class SearchResult:
    document_id: int
    url: str
    title: str
    tags: str
    similarity_score: float
    last_modified: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "document_id": self.document_id,
            "url": self.url,
            "title": self.title,
            "tags": self.tags,
            "similarity_score": self.similarity_score,
            "last_modified": _format_timestamp(self.last_modified),
        }


@dataclass
class VectorStore:
    conn: sqlite3.Connection

    @classmethod
    def open(cls, path: str) -> "VectorStore":
        """Open (or create) a store at path and make sure the schema exists."""
        try:
            if path != MEMORY_PATH:
                directory = os.path.dirname(os.path.abspath(path))
                os.makedirs(directory, exist_ok=True)
            conn = sqlite3.connect(path, check_same_thread=False)
        except (OSError, sqlite3.Error) as e:
            raise StorageError(f"open store {path}: {e}") from e

        conn.row_factory = sqlite3.Row
        store = cls(conn=conn)
        try:
            conn.execute("PRAGMA foreign_keys = ON")
            store.init()
        except sqlite3.Error as e:
            conn.close()
            raise StorageError(f"initialize schema in {path}: {e}") from e
        return store

    def init(self) -> None:
        self.conn.executescript(SCHEMA_SQL)
        self.conn.commit()

    def close(self) -> None:
        self.conn.close()

    def __enter__(self) -> "VectorStore":
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    # ==================== Documents ====================

    def upsert_document_with_embedding(
        self, doc: Document, text: str, vector: list[float]
    ) -> int:
        """Insert or update a document and replace its embedding in one transaction.

        Either every step commits or none does: the document keeps exactly
        the embedding it had before the call when anything fails.

        Returns:
            Internal document ID.

        Raises:
            StorageError: If any step fails. The transaction is rolled back.
        """
        vector_bytes = serialize_f32(vector)
        embedded_at = _format_timestamp(datetime.now(timezone.utc))
        try:
            with self.conn:
                self.conn.execute(
                    """
                    INSERT INTO documents (external_id, url, title, tags, embedded_at, last_modified)
                    VALUES (?, ?, ?, ?, ?, ?)
                    ON CONFLICT(external_id) DO UPDATE SET
                      url = excluded.url,
                      title = excluded.title,
                      tags = excluded.tags,
                      embedded_at = excluded.embedded_at,
                      last_modified = excluded.last_modified
                    """,
                    (
                        doc.external_id,
                        doc.url,
                        doc.title,
                        doc.tags,
                        embedded_at,
                        _format_timestamp(doc.last_modified),
                    ),
                )
                row = self.conn.execute(
                    "SELECT id FROM documents WHERE external_id = ?",
                    (doc.external_id,),
                ).fetchone()
                if row is None:
                    raise StorageError(f"document {doc.external_id} missing after upsert")
                document_id = row[0]

                self.conn.execute(
                    "DELETE FROM embeddings WHERE document_id = ?",
                    (document_id,),
                )
                self.conn.execute(
                    "INSERT INTO embeddings (document_id, content, vector) VALUES (?, ?, ?)",
                    (document_id, text, vector_bytes),
                )
        except sqlite3.Error as e:
            raise StorageError(f"upsert document {doc.external_id}: {e}") from e

        return document_id

    def get_document_by_external_id(self, external_id: int) -> Document | None:
        """Get a document by its source ID. Returns None when absent."""
        try:
            row = self.conn.execute(
                """
                SELECT id, external_id, url, title, tags, embedded_at, last_modified
                FROM documents
                WHERE external_id = ?
                """,
                (external_id,),
            ).fetchone()
        except sqlite3.Error as e:
            raise StorageError(f"get document {external_id}: {e}") from e

        if row is None:
            return None
        return self._document_from_row(row)

    def delete_document(self, external_id: int) -> bool:
        """Delete a document and (via cascade) its embedding."""
        try:
            cur = self.conn.execute(
                "DELETE FROM documents WHERE external_id = ?", (external_id,)
            )
            self.conn.commit()
        except sqlite3.Error as e:
            raise StorageError(f"delete document {external_id}: {e}") from e
        return cur.rowcount > 0

    def list_documents(self) -> list[Document]:
        try:
            rows = self.conn.execute(
                """
                SELECT id, external_id, url, title, tags, embedded_at, last_modified
                FROM documents
                ORDER BY external_id
                """
            ).fetchall()
        except sqlite3.Error as e:
            raise StorageError(f"list documents: {e}") from e
        return [self._document_from_row(row) for row in rows]

    def count_documents(self) -> int:
        try:
            return self.conn.execute("SELECT COUNT(*) FROM documents").fetchone()[0]
        except sqlite3.Error as e:
            raise StorageError(f"count documents: {e}") from e

    def count_embeddings(self) -> int:
        try:
            return self.conn.execute("SELECT COUNT(*) FROM embeddings").fetchone()[0]
        except sqlite3.Error as e:
            raise StorageError(f"count embeddings: {e}") from e

    def get_embedding(self, document_id: int) -> Embedding | None:
        """Get the current embedding of a document by internal ID."""
        try:
            row = self.conn.execute(
                """
                SELECT id, document_id, content, vector, created_at
                FROM embeddings
                WHERE document_id = ?
                """,
                (document_id,),
            ).fetchone()
        except sqlite3.Error as e:
            raise StorageError(f"get embedding for document {document_id}: {e}") from e

        if row is None:
            return None
        return Embedding(
            id=row["id"],
            document_id=row["document_id"],
            content=row["content"],
            vector=deserialize_f32(row["vector"]),
            created_at=_optional_timestamp(row["created_at"]),
        )

    def _document_from_row(self, row: sqlite3.Row) -> Document:
        return Document(
            id=row["id"],
            external_id=row["external_id"],
            url=row["url"],
            title=row["title"] or "",
            tags=row["tags"] or "",
            embedded_at=_optional_timestamp(row["embedded_at"]),
            last_modified=_optional_timestamp(row["last_modified"]),
        )

    # ==================== Index State ====================

    def get_index_state(self) -> IndexState:
        try:
            row = self.conn.execute(
                "SELECT last_external_id, updated_at FROM index_state WHERE id = 1"
            ).fetchone()
        except sqlite3.Error as e:
            raise StorageError(f"get index state: {e}") from e

        if row is None:
            return IndexState()
        return IndexState(
            last_external_id=row["last_external_id"],
            updated_at=_optional_timestamp(row["updated_at"]),
        )

    def update_index_state(self, last_external_id: int) -> None:
        try:
            self.conn.execute(
                """
                UPDATE index_state
                SET last_external_id = ?, updated_at = CURRENT_TIMESTAMP
                WHERE id = 1
                """,
                (last_external_id,),
            )
            self.conn.commit()
        except sqlite3.Error as e:
            raise StorageError(f"update index state to {last_external_id}: {e}") from e

    def reset_index_state(self) -> None:
        self.update_index_state(0)

    # ==================== Failures ====================

    def record_index_failure(self, external_id: int, error: Exception | str) -> None:
        """Save (or refresh) the failure record for a document."""
        try:
            self.conn.execute(
                """
                INSERT INTO index_failures (external_id, error)
                VALUES (?, ?)
                ON CONFLICT(external_id) DO UPDATE SET
                  error = excluded.error,
                  failed_at = CURRENT_TIMESTAMP
                """,
                (external_id, str(error)),
            )
            self.conn.commit()
        except sqlite3.Error as e:
            raise StorageError(f"record failure for document {external_id}: {e}") from e

    def clear_index_failure(self, external_id: int) -> None:
        try:
            self.conn.execute(
                "DELETE FROM index_failures WHERE external_id = ?", (external_id,)
            )
            self.conn.commit()
        except sqlite3.Error as e:
            raise StorageError(f"clear failure for document {external_id}: {e}") from e

    def get_index_failure(self, external_id: int) -> IndexFailure | None:
        try:
            row = self.conn.execute(
                "SELECT external_id, error, failed_at FROM index_failures WHERE external_id = ?",
                (external_id,),
            ).fetchone()
        except sqlite3.Error as e:
            raise StorageError(f"get failure for document {external_id}: {e}") from e

        if row is None:
            return None
        return IndexFailure(
            external_id=row["external_id"],
            error=row["error"],
            failed_at=_optional_timestamp(row["failed_at"]),
        )

    def list_index_failures(self) -> list[IndexFailure]:
        try:
            rows = self.conn.execute(
                "SELECT external_id, error, failed_at FROM index_failures ORDER BY external_id"
            ).fetchall()
        except sqlite3.Error as e:
            raise StorageError(f"list failures: {e}") from e
        return [
            IndexFailure(
                external_id=row["external_id"],
                error=row["error"],
                failed_at=_optional_timestamp(row["failed_at"]),
            )
            for row in rows
        ]

    def clear_index_data(self) -> None:
        """Wipe embeddings, documents and failures and reset the cursor, atomically."""
        try:
            with self.conn:
                self.conn.execute("DELETE FROM embeddings")
                self.conn.execute("DELETE FROM documents")
                self.conn.execute("DELETE FROM index_failures")
                self.conn.execute(
                    """
                    UPDATE index_state
                    SET last_external_id = 0, updated_at = CURRENT_TIMESTAMP
                    WHERE id = 1
                    """
                )
        except sqlite3.Error as e:
            raise StorageError(f"clear index data: {e}") from e
        logger.info("Cleared index data")

    # ==================== Search ====================

    def search_similar(
        self, query_vector: list[float], limit: int, threshold: float
    ) -> list[SearchResult]:
        """Rank every stored embedding by cosine similarity to query_vector.

        This is a linear scan over all rows. Rows scoring below threshold are
        dropped; the rest are sorted by descending score and cut to limit.
        """
        try:
            rows = self.conn.execute(
                """
                SELECT e.document_id, e.vector, d.url, d.title, d.tags, d.last_modified
                FROM embeddings e
                JOIN documents d ON d.id = e.document_id
                """
            ).fetchall()
        except sqlite3.Error as e:
            raise StorageError(f"query embeddings: {e}") from e

        results: list[SearchResult] = []
        for row in rows:
            score = cosine_similarity(query_vector, deserialize_f32(row["vector"]))
            if score < threshold:
                continue

            try:
                last_modified = _optional_timestamp(row["last_modified"])
            except StorageError as e:
                logger.warning(f"Document {row['document_id']}: {e}")
                last_modified = None

            results.append(
                SearchResult(
                    document_id=row["document_id"],
                    url=row["url"],
                    title=row["title"] or "",
                    tags=row["tags"] or "",
                    similarity_score=score,
                    last_modified=last_modified,
                )
            )

        results.sort(key=lambda r: r.similarity_score, reverse=True)
        if limit > 0:
            results = results[:limit]
        return results


_store: VectorStore | None = None


def init_store(settings: Settings | None = None) -> VectorStore:
    global _store
    s = settings or Settings.from_env()
    _store = VectorStore.open(s.db_path)
    return _store


def get_store() -> VectorStore:
    assert _store is not None, "Store not initialized"
    return _store
