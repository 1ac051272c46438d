"""Tests for the SQLite vector store."""

import sqlite3
from datetime import datetime, timezone

import pytest

from paperless_rag.core.errors import StorageError
from paperless_rag.core.storage import Document, VectorStore, parse_timestamp


@pytest.fixture
def store():
    """Create an in-memory store for testing."""
    s = VectorStore.open(":memory:")
    yield s
    s.close()


def _doc(external_id: int, title: str = "Doc", tags: str = "", last_modified=None) -> Document:
    return Document(
        external_id=external_id,
        url=f"/api/documents/{external_id}/",
        title=title,
        tags=tags,
        last_modified=last_modified,
    )


MODIFIED = datetime(2024, 3, 1, 12, 30, 0, tzinfo=timezone.utc)


# ==================== Documents ====================


def test_upsert_inserts_document_and_embedding(store):
    doc_id = store.upsert_document_with_embedding(
        _doc(1, "Invoice", "finance", MODIFIED), "Invoice. Tags: finance", [1.0, 0.0]
    )

    doc = store.get_document_by_external_id(1)
    assert doc is not None
    assert doc.id == doc_id
    assert doc.title == "Invoice"
    assert doc.tags == "finance"
    assert doc.url == "/api/documents/1/"
    assert doc.last_modified == MODIFIED
    assert doc.embedded_at is not None

    emb = store.get_embedding(doc_id)
    assert emb.content == "Invoice. Tags: finance"
    assert emb.vector == [1.0, 0.0]


def test_upsert_replaces_embedding(store):
    """Re-upserting keeps one document row and exactly one embedding."""
    first_id = store.upsert_document_with_embedding(_doc(1, "Old"), "old", [1.0, 0.0])
    second_id = store.upsert_document_with_embedding(_doc(1, "New"), "new", [0.0, 1.0])

    assert first_id == second_id
    assert store.count_documents() == 1
    assert store.count_embeddings() == 1
    assert store.get_document_by_external_id(1).title == "New"
    assert store.get_embedding(first_id).vector == [0.0, 1.0]


def test_upsert_is_atomic(store):
    """A failing embedding insert leaves the previous document and embedding intact."""
    doc_id = store.upsert_document_with_embedding(_doc(1, "Original"), "original", [1.0, 0.0])
    store.conn.execute(
        """
        CREATE TRIGGER fail_embedding_insert BEFORE INSERT ON embeddings
        BEGIN
          SELECT RAISE(ABORT, 'boom');
        END
        """
    )

    with pytest.raises(StorageError, match="upsert document 1"):
        store.upsert_document_with_embedding(_doc(1, "Changed"), "changed", [0.0, 1.0])

    assert store.get_document_by_external_id(1).title == "Original"
    assert store.count_embeddings() == 1
    assert store.get_embedding(doc_id).content == "original"


def test_upsert_failure_on_new_document_leaves_nothing(store):
    store.conn.execute(
        """
        CREATE TRIGGER fail_embedding_insert BEFORE INSERT ON embeddings
        BEGIN
          SELECT RAISE(ABORT, 'boom');
        END
        """
    )

    with pytest.raises(StorageError):
        store.upsert_document_with_embedding(_doc(7), "text", [1.0])

    assert store.get_document_by_external_id(7) is None
    assert store.count_documents() == 0


def test_get_document_absent_returns_none(store):
    assert store.get_document_by_external_id(404) is None


def test_delete_document_cascades_to_embedding(store):
    store.upsert_document_with_embedding(_doc(1), "text", [1.0])

    assert store.delete_document(1) is True
    assert store.get_document_by_external_id(1) is None
    assert store.count_embeddings() == 0


def test_delete_document_absent(store):
    assert store.delete_document(99) is False


def test_list_documents_ordered_by_external_id(store):
    for external_id in (30, 10, 20):
        store.upsert_document_with_embedding(_doc(external_id), "text", [1.0])

    assert [d.external_id for d in store.list_documents()] == [10, 20, 30]


def test_get_embedding_absent_returns_none(store):
    assert store.get_embedding(12345) is None


# ==================== Index State ====================


def test_index_state_starts_at_zero(store):
    assert store.get_index_state().last_external_id == 0


def test_update_and_reset_index_state(store):
    store.update_index_state(42)
    state = store.get_index_state()
    assert state.last_external_id == 42
    assert state.updated_at is not None
    assert state.updated_at.tzinfo is not None

    store.reset_index_state()
    assert store.get_index_state().last_external_id == 0


def test_init_is_idempotent(store):
    store.update_index_state(5)
    store.init()
    assert store.get_index_state().last_external_id == 5


# ==================== Failures ====================


def test_record_and_clear_failure(store):
    store.record_index_failure(3, "first")
    store.record_index_failure(3, RuntimeError("second"))

    failure = store.get_index_failure(3)
    assert failure.error == "second"
    assert failure.failed_at is not None
    assert len(store.list_index_failures()) == 1

    store.clear_index_failure(3)
    assert store.get_index_failure(3) is None
    assert store.list_index_failures() == []


def test_clear_failure_absent_is_noop(store):
    store.clear_index_failure(3)
    assert store.list_index_failures() == []


def test_list_failures_ordered(store):
    store.record_index_failure(9, "x")
    store.record_index_failure(2, "y")
    assert [f.external_id for f in store.list_index_failures()] == [2, 9]


# ==================== Wipe ====================


def test_clear_index_data(store):
    store.upsert_document_with_embedding(_doc(1), "a", [1.0])
    store.upsert_document_with_embedding(_doc(2), "b", [1.0])
    store.record_index_failure(3, "broken")
    store.update_index_state(3)

    store.clear_index_data()

    assert store.count_documents() == 0
    assert store.count_embeddings() == 0
    assert store.list_index_failures() == []
    assert store.get_index_state().last_external_id == 0


# ==================== Search ====================


def test_search_similar_ranks_by_score(store):
    store.upsert_document_with_embedding(_doc(1, "Exact"), "a", [1.0, 0.0])
    store.upsert_document_with_embedding(_doc(2, "Close"), "b", [0.9, 0.1])
    store.upsert_document_with_embedding(_doc(3, "Orthogonal"), "c", [0.0, 1.0])

    results = store.search_similar([1.0, 0.0], limit=10, threshold=0.5)

    assert [r.title for r in results] == ["Exact", "Close"]
    assert results[0].similarity_score == pytest.approx(1.0)
    assert results[0].similarity_score >= results[1].similarity_score


def test_search_similar_known_scores(store):
    """Vectors scoring 1.0, 0.5 and 0.1 against the query rank in that order."""
    store.upsert_document_with_embedding(_doc(1, "Low"), "low", [0.1, 0.99498744])
    store.upsert_document_with_embedding(_doc(2, "Top"), "top", [1.0, 0.0])
    store.upsert_document_with_embedding(_doc(3, "Mid"), "mid", [0.5, 0.8660254])
    query = [1.0, 0.0]

    results = store.search_similar(query, limit=10, threshold=0.05)
    assert [r.title for r in results] == ["Top", "Mid", "Low"]
    scores = [r.similarity_score for r in results]
    assert scores == pytest.approx([1.0, 0.5, 0.1], abs=1e-5)
    assert scores[0] > scores[1] > scores[2]

    assert [r.title for r in store.search_similar(query, limit=10, threshold=0.9)] == ["Top"]
    assert [r.title for r in store.search_similar(query, limit=1, threshold=0.05)] == ["Top"]


def test_naive_last_modified_stored_as_utc(store):
    store.upsert_document_with_embedding(_doc(1, last_modified=datetime(2024, 3, 1, 12, 30)), "t", [1.0])

    assert store.get_document_by_external_id(1).last_modified == MODIFIED
    row = store.conn.execute("SELECT last_modified FROM documents").fetchone()
    assert row[0] == "2024-03-01T12:30:00+00:00"


def test_search_similar_respects_limit(store):
    for i in range(1, 6):
        store.upsert_document_with_embedding(_doc(i), "t", [1.0, i / 10])

    assert len(store.search_similar([1.0, 0.0], limit=2, threshold=0.1)) == 2


def test_search_similar_threshold_is_inclusive(store):
    store.upsert_document_with_embedding(_doc(1), "t", [1.0, 0.0])
    results = store.search_similar([1.0, 0.0], limit=10, threshold=1.0)
    assert len(results) == 1


def test_search_similar_skips_dimension_mismatch(store):
    store.upsert_document_with_embedding(_doc(1), "t", [1.0, 0.0, 0.0])
    assert store.search_similar([1.0, 0.0], limit=10, threshold=0.1) == []


def test_search_similar_empty_store(store):
    assert store.search_similar([1.0, 0.0], limit=10, threshold=0.5) == []


def test_search_result_carries_metadata(store):
    doc_id = store.upsert_document_with_embedding(
        _doc(8, "Tax", "finance, tax", MODIFIED), "t", [1.0]
    )
    result = store.search_similar([1.0], limit=1, threshold=0.5)[0]

    assert result.document_id == doc_id
    assert result.url == "/api/documents/8/"
    assert result.tags == "finance, tax"
    assert result.last_modified == MODIFIED
    assert result.to_dict()["last_modified"] == "2024-03-01T12:30:00+00:00"


def test_search_tolerates_unparseable_last_modified(store):
    store.upsert_document_with_embedding(_doc(1), "t", [1.0])
    store.conn.execute("UPDATE documents SET last_modified = 'garbage'")
    store.conn.commit()

    results = store.search_similar([1.0], limit=1, threshold=0.5)
    assert len(results) == 1
    assert results[0].last_modified is None


# ==================== Timestamps ====================


@pytest.mark.parametrize(
    "value",
    [
        "2024-03-01 12:30:00",
        "2024-03-01T12:30:00",
        "2024-03-01 12:30:00+00:00",
        "2024-03-01T12:30:00+00:00",
        "2024-03-01T12:30:00.000000+00:00",
        "2024-03-01T14:30:00+02:00",
    ],
)
def test_parse_timestamp_formats(value):
    assert parse_timestamp(value) == MODIFIED


def test_parse_timestamp_naive_is_utc():
    assert parse_timestamp("2024-03-01 12:30:00").tzinfo == timezone.utc


def test_parse_timestamp_invalid():
    with pytest.raises(StorageError, match="unable to parse timestamp"):
        parse_timestamp("yesterday")


def test_open_creates_parent_directory(tmp_path):
    path = tmp_path / "nested" / "rag.db"
    with VectorStore.open(str(path)) as s:
        s.upsert_document_with_embedding(_doc(1), "t", [1.0])
    assert path.exists()

    with VectorStore.open(str(path)) as s:
        assert s.count_documents() == 1


def test_foreign_keys_enabled(store):
    with pytest.raises(sqlite3.IntegrityError):
        store.conn.execute(
            "INSERT INTO embeddings (document_id, content, vector) VALUES (999, 'x', x'00000000')"
        )


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
