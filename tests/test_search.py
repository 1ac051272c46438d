"""Tests for similarity search."""

import pytest

from paperless_rag.core.errors import ConfigurationError, TransportError, ValidationError
from paperless_rag.core.search import DEFAULT_LIMIT, search_index
from paperless_rag.core.storage import Document, VectorStore


class FakeEmbedder:
    def __init__(self, vector=None, error=None):
        self.vector = vector or [1.0, 0.0]
        self.error = error
        self.queries = []

    async def embed_single(self, text):
        self.queries.append(text)
        if self.error:
            raise self.error
        return self.vector


@pytest.fixture
def store():
    s = VectorStore.open(":memory:")
    vectors = {
        1: ("Electricity bill", [1.0, 0.0]),
        2: ("Gas bill", [0.95, 0.05]),
        3: ("Holiday photos", [0.0, 1.0]),
    }
    for external_id, (title, vector) in vectors.items():
        s.upsert_document_with_embedding(
            Document(external_id=external_id, url=f"/api/documents/{external_id}/", title=title, tags=""),
            title,
            vector,
        )
    yield s
    s.close()


@pytest.mark.asyncio
async def test_search_returns_ranked_results(store):
    embedder = FakeEmbedder()

    summary = await search_index(store, embedder, "power bill", limit=5, threshold=0.5)

    assert [r.title for r in summary.results] == ["Electricity bill", "Gas bill"]
    assert summary.total_results == 2
    assert summary.query_time_ms >= 0
    assert embedder.queries == ["power bill"]


@pytest.mark.asyncio
async def test_search_limit(store):
    summary = await search_index(store, FakeEmbedder(), "bill", limit=1, threshold=0.5)
    assert [r.title for r in summary.results] == ["Electricity bill"]


@pytest.mark.asyncio
async def test_search_nonpositive_limit_uses_default(store):
    summary = await search_index(store, FakeEmbedder(), "bill", limit=0, threshold=0.01)
    assert summary.total_results <= DEFAULT_LIMIT
    assert summary.total_results == 2


@pytest.mark.asyncio
async def test_search_zero_threshold_uses_default(store):
    """Threshold 0 falls back to 0.7, which drops the orthogonal document."""
    summary = await search_index(store, FakeEmbedder([0.0, 1.0]), "photos", limit=10, threshold=0)
    assert [r.title for r in summary.results] == ["Holiday photos"]


@pytest.mark.asyncio
@pytest.mark.parametrize("threshold", [-0.1, 1.5])
async def test_search_threshold_out_of_range(store, threshold):
    embedder = FakeEmbedder()
    with pytest.raises(ValidationError, match="threshold"):
        await search_index(store, embedder, "bill", threshold=threshold)
    assert embedder.queries == []


@pytest.mark.asyncio
@pytest.mark.parametrize("query", ["", "   "])
async def test_search_empty_query(store, query):
    embedder = FakeEmbedder()
    with pytest.raises(ValidationError, match="query"):
        await search_index(store, embedder, query)
    assert embedder.queries == []


@pytest.mark.asyncio
async def test_search_missing_collaborators(store):
    with pytest.raises(ConfigurationError):
        await search_index(None, FakeEmbedder(), "bill")
    with pytest.raises(ConfigurationError):
        await search_index(store, None, "bill")


@pytest.mark.asyncio
async def test_search_embedding_failure_propagates(store):
    with pytest.raises(TransportError):
        await search_index(store, FakeEmbedder(error=TransportError("down")), "bill")


@pytest.mark.asyncio
async def test_search_summary_to_dict(store):
    summary = await search_index(store, FakeEmbedder(), "bill", limit=1, threshold=0.9)
    data = summary.to_dict()
    assert data["total_results"] == 1
    assert data["results"][0]["url"] == "/api/documents/1/"
    assert data["results"][0]["similarity_score"] == pytest.approx(1.0)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
