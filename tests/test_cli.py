"""Tests for the command line."""

import json
from unittest.mock import patch

import pytest

from paperless_rag.cli import main, setup_logging
from paperless_rag.core.errors import ConfigurationError
from paperless_rag.core.storage import Document, VectorStore
from paperless_rag.providers.content_types import Page, SourceDocument


class FakeEmbedder:
    async def embed_single(self, text):
        return [1.0, 0.0]


class FakePaperless:
    def __init__(self, url, token):
        self.url = url
        self.token = token

    def __enter__(self):
        return self

    def __exit__(self, *args):
        pass

    def list_documents(self, page=1, page_size=100, ordering="id"):
        docs = [SourceDocument(external_id=i, title=f"Doc {i}", content="text") for i in (1, 2, 3)]
        return Page(count=3, has_next=False, items=docs[:page_size])

    def list_tags(self, page=1, page_size=100):
        return Page(count=0, has_next=False, items=[])


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "rag.db")


def _run(argv, capsys):
    code = main(argv)
    captured = capsys.readouterr()
    return code, captured.out, captured.err


def test_build(db_path, capsys):
    with patch("paperless_rag.cli.get_provider", return_value=FakeEmbedder()), patch(
        "paperless_rag.cli.PaperlessClient", FakePaperless
    ):
        code, out, _ = _run(
            ["--db", db_path, "build", "--url", "http://paperless.local", "--token", "t", "--max-docs", "2"],
            capsys,
        )

    assert code == 0
    summary = json.loads(out)
    assert summary["documents_fetched"] == 2
    assert summary["documents_indexed"] == 2

    with VectorStore.open(db_path) as store:
        assert store.count_documents() == 2


def test_build_rebuild(db_path, capsys):
    with VectorStore.open(db_path) as store:
        store.upsert_document_with_embedding(
            Document(external_id=50, url="/api/documents/50/", title="Old", tags=""), "Old", [1.0, 0.0]
        )

    with patch("paperless_rag.cli.get_provider", return_value=FakeEmbedder()), patch(
        "paperless_rag.cli.PaperlessClient", FakePaperless
    ):
        code, _, _ = _run(["--db", db_path, "build", "--url", "u", "--token", "t", "--rebuild"], capsys)

    assert code == 0
    with VectorStore.open(db_path) as store:
        assert store.get_document_by_external_id(50) is None
        assert store.count_documents() == 3


def test_build_missing_paperless_url(db_path, capsys, monkeypatch):
    monkeypatch.delenv("PAPERLESS_URL", raising=False)
    with patch("paperless_rag.cli.get_provider", return_value=FakeEmbedder()):
        code, _, err = _run(["--db", db_path, "build", "--url", "", "--token", "t"], capsys)

    assert code == 1
    assert "build error: Paperless URL is required" in err


def test_search(db_path, capsys):
    with VectorStore.open(db_path) as store:
        store.upsert_document_with_embedding(
            Document(external_id=1, url="/api/documents/1/", title="Invoice", tags=""), "Invoice", [1.0, 0.0]
        )

    with patch("paperless_rag.cli.get_provider", return_value=FakeEmbedder()):
        code, out, _ = _run(["--db", db_path, "search", "--query", "invoice", "--limit", "3"], capsys)

    assert code == 0
    data = json.loads(out)
    assert data["total_results"] == 1
    assert data["results"][0]["title"] == "Invoice"


@pytest.mark.parametrize(
    "extra,message",
    [
        (["--query", "  "], "--query is required"),
        (["--query", "x", "--limit", "0"], "--limit must be > 0"),
        (["--query", "x", "--threshold", "1.5"], "--threshold must be between 0 and 1"),
    ],
)
def test_search_rejects_bad_flags(db_path, capsys, extra, message):
    code, _, err = _run(["--db", db_path, "search", *extra], capsys)
    assert code == 1
    assert message in err


def test_setup_logging_unknown_level():
    with pytest.raises(ConfigurationError, match="unknown log level"):
        setup_logging("verbose")


def test_unknown_log_level_exits_nonzero(db_path, capsys):
    code, _, err = _run(["--db", db_path, "--log-level", "loud", "search", "--query", "x"], capsys)
    assert code == 1
    assert "unknown log level" in err


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
