from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    db_path: str
    paperless_url: str
    paperless_token: str
    embedding_provider: str
    embeddings_url: str
    embeddings_key: str
    embeddings_model: str
    page_size: int
    max_docs: int
    tag_name: str | None
    log_level: str

    @staticmethod
    def from_env() -> "Settings":
        def _s(name: str, default: str = "") -> str:
            return os.getenv(name, default).strip()

        def _i(name: str, default: int) -> int:
            try:
                return int(os.getenv(name, str(default)).strip())
            except ValueError:
                return default

        return Settings(
            db_path=_s("PGO_RAG_DB", "./_local/data/rag.db"),
            paperless_url=_s("PAPERLESS_URL"),
            paperless_token=_s("PAPERLESS_TOKEN"),
            embedding_provider=_s("PGO_RAG_EMBEDDINGS_PROVIDER", "openai"),
            embeddings_url=_s("PGO_RAG_EMBEDDINGS_URL", "https://openrouter.ai/api/v1"),
            embeddings_key=_s("PGO_RAG_EMBEDDINGS_KEY"),
            embeddings_model=_s("PGO_RAG_EMBEDDINGS_MODEL"),
            page_size=_i("PGO_RAG_PAGE_SIZE", 100),
            max_docs=_i("PGO_RAG_MAX_DOCS", 0),
            tag_name=_s("PGO_RAG_TAG") or None,
            log_level=_s("LOG_LEVEL", "info"),
        )
