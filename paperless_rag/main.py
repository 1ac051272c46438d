from __future__ import annotations

import logging
import threading

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from paperless_rag.core.embedding_providers import get_provider
from paperless_rag.core.errors import RagError, ValidationError
from paperless_rag.core.index_job import BuildOptions, build_index
from paperless_rag.core.search import DEFAULT_LIMIT, DEFAULT_THRESHOLD, search_index
from paperless_rag.core.settings import Settings
from paperless_rag.core.storage import get_store, init_store
from paperless_rag.providers.paperless import PaperlessClient

logger = logging.getLogger(__name__)

app = FastAPI(title="paperless-rag")

# One build at a time per process.
_build_lock = threading.Lock()


@app.on_event("startup")
def _startup() -> None:
    init_store()


# ==================== Index API Endpoints ====================


@app.get("/api/index/stats")
def api_index_stats():
    """Get document, embedding and failure counts plus the cursor."""
    store = get_store()
    state = store.get_index_state()
    return {
        "documents": store.count_documents(),
        "embeddings": store.count_embeddings(),
        "failures": len(store.list_index_failures()),
        "last_external_id": state.last_external_id,
        "updated_at": state.updated_at.isoformat() if state.updated_at else None,
    }


@app.post("/api/index/build")
async def api_index_build(max_docs: int | None = None, tag: str | None = None, rebuild: bool = False):
    """Run an index build against the configured Paperless instance.

    Args:
        max_docs: Document cap for this run (default from PGO_RAG_MAX_DOCS)
        tag: Only index documents carrying this tag
        rebuild: Wipe the index first

    Returns:
        Build summary counters
    """
    # Check if a build is already running
    if not _build_lock.acquire(blocking=False):
        return {"error": "An index build is already running"}

    try:
        s = Settings.from_env()
        store = get_store()
        embedder = get_provider(s)
        with PaperlessClient(s.paperless_url, s.paperless_token) as client:
            if rebuild:
                store.clear_index_data()
            summary = await build_index(
                client,
                store,
                embedder,
                BuildOptions(
                    page_size=s.page_size,
                    max_docs=s.max_docs if max_docs is None else max_docs,
                    tag_name=tag or s.tag_name,
                ),
            )
    except RagError as e:
        logger.error(f"Index build failed: {e}")
        return {"error": str(e)}
    finally:
        _build_lock.release()

    return summary.to_dict()


@app.get("/api/index/failures")
def api_index_failures():
    """Get documents whose last indexing attempt failed."""
    failures = get_store().list_index_failures()
    return {
        "failures": [
            {
                "external_id": f.external_id,
                "error": f.error,
                "failed_at": f.failed_at.isoformat() if f.failed_at else None,
            }
            for f in failures
        ],
        "count": len(failures),
    }


# ==================== Search API Endpoints ====================


@app.get("/api/search")
async def api_search(q: str = "", limit: int = DEFAULT_LIMIT, threshold: float = DEFAULT_THRESHOLD):
    """Search indexed documents by semantic similarity.

    Args:
        q: Search query text
        limit: Maximum results (default 10)
        threshold: Minimum cosine similarity, 0-1 (default 0.7)
    """
    try:
        embedder = get_provider(Settings.from_env())
        summary = await search_index(get_store(), embedder, q, limit, threshold)
    except ValidationError as e:
        return JSONResponse(status_code=400, content={"results": [], "error": str(e)})
    except RagError as e:
        return {"results": [], "error": str(e)}

    return {**summary.to_dict(), "query": q}


@app.get("/api/providers/health")
async def api_providers_health():
    """Check the configured embedding provider with a test request."""
    try:
        provider = get_provider(Settings.from_env())
    except RagError as e:
        return {"healthy": False, "message": str(e)}

    health = await provider.health_check()
    return health.to_dict()
