"""
Command line for building and searching the local index.

Example:
    paperless-rag build --db ./rag.db --max-docs 50
    paperless-rag search --db ./rag.db --query "electricity bill" --limit 5
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
import threading
from typing import Any

from paperless_rag.core.embedding_providers import get_provider
from paperless_rag.core.errors import ConfigurationError, IndexCancelledError, RagError
from paperless_rag.core.index_job import BuildOptions, build_index
from paperless_rag.core.search import DEFAULT_LIMIT, DEFAULT_THRESHOLD, search_index
from paperless_rag.core.settings import Settings
from paperless_rag.core.storage import VectorStore
from paperless_rag.providers.paperless import PaperlessClient

LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def setup_logging(level: str) -> None:
    name = (level or "info").strip().lower()
    if name not in LOG_LEVELS:
        raise ConfigurationError(f"unknown log level: {level}")
    logging.basicConfig(
        level=LOG_LEVELS[name],
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def _add_embedding_args(parser: argparse.ArgumentParser, s: Settings) -> None:
    parser.add_argument("--embeddings-provider", default=s.embedding_provider, help="openai or ollama")
    parser.add_argument("--embeddings-url", default=s.embeddings_url, help="Embeddings API base URL")
    parser.add_argument("--embeddings-key", default=s.embeddings_key, help="Embeddings API key")
    parser.add_argument("--embeddings-model", default=s.embeddings_model, help="Embeddings model")


def build_parser(s: Settings) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="paperless-rag",
        description="Local RAG indexing and search for Paperless.",
    )
    parser.add_argument("--db", default=s.db_path, help="SQLite database path")
    parser.add_argument("--log-level", default=s.log_level, help="debug, info, warn, error")
    sub = parser.add_subparsers(dest="command", required=True)

    build = sub.add_parser("build", help="Fetch documents and update the index")
    build.add_argument("--url", default=s.paperless_url, help="Paperless instance URL")
    build.add_argument("--token", default=s.paperless_token, help="Paperless API token")
    build.add_argument("--page-size", type=int, default=s.page_size, help="Paperless page size")
    build.add_argument("--max-docs", type=int, default=s.max_docs, help="Maximum documents to index (0 = no limit)")
    build.add_argument("--tag", default=s.tag_name, help="Only index documents carrying this tag (exact match)")
    build.add_argument("--rebuild", action="store_true", help="Wipe the index before building")
    _add_embedding_args(build, s)

    search = sub.add_parser("search", help="Search the index")
    search.add_argument("--query", required=True, help="Search query")
    search.add_argument("--limit", type=int, default=DEFAULT_LIMIT, help="Max results")
    search.add_argument(
        "--threshold",
        type=float,
        default=DEFAULT_THRESHOLD,
        help="Similarity threshold (0-1, higher = stricter)",
    )
    _add_embedding_args(search, s)

    return parser


def _embedding_settings(args: argparse.Namespace, s: Settings) -> Settings:
    return Settings(
        db_path=args.db,
        paperless_url=getattr(args, "url", s.paperless_url),
        paperless_token=getattr(args, "token", s.paperless_token),
        embedding_provider=args.embeddings_provider,
        embeddings_url=args.embeddings_url,
        embeddings_key=args.embeddings_key,
        embeddings_model=args.embeddings_model,
        page_size=getattr(args, "page_size", s.page_size),
        max_docs=getattr(args, "max_docs", s.max_docs),
        tag_name=getattr(args, "tag", s.tag_name),
        log_level=args.log_level,
    )


def write_json(value: dict[str, Any]) -> None:
    json.dump(value, sys.stdout, indent=2)
    sys.stdout.write("\n")


def run_build(args: argparse.Namespace, s: Settings) -> None:
    settings = _embedding_settings(args, s)
    embedder = get_provider(settings)

    with VectorStore.open(settings.db_path) as store, PaperlessClient(
        settings.paperless_url, settings.paperless_token
    ) as client:
        if args.rebuild:
            store.clear_index_data()

        cancel = threading.Event()
        previous = signal.signal(signal.SIGTERM, lambda *_: cancel.set())
        try:
            summary = asyncio.run(
                build_index(
                    client,
                    store,
                    embedder,
                    BuildOptions(
                        page_size=settings.page_size,
                        max_docs=settings.max_docs,
                        tag_name=settings.tag_name,
                    ),
                    cancel=cancel,
                )
            )
        finally:
            signal.signal(signal.SIGTERM, previous)

    write_json(summary.to_dict())


def run_search(args: argparse.Namespace, s: Settings) -> None:
    if not args.query.strip():
        raise ConfigurationError("--query is required")
    if args.limit <= 0:
        raise ConfigurationError("--limit must be > 0")
    if args.threshold < 0 or args.threshold > 1:
        raise ConfigurationError("--threshold must be between 0 and 1")

    settings = _embedding_settings(args, s)
    embedder = get_provider(settings)

    with VectorStore.open(settings.db_path) as store:
        summary = asyncio.run(search_index(store, embedder, args.query, args.limit, args.threshold))

    write_json(summary.to_dict())


def main(argv: list[str] | None = None) -> int:
    s = Settings.from_env()
    parser = build_parser(s)
    args = parser.parse_args(argv)

    try:
        setup_logging(args.log_level)
        if not args.db:
            raise ConfigurationError("--db is required")
        if args.command == "build":
            run_build(args, s)
        else:
            run_search(args, s)
    except IndexCancelledError as e:
        write_json(e.summary.to_dict())
        print(f"{args.command} error: {e}", file=sys.stderr)
        return 1
    except RagError as e:
        print(f"{args.command} error: {e}", file=sys.stderr)
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
