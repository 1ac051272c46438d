"""Paperless-ngx REST API client."""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Any

import httpx

from paperless_rag.core.errors import ConfigurationError, TransportError
from paperless_rag.providers.content_types import Page, SourceDocument, Tag

logger = logging.getLogger(__name__)


class PaperlessError(TransportError):
    """Paperless API request failed."""

    def __init__(self, message: str, status_code: int | None = None, op: str = ""):
        self.status_code = status_code
        self.message = message
        self.op = op
        super().__init__(str(self))

    def __str__(self) -> str:
        status = f"{self.status_code} " if self.status_code is not None else ""
        if self.op:
            return f"{self.op}: {status}{self.message}"
        return f"{status}{self.message}"

    @property
    def is_not_found(self) -> bool:
        return self.status_code == 404


class PaperlessAuthError(PaperlessError):
    """Authentication failed."""


class PaperlessClient:
    """Client for the Paperless-ngx documents and tags endpoints.

    A client passed as http_client is taken over: its base_url and the
    Authorization and Accept headers are overwritten, and close() closes it.
    """

    def __init__(
        self,
        base_url: str,
        token: str,
        *,
        http_client: httpx.Client | None = None,
        timeout: float = 30.0,
        max_retries: int = 5,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
    ) -> None:
        if not base_url:
            raise ConfigurationError("Paperless URL is required")
        if not token:
            raise ConfigurationError("Paperless API token is required")
        self._max_retries = max_retries
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._client = http_client or httpx.Client(timeout=timeout)
        self._client.base_url = base_url.rstrip("/")
        self._client.headers.update(
            {
                "Authorization": f"Token {token}",
                "Accept": "application/json",
            }
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "PaperlessClient":
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    def _get(self, op: str, path: str, params: dict[str, Any] | None = None) -> Any:
        """GET with exponential backoff on 429.

        Raises:
            PaperlessAuthError: On 401.
            PaperlessError: On any other non-2xx response, transport failure,
                or when still rate limited after all retries.
        """
        delay = self._base_delay

        for attempt in range(self._max_retries + 1):
            try:
                resp = self._client.get(path, params=params)
            except httpx.HTTPError as e:
                raise PaperlessError(f"request failed: {e}", op=op) from e

            if resp.status_code == 401:
                raise PaperlessAuthError("invalid Paperless API token", status_code=401, op=op)

            if resp.status_code == 429:
                if attempt == self._max_retries:
                    raise PaperlessError(
                        f"rate limit exceeded after {self._max_retries} retries",
                        status_code=429,
                        op=op,
                    )

                retry_after = resp.headers.get("Retry-After")
                if retry_after:
                    try:
                        wait_time = float(retry_after)
                    except ValueError:
                        wait_time = delay
                else:
                    wait_time = delay

                wait_time = min(wait_time, self._max_delay)
                logger.warning(
                    f"{op}: rate limited (429). Waiting {wait_time:.1f}s "
                    f"(attempt {attempt + 1}/{self._max_retries + 1})"
                )
                time.sleep(wait_time)
                delay = min(delay * 2, self._max_delay)
                continue

            if resp.status_code < 200 or resp.status_code >= 300:
                raise PaperlessError(resp.text, status_code=resp.status_code, op=op)

            try:
                return resp.json()
            except ValueError as e:
                raise PaperlessError(f"decode response: {e}", op=op) from e

        raise PaperlessError("rate limit handling failed", status_code=429, op=op)

    def list_documents(
        self, page: int = 1, page_size: int = 100, ordering: str = "id"
    ) -> Page[SourceDocument]:
        """List one page of documents, ascending by id unless told otherwise."""
        params: dict[str, Any] = {"page": page, "page_size": page_size}
        if ordering:
            params["ordering"] = ordering
        data = self._get("ListDocuments", "/api/documents/", params=params)
        return Page(
            count=data.get("count", 0),
            has_next=bool(data.get("next")),
            items=[self._parse_document(d) for d in data.get("results", [])],
        )

    def list_tags(self, page: int = 1, page_size: int = 100) -> Page[Tag]:
        data = self._get("ListTags", "/api/tags/", params={"page": page, "page_size": page_size})
        return Page(
            count=data.get("count", 0),
            has_next=bool(data.get("next")),
            items=[self._parse_tag(t) for t in data.get("results", [])],
        )

    def get_document(self, external_id: int) -> SourceDocument:
        return self._parse_document(self._get("GetDocument", f"/api/documents/{external_id}/"))

    def get_tag(self, tag_id: int) -> Tag:
        return self._parse_tag(self._get("GetTag", f"/api/tags/{tag_id}/"))

    def _parse_document(self, doc: dict) -> SourceDocument:
        """Convert a Paperless document payload to a SourceDocument."""
        modified = None
        if doc.get("modified"):
            try:
                modified = datetime.fromisoformat(doc["modified"].replace("Z", "+00:00"))
                if modified.tzinfo is None:
                    modified = modified.replace(tzinfo=timezone.utc)
            except ValueError:
                logger.warning(f"Document {doc.get('id')}: unparseable modified {doc['modified']!r}")

        return SourceDocument(
            external_id=doc["id"],
            title=doc.get("title") or "",
            content=doc.get("content") or "",
            tag_ids=tuple(doc.get("tags") or ()),
            last_modified=modified,
        )

    def _parse_tag(self, tag: dict) -> Tag:
        return Tag(id=tag["id"], name=tag.get("name", ""))
