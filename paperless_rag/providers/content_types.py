"""Source-side content types returned by the Paperless client."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Generic, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class SourceDocument:
    """A document as the source system reports it."""

    external_id: int
    title: str
    content: str = ""
    tag_ids: tuple[int, ...] = ()
    last_modified: datetime | None = None

    @property
    def url(self) -> str:
        return f"/api/documents/{self.external_id}/"


@dataclass(frozen=True)
class Tag:
    id: int
    name: str


@dataclass(frozen=True)
class Page(Generic[T]):
    """One page of a paginated list endpoint."""

    count: int
    has_next: bool
    items: list[T] = field(default_factory=list)
