"""
Courier Data Models
===================

Pydantic models for sources, entries and search documents. These mirror the
database schema and are the values passed between the fetcher, the
orchestrator, the repository and the indexer.
"""

from datetime import datetime, timezone
from typing import Optional, Dict, Any
import uuid

from pydantic import BaseModel, Field, field_validator


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Source(BaseModel):
    """A subscribed feed and its conditional-fetch state."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()), description="Immutable source ID")
    url: str = Field(..., min_length=1, description="Feed URL")
    title: str = Field(default="", description="Display title; replaced only by a non-empty fetched title")
    etag: Optional[str] = Field(default=None, description="Last ETag validator, opaque")
    last_modified: Optional[str] = Field(default=None, description="Last Last-Modified validator, opaque")
    last_crawled_at: Optional[datetime] = Field(default=None, description="Last successful mutating fetch")
    active: bool = Field(default=True, description="Whether the source is crawled")
    created_at: datetime = Field(default_factory=utc_now)

    @field_validator('last_crawled_at', 'created_at')
    @classmethod
    def ensure_utc(cls, v):
        return _as_utc(v)

    def display_name(self) -> str:
        return self.title or self.url

    def __str__(self) -> str:
        return f"Source({self.display_name()}:{self.id})"


class UpsertEntryParams(BaseModel):
    """Normalized values derived from one feed item."""
    source_id: str
    guid: Optional[str] = None
    url: str = ""
    title: str = ""
    author: Optional[str] = None
    content_html: Optional[str] = None
    content_text: Optional[str] = None
    published_at: Optional[datetime] = None
    retrieved_at: datetime = Field(default_factory=utc_now)
    content_hash: bytes

    @field_validator('published_at', 'retrieved_at')
    @classmethod
    def ensure_utc(cls, v):
        return _as_utc(v)

    @property
    def identity_key(self) -> str:
        """Upsert identity within a source: the GUID, else the canonical URL."""
        return self.guid or self.url


class Entry(BaseModel):
    """A stored feed entry."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    source_id: str
    source_title: str = ""
    guid: Optional[str] = None
    url: str = ""
    title: str = ""
    author: Optional[str] = None
    content_html: Optional[str] = None
    content_text: Optional[str] = None
    published_at: Optional[datetime] = None
    retrieved_at: datetime = Field(default_factory=utc_now)
    content_hash: bytes = b""

    @field_validator('published_at', 'retrieved_at')
    @classmethod
    def ensure_utc(cls, v):
        return _as_utc(v)

    def __str__(self) -> str:
        return f"Entry({self.title[:50]}:{self.id})"


class UpsertEntryResult(BaseModel):
    """Outcome of an entry upsert.

    ``changed`` is true for a new row or when the stored fingerprint differed
    from the new one; only changed entries are sent to the search index.
    """
    entry: Entry
    inserted: bool
    changed: bool


class Document(BaseModel):
    """Search index payload for one entry."""
    id: str
    source_id: str
    source_title: str = ""
    title: str = ""
    content_text: str = ""
    url: str = ""
    published_at: Optional[datetime] = None

    @field_validator('published_at')
    @classmethod
    def ensure_utc(cls, v):
        return _as_utc(v)

    @classmethod
    def from_entry(cls, entry: Entry) -> "Document":
        return cls(
            id=entry.id,
            source_id=entry.source_id,
            source_title=entry.source_title,
            title=entry.title,
            content_text=entry.content_text or "",
            url=entry.url,
            published_at=entry.published_at,
        )

    def to_index_payload(self) -> Dict[str, Any]:
        """JSON body for the search engine; published_at is omitted when unknown."""
        payload = self.model_dump(exclude={"published_at"})
        if self.published_at is not None:
            payload["published_at"] = self.published_at.isoformat().replace("+00:00", "Z")
        return payload
