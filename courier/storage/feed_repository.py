"""
Feed Repository
===============

Repository for sources and their entries. All failures surface as
DatabaseError so callers can treat persistence problems uniformly.
"""

import sqlite3
import uuid
from datetime import datetime
from typing import List, Optional

from ..database.connection import DatabaseConnection
from ..database.models import (
    Source,
    Entry,
    UpsertEntryParams,
    UpsertEntryResult,
    utc_now,
)
from ..utils.logging import get_logger_for_component
from ..utils.exceptions import DatabaseError, DuplicateSourceError, ErrorCode


def _to_db_time(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _from_db_time(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class FeedRepository:
    """Repository for managing sources and entries in the database."""

    _ENTRY_SELECT = """
        SELECT e.*, s.title AS source_title
        FROM entries e
        JOIN sources s ON s.id = e.source_id
    """

    def __init__(self, db_connection: DatabaseConnection):
        """Initialize feed repository.

        Args:
            db_connection: Database connection manager
        """
        self.db = db_connection
        self.logger = get_logger_for_component("feed_repository")

    # Sources

    def insert_source(self, url: str, title: str = "") -> Source:
        """Register a new source.

        Args:
            url: Feed URL
            title: Optional initial title

        Returns:
            The stored source

        Raises:
            DuplicateSourceError: If the URL is already registered
            DatabaseError: If database operation fails
        """
        source = Source(url=url, title=title)
        try:
            with self.db.get_connection() as conn:
                conn.execute(
                    """
                    INSERT INTO sources (id, url, title, active, created_at)
                    VALUES (?, ?, ?, ?, ?)
                """,
                    (
                        source.id,
                        source.url,
                        source.title,
                        source.active,
                        _to_db_time(source.created_at),
                    ),
                )
                conn.commit()

        except sqlite3.IntegrityError as e:
            raise DuplicateSourceError(url) from e
        except sqlite3.Error as e:
            self.logger.error(f"Failed to insert source {url}: {e}")
            raise DatabaseError(
                f"Failed to insert source: {e}", error_code=ErrorCode.DATABASE_ERROR
            ) from e

        self.logger.info(f"Registered source {source.id}: {url}")
        return source

    def get_source(self, source_id: str) -> Optional[Source]:
        """Get a source by ID, or None when it does not exist."""
        try:
            with self.db.get_connection() as conn:
                row = conn.execute(
                    "SELECT * FROM sources WHERE id = ?", (source_id,)
                ).fetchone()
        except sqlite3.Error as e:
            raise DatabaseError(
                f"Failed to get source {source_id}: {e}",
                error_code=ErrorCode.DATABASE_ERROR,
            ) from e

        return self._row_to_source(row) if row else None

    def list_sources(self, active_only: bool = False) -> List[Source]:
        """List sources ordered by title, then URL.

        Args:
            active_only: If True, only return active sources

        Returns:
            List of Source objects

        Raises:
            DatabaseError: If the query fails
        """
        query = "SELECT * FROM sources"
        params: tuple = ()
        if active_only:
            query += " WHERE active = ?"
            params = (True,)
        query += " ORDER BY title, url"

        try:
            with self.db.get_connection() as conn:
                rows = conn.execute(query, params).fetchall()
        except sqlite3.Error as e:
            self.logger.error(f"Failed to list sources: {e}")
            raise DatabaseError(
                f"Failed to list sources: {e}", error_code=ErrorCode.DATABASE_ERROR
            ) from e

        return [self._row_to_source(row) for row in rows]

    def list_active_sources(self) -> List[Source]:
        """List sources eligible for crawling."""
        return self.list_sources(active_only=True)

    def set_source_active(self, source_id: str, active: bool) -> bool:
        """Enable or disable crawling of a source.

        Returns:
            True if a source was updated
        """
        try:
            with self.db.get_connection() as conn:
                cursor = conn.execute(
                    "UPDATE sources SET active = ? WHERE id = ?", (active, source_id)
                )
                conn.commit()
                return cursor.rowcount > 0
        except sqlite3.Error as e:
            raise DatabaseError(
                f"Failed to update source {source_id}: {e}",
                error_code=ErrorCode.DATABASE_ERROR,
            ) from e

    def update_crawl_state(
        self,
        source_id: str,
        etag: Optional[str],
        last_modified: Optional[str],
        crawled_at: datetime,
        title: str = "",
    ) -> Source:
        """Persist validators and crawl time after a successful fetch.

        The stored title is replaced only when ``title`` is non-empty.

        Returns:
            The updated source

        Raises:
            DatabaseError: If the source does not exist or the update fails
        """
        try:
            with self.db.get_connection() as conn:
                cursor = conn.execute(
                    """
                    UPDATE sources
                    SET etag = ?,
                        last_modified = ?,
                        last_crawled_at = ?,
                        title = COALESCE(NULLIF(?, ''), title)
                    WHERE id = ?
                """,
                    (etag, last_modified, _to_db_time(crawled_at), title or "", source_id),
                )
                conn.commit()

                if cursor.rowcount == 0:
                    raise DatabaseError(
                        f"Source {source_id} not found",
                        error_code=ErrorCode.RESOURCE_NOT_FOUND,
                        recoverable=False,
                    )

                row = conn.execute(
                    "SELECT * FROM sources WHERE id = ?", (source_id,)
                ).fetchone()

        except sqlite3.Error as e:
            self.logger.error(f"Failed to update crawl state of {source_id}: {e}")
            raise DatabaseError(
                f"Failed to update crawl state: {e}",
                error_code=ErrorCode.DATABASE_ERROR,
            ) from e

        return self._row_to_source(row)

    # Entries

    def upsert_entry(self, params: UpsertEntryParams) -> UpsertEntryResult:
        """Insert or replace the entry identified by (source, guid or url).

        Args:
            params: Normalized entry values

        Returns:
            The stored entry plus whether it was inserted and whether its
            fingerprint changed

        Raises:
            DatabaseError: If the write fails
        """
        identity_key = params.identity_key
        if not identity_key:
            raise DatabaseError(
                "Entry has neither guid nor url",
                error_code=ErrorCode.DATABASE_CONSTRAINT,
                recoverable=False,
            )

        values = (
            params.guid,
            params.url,
            params.title,
            params.author,
            params.content_html,
            params.content_text,
            _to_db_time(params.published_at),
            _to_db_time(params.retrieved_at),
            params.content_hash,
        )

        try:
            with self.db.transaction() as conn:
                existing = conn.execute(
                    "SELECT id, content_hash FROM entries WHERE source_id = ? AND identity_key = ?",
                    (params.source_id, identity_key),
                ).fetchone()

                if existing is None:
                    entry_id = str(uuid.uuid4())
                    conn.execute(
                        """
                        INSERT INTO entries (
                            guid, url, title, author, content_html, content_text,
                            published_at, retrieved_at, content_hash,
                            id, source_id, identity_key
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                        values + (entry_id, params.source_id, identity_key),
                    )
                    inserted = True
                    changed = True
                else:
                    entry_id = existing["id"]
                    conn.execute(
                        """
                        UPDATE entries
                        SET guid = ?, url = ?, title = ?, author = ?,
                            content_html = ?, content_text = ?,
                            published_at = ?, retrieved_at = ?, content_hash = ?
                        WHERE id = ?
                    """,
                        values + (entry_id,),
                    )
                    inserted = False
                    changed = bytes(existing["content_hash"]) != params.content_hash

                row = conn.execute(
                    self._ENTRY_SELECT + " WHERE e.id = ?", (entry_id,)
                ).fetchone()

        except sqlite3.Error as e:
            raise DatabaseError(
                f"Failed to upsert entry {identity_key}: {e}",
                error_code=ErrorCode.DATABASE_ERROR,
                context={"source_id": params.source_id},
            ) from e

        return UpsertEntryResult(
            entry=self._row_to_entry(row), inserted=inserted, changed=changed
        )

    def get_entry(self, entry_id: str) -> Optional[Entry]:
        """Get an entry by ID, or None when it does not exist."""
        try:
            with self.db.get_connection() as conn:
                row = conn.execute(
                    self._ENTRY_SELECT + " WHERE e.id = ?", (entry_id,)
                ).fetchone()
        except sqlite3.Error as e:
            raise DatabaseError(
                f"Failed to get entry {entry_id}: {e}",
                error_code=ErrorCode.DATABASE_ERROR,
            ) from e

        return self._row_to_entry(row) if row else None

    def list_recent_entries(
        self, limit: int = 20, offset: int = 0, source_id: Optional[str] = None
    ) -> List[Entry]:
        """List entries newest first, by published time then retrieval time.

        Args:
            limit: Maximum number of entries
            offset: Number of entries to skip
            source_id: Restrict to one source (optional)

        Returns:
            List of Entry objects
        """
        query = self._ENTRY_SELECT
        params: list = []
        if source_id:
            query += " WHERE e.source_id = ?"
            params.append(source_id)
        query += """
            ORDER BY COALESCE(e.published_at, e.retrieved_at) DESC, e.retrieved_at DESC
            LIMIT ? OFFSET ?
        """
        params.extend([limit, offset])

        try:
            with self.db.get_connection() as conn:
                rows = conn.execute(query, tuple(params)).fetchall()
        except sqlite3.Error as e:
            raise DatabaseError(
                f"Failed to list entries: {e}", error_code=ErrorCode.DATABASE_ERROR
            ) from e

        return [self._row_to_entry(row) for row in rows]

    def count_entries(self, source_id: Optional[str] = None) -> int:
        """Count stored entries, optionally for one source."""
        query = "SELECT COUNT(*) FROM entries"
        params: tuple = ()
        if source_id:
            query += " WHERE source_id = ?"
            params = (source_id,)

        try:
            with self.db.get_connection() as conn:
                return conn.execute(query, params).fetchone()[0]
        except sqlite3.Error as e:
            raise DatabaseError(
                f"Failed to count entries: {e}", error_code=ErrorCode.DATABASE_ERROR
            ) from e

    def _row_to_source(self, row: sqlite3.Row) -> Source:
        return Source(
            id=row["id"],
            url=row["url"],
            title=row["title"] or "",
            etag=row["etag"],
            last_modified=row["last_modified"],
            last_crawled_at=_from_db_time(row["last_crawled_at"]),
            active=bool(row["active"]),
            created_at=_from_db_time(row["created_at"]) or utc_now(),
        )

    def _row_to_entry(self, row: sqlite3.Row) -> Entry:
        return Entry(
            id=row["id"],
            source_id=row["source_id"],
            source_title=row["source_title"] or "",
            guid=row["guid"],
            url=row["url"] or "",
            title=row["title"] or "",
            author=row["author"],
            content_html=row["content_html"],
            content_text=row["content_text"],
            published_at=_from_db_time(row["published_at"]),
            retrieved_at=_from_db_time(row["retrieved_at"]),
            content_hash=bytes(row["content_hash"]),
        )
