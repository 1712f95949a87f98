"""
Courier Database Schema
=======================

SQLite schema for the feed repository:
- sources: subscribed feeds with their conditional-fetch validators
- entries: normalized feed entries, unique per (source, guid-or-url)
"""

import sqlite3
import logging
from pathlib import Path

logger = logging.getLogger(__name__)


class DatabaseSchema:
    """Database schema manager for the Courier SQLite database."""

    EXPECTED_TABLES = {"sources", "entries"}

    def __init__(self, db_path: str = "data/courier.db"):
        """Initialize database schema manager.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    def create_tables(self) -> None:
        """Create all database tables and indexes."""
        conn = sqlite3.connect(self.db_path)
        try:
            conn.execute("PRAGMA foreign_keys = ON")

            self._create_sources_table(conn)
            self._create_entries_table(conn)
            self._create_indexes(conn)

            conn.commit()
            logger.info("Database schema created successfully")
        finally:
            conn.close()

    def _create_sources_table(self, conn: sqlite3.Connection) -> None:
        """Create sources table for subscribed feeds."""
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS sources (
                id TEXT PRIMARY KEY,
                url TEXT NOT NULL UNIQUE,
                title TEXT NOT NULL DEFAULT '',
                etag TEXT,
                last_modified TEXT,
                last_crawled_at TIMESTAMP,
                active BOOLEAN NOT NULL DEFAULT TRUE,
                created_at TIMESTAMP NOT NULL
            )
        """
        )

    def _create_entries_table(self, conn: sqlite3.Connection) -> None:
        """Create entries table; identity_key is the guid, or the canonical url without one."""
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS entries (
                id TEXT PRIMARY KEY,
                source_id TEXT NOT NULL,
                guid TEXT,
                identity_key TEXT NOT NULL,
                url TEXT NOT NULL DEFAULT '',
                title TEXT NOT NULL DEFAULT '',
                author TEXT,
                content_html TEXT,
                content_text TEXT,
                published_at TIMESTAMP,
                retrieved_at TIMESTAMP NOT NULL,
                content_hash BLOB NOT NULL,
                FOREIGN KEY (source_id) REFERENCES sources(id) ON DELETE CASCADE,
                UNIQUE(source_id, identity_key)
            )
        """
        )

    def _create_indexes(self, conn: sqlite3.Connection) -> None:
        """Create database indexes for the listing queries."""
        indexes = [
            "CREATE INDEX IF NOT EXISTS idx_sources_active ON sources(active)",
            "CREATE INDEX IF NOT EXISTS idx_entries_published ON entries(published_at DESC, retrieved_at DESC)",
            "CREATE INDEX IF NOT EXISTS idx_entries_source_published ON entries(source_id, published_at DESC)",
        ]

        for index_sql in indexes:
            conn.execute(index_sql)

    def drop_tables(self) -> None:
        """Drop all tables (for testing/reset purposes)."""
        conn = sqlite3.connect(self.db_path)
        try:
            for table in ("entries", "sources"):
                conn.execute(f"DROP TABLE IF EXISTS {table}")
            conn.commit()
            logger.info("All database tables dropped")
        finally:
            conn.close()

    def verify_schema(self) -> bool:
        """Verify all expected tables exist."""
        try:
            conn = sqlite3.connect(self.db_path)
            try:
                cursor = conn.execute(
                    """
                    SELECT name FROM sqlite_master
                    WHERE type='table' AND name NOT LIKE 'sqlite_%'
                """
                )
                tables = {row[0] for row in cursor.fetchall()}
            finally:
                conn.close()

        except sqlite3.Error as e:
            logger.error(f"Schema verification failed: {e}")
            return False

        missing = self.EXPECTED_TABLES - tables
        if missing:
            logger.error(f"Missing tables: {sorted(missing)}")
            return False

        logger.info("Database schema verification passed")
        return True
