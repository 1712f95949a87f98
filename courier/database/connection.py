"""
Courier Database Connection Management
======================================

A small pool of SQLite connections shared by the feed repository. Writes
go through ``BEGIN IMMEDIATE`` transactions.
"""

import sqlite3
import threading
import logging
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Optional, Iterator, Dict, Any
from queue import Queue, Empty, Full

logger = logging.getLogger(__name__)

CONNECTION_PRAGMAS = (
    "PRAGMA foreign_keys = ON",
    "PRAGMA journal_mode = WAL",
    "PRAGMA synchronous = NORMAL",
    "PRAGMA busy_timeout = 30000",
)

# Seconds to wait for a pooled connection before opening an overflow one
ACQUIRE_TIMEOUT = 10.0
SLOW_ACQUIRE_WARNING = 1.0


class DatabaseConnection:
    """Pooled SQLite access with transaction helpers."""

    TABLES = ("sources", "entries")

    def __init__(self, db_path: str = "data/courier.db", pool_size: int = 5):
        self.db_path = Path(db_path)
        self.pool_size = pool_size
        self.pool: Queue = Queue(maxsize=pool_size)
        self._opened = 0
        self._count_lock = threading.Lock()

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        for _ in range(pool_size):
            self.pool.put(self._open())

    def _open(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False, timeout=30.0)
        conn.row_factory = sqlite3.Row
        for pragma in CONNECTION_PRAGMAS:
            conn.execute(pragma)

        with self._count_lock:
            self._opened += 1
            opened = self._opened
        logger.debug(f"Opened SQLite connection #{opened} to {self.db_path}")
        return conn

    def _release(self, conn: sqlite3.Connection) -> None:
        try:
            self.pool.put_nowait(conn)
        except Full:
            # Overflow connection; the pool is already at capacity
            conn.close()
            with self._count_lock:
                self._opened -= 1

    @contextmanager
    def get_connection(self) -> Iterator[sqlite3.Connection]:
        """Borrow a connection for the duration of the block.

        A pending transaction is rolled back if the block fails with a
        database error; the connection always goes back to the pool.
        """
        started = time.monotonic()
        try:
            conn = self.pool.get(timeout=ACQUIRE_TIMEOUT)
        except Empty:
            logger.warning("Connection pool exhausted, opening an overflow connection")
            conn = self._open()

        waited = time.monotonic() - started
        if waited > SLOW_ACQUIRE_WARNING:
            logger.warning(f"Waited {waited:.2f}s for a database connection")

        try:
            yield conn
        except sqlite3.Error as e:
            logger.error(f"Database error on {self.db_path}: {e}")
            if conn.in_transaction:
                conn.rollback()
            raise
        finally:
            self._release(conn)

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run the block inside ``BEGIN IMMEDIATE``; commit or roll back.

        Usage:
            with db.transaction() as conn:
                conn.execute("UPDATE sources SET ...")
        """
        with self.get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except Exception as e:
                conn.rollback()
                logger.error(f"Transaction rolled back: {e}")
                raise
            conn.commit()

    def execute_one(self, query: str, params: tuple = ()) -> Optional[sqlite3.Row]:
        with self.get_connection() as conn:
            return conn.execute(query, params).fetchone()

    def execute_update(self, query: str, params: tuple = ()) -> int:
        """Run a single write statement in its own transaction; returns rowcount."""
        with self.transaction() as conn:
            return conn.execute(query, params).rowcount

    def get_database_info(self) -> Dict[str, Any]:
        """Size, row counts and pool usage, as shown by ``courier db-info``."""
        with self.get_connection() as conn:
            page_count = conn.execute("PRAGMA page_count").fetchone()[0]
            page_size = conn.execute("PRAGMA page_size").fetchone()[0]

            table_counts = {}
            for table in self.TABLES:
                try:
                    table_counts[table] = conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
                except sqlite3.OperationalError:
                    # Schema not created yet
                    table_counts[table] = 0

        return {
            "database_path": str(self.db_path),
            "database_size_mb": round(page_count * page_size / (1024 * 1024), 3),
            "table_counts": table_counts,
            "idle_connections": self.pool.qsize(),
            "open_connections": self._opened,
        }

    def close_all_connections(self) -> None:
        logger.info(f"Closing database connections to {self.db_path}")
        while True:
            try:
                self.pool.get_nowait().close()
            except Empty:
                break

        with self._count_lock:
            self._opened = 0


_db_manager: Optional[DatabaseConnection] = None


def get_db_manager(db_path: str = "data/courier.db", pool_size: int = 5) -> DatabaseConnection:
    """Process-wide connection manager, created on first use."""
    global _db_manager

    if _db_manager is None:
        _db_manager = DatabaseConnection(db_path, pool_size=pool_size)

    return _db_manager
