"""
Courier - Feed Ingestion into a Search Index
============================================

Fetches syndicated feeds on a schedule, normalizes and deduplicates their
entries, and pushes changed entries to a search index.

Main Components:
- Ingestion: conditional fetching, URL canonicalization, HTML to text, fingerprints
- Processing: per-source backoff, crawl orchestration with batched index flushes
- Storage: SQLite repository for sources and entries
- Search: Meilisearch document indexer
"""

__version__ = "1.0.0"
__description__ = "Feed ingestion pipeline publishing to a search index"

from .config.settings import get_settings
from .database.connection import get_db_manager
from .database.schema import DatabaseSchema
from .utils.logging import configure_application_logging, get_logger_for_component
from .utils.exceptions import CourierError

__all__ = [
    "get_settings",
    "get_db_manager",
    "DatabaseSchema",
    "configure_application_logging",
    "get_logger_for_component",
    "CourierError",
]
