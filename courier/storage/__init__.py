"""
Courier Storage Layer
=====================

Repository for sources and entries on top of the SQLite connection pool.
"""

from .feed_repository import FeedRepository

__all__ = [
    "FeedRepository",
]
