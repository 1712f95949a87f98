"""
Courier Search Module
=====================

Client for the search engine that receives entry documents.
"""

from .indexer import SearchIndexer

__all__ = ["SearchIndexer"]
