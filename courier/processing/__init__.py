"""
Courier Processing Module
=========================

Crawl orchestration, per-source backoff and the pending document queue.
"""

from .backoff import BackoffTracker
from .orchestrator import CrawlOrchestrator, SourceOutcome, SourceResult, TickReport

__all__ = [
    'BackoffTracker',
    'CrawlOrchestrator',
    'SourceOutcome',
    'SourceResult',
    'TickReport',
]
