"""
Courier Crawl Scheduler
=======================

Runs crawl ticks on a fixed interval. Each tick is bounded by the interval
itself: a tick that overruns is cancelled, its pending documents are
abandoned, and the next tick starts at the next interval boundary. Ticks
never overlap.
"""

import asyncio
import math
from typing import Optional

from ..config.settings import get_settings
from ..processing.orchestrator import CrawlOrchestrator, TickReport
from ..utils.logging import get_logger_for_component
from ..utils.exceptions import (
    CourierError,
    DatabaseError,
    ErrorCode,
    SearchIndexError,
    handle_exception,
)


class CrawlScheduler:
    """Interval loop around a CrawlOrchestrator."""

    def __init__(
        self,
        orchestrator: CrawlOrchestrator,
        interval_seconds: Optional[float] = None,
        indexer=None,
        db_manager=None,
        startup_timeout: Optional[float] = None,
    ):
        """Initialize scheduler.

        Args:
            orchestrator: Orchestrator running each tick
            interval_seconds: Tick interval and per-tick deadline (default from config)
            indexer: Search indexer bootstrapped by ``startup_checks`` (optional)
            db_manager: Database manager pinged by ``startup_checks`` (optional)
            startup_timeout: Deadline for the startup checks (default from config)
        """
        if interval_seconds is None or startup_timeout is None:
            settings = get_settings()
            interval_seconds = interval_seconds or settings.crawl.interval_seconds
            startup_timeout = startup_timeout or settings.search.startup_timeout_seconds

        self.orchestrator = orchestrator
        self.interval = float(interval_seconds)
        self.indexer = indexer
        self.db_manager = db_manager
        self.startup_timeout = float(startup_timeout)
        self.logger = get_logger_for_component("scheduler")

        self._stop_event = asyncio.Event()
        self.ticks_run = 0
        self.ticks_timed_out = 0

    async def startup_checks(self) -> None:
        """Verify the database and bootstrap the search index.

        Raises:
            DatabaseError: If the database cannot be queried
            SearchIndexError: If the index is unhealthy or cannot be prepared in time
        """
        if self.db_manager is not None:
            try:
                self.db_manager.execute_one("SELECT 1")
            except Exception as e:
                raise DatabaseError(
                    f"Database check failed: {e}",
                    error_code=ErrorCode.DATABASE_CONNECTION,
                ) from e

        if self.indexer is None:
            return

        try:
            await asyncio.wait_for(self._bootstrap_index(), timeout=self.startup_timeout)
        except asyncio.TimeoutError as e:
            raise SearchIndexError(
                f"Search index bootstrap exceeded {self.startup_timeout}s"
            ) from e

    async def _bootstrap_index(self) -> None:
        if not await self.indexer.health():
            raise SearchIndexError("Search engine reports unavailable")
        await self.indexer.ensure_index()

    async def run_once(self) -> Optional[TickReport]:
        """Run one tick under the interval deadline.

        Returns:
            The tick report, or None when the tick timed out or failed
        """
        self.ticks_run += 1
        try:
            return await asyncio.wait_for(self.orchestrator.run_tick(), timeout=self.interval)

        except asyncio.TimeoutError:
            self.ticks_timed_out += 1
            dropped = self.orchestrator.abandon_pending()
            self.logger.error(
                f"Crawl tick exceeded its {self.interval:.0f}s deadline and was cancelled",
                extra={"abandoned_documents": len(dropped), "abandoned_document_ids": dropped},
            )
            return None

        except CourierError as e:
            self.logger.error(f"Crawl tick failed: {e}", extra=e.to_dict())
            return None

        except Exception as e:
            handle_exception(e, self.logger, "crawl tick")
            return None

    async def run_forever(self) -> None:
        """Run ticks until :meth:`stop` is called; the first tick starts immediately."""
        loop = asyncio.get_running_loop()
        next_tick = loop.time()

        self.logger.info(f"Crawl scheduler started, interval {self.interval:.0f}s")

        while not self._stop_event.is_set():
            await self.run_once()

            next_tick += self.interval
            now = loop.time()
            if next_tick <= now:
                # Missed boundaries are dropped, not replayed
                skipped = math.floor((now - next_tick) / self.interval) + 1
                next_tick += skipped * self.interval

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=next_tick - now)
            except asyncio.TimeoutError:
                pass

        self.logger.info(f"Crawl scheduler stopped after {self.ticks_run} ticks")

    def stop(self) -> None:
        """Ask :meth:`run_forever` to return after the current tick."""
        self._stop_event.set()
