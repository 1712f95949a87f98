"""
Crawl Orchestrator
==================

Runs one crawl tick: visits every active source in order, honours backoff,
fetches conditionally, persists crawl state and entries, and pushes changed
entries to the search index in batches.

A failure in one source never stops the tick. Each source produces exactly
one SourceResult; unexpected exceptions are turned into a CRASHED result by
a supervising wrapper. Only a failure to list sources ends a tick early.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from ..config.settings import get_settings
from ..database.models import Document, Source, utc_now
from ..ingestion.entry_builder import build_entry_params
from ..utils.logging import get_logger_for_component, PerformanceLogger
from ..utils.exceptions import (
    ContentValidationError,
    CrawlStatePersistError,
    DatabaseError,
    FeedFetchError,
    IndexDocumentError,
    IndexFlushError,
    ItemUpsertError,
    RetryLaterError,
    SourceCrashError,
    SourceProcessingError,
    is_retryable_error,
)
from .backoff import BackoffTracker
from .pending import PendingDocuments


class SourceOutcome(str, Enum):
    """What happened to a source during one tick."""
    SKIPPED_BACKOFF = "skipped_backoff"
    FETCH_FAILED = "fetch_failed"
    NOT_MODIFIED = "not_modified"
    NO_CONTENT = "no_content"
    MUTATED = "mutated"
    CRAWL_STATE_FAILED = "crawl_state_failed"
    CRASHED = "crashed"


FAILED_OUTCOMES = frozenset({
    SourceOutcome.FETCH_FAILED,
    SourceOutcome.CRAWL_STATE_FAILED,
    SourceOutcome.CRASHED,
})


@dataclass
class SourceResult:
    """Result of processing one source in one tick."""

    source_id: str
    source_url: str
    outcome: SourceOutcome
    status: Optional[int] = None
    fetch_error_kind: Optional[str] = None
    retry_in: Optional[timedelta] = None
    items: int = 0
    inserted: int = 0
    changed: int = 0
    errors: List[Exception] = field(default_factory=list)
    documents: List[Document] = field(default_factory=list, repr=False)

    @property
    def error(self) -> Optional[Exception]:
        """All errors of this source joined into one, or None."""
        if not self.errors:
            return None
        if len(self.errors) == 1:
            return self.errors[0]
        return SourceProcessingError(self.errors, source_id=self.source_id)

    @property
    def success(self) -> bool:
        return self.outcome not in FAILED_OUTCOMES and not self.errors


@dataclass
class TickReport:
    """Summary of one crawl tick."""

    started_at: datetime
    sources: List[SourceResult] = field(default_factory=list)
    documents_indexed: int = 0
    unindexed_document_ids: List[str] = field(default_factory=list)
    flush_errors: List[Exception] = field(default_factory=list)
    duration_seconds: float = 0.0
    aborted: bool = False
    error: Optional[Exception] = None

    def outcome_counts(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for result in self.sources:
            counts[result.outcome.value] = counts.get(result.outcome.value, 0) + 1
        return counts

    @property
    def failed_sources(self) -> List[SourceResult]:
        return [result for result in self.sources if not result.success]


class CrawlOrchestrator:
    """Per-tick ingestion driver.

    Collaborators are duck-typed:
    - repository: ``list_active_sources()``, ``update_crawl_state(...)``,
      ``upsert_entry(params)``; failures raise DatabaseError
    - fetcher: ``await fetch(url, etag, last_modified)``; failures raise
      FeedFetchError subclasses
    - indexer: ``await upsert_batch(documents)``, ``await upsert_one(document)``;
      failures raise SearchIndexError
    """

    def __init__(
        self,
        repository,
        fetcher,
        indexer,
        batch_size: Optional[int] = None,
        backoff: Optional[BackoffTracker] = None,
        content_max_length: Optional[int] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """Initialize the orchestrator.

        Args:
            repository: Feed repository
            fetcher: Conditional feed fetcher
            indexer: Document indexer
            batch_size: Documents per index flush (default from config)
            backoff: Backoff tracker (default built from config)
            content_max_length: Max characters of entry text (default from config)
            clock: Returns the current UTC time
        """
        if batch_size is None or backoff is None or content_max_length is None:
            settings = get_settings()
            if batch_size is None:
                batch_size = settings.crawl.batch_size
            if content_max_length is None:
                content_max_length = settings.crawl.content_max_length
            if backoff is None:
                backoff = BackoffTracker(
                    floor=timedelta(seconds=settings.backoff.floor_seconds),
                    ceiling=timedelta(seconds=settings.backoff.ceiling_seconds),
                    factor=settings.backoff.factor,
                )

        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")

        self.repository = repository
        self.fetcher = fetcher
        self.indexer = indexer
        self.batch_size = batch_size
        self.content_max_length = content_max_length
        self.backoff = backoff
        self.pending = PendingDocuments()
        self._in_flight: List[Document] = []
        self.clock = clock or utc_now
        self.logger = get_logger_for_component("orchestrator")

    async def run_tick(self) -> TickReport:
        """Process every active source once and flush pending documents.

        Returns:
            TickReport with one SourceResult per listed source
        """
        report = TickReport(started_at=self.clock())

        with PerformanceLogger(self.logger, "crawl tick") as perf:
            try:
                sources = self.repository.list_active_sources()
            except DatabaseError as e:
                self.logger.error(
                    f"Listing sources failed, aborting tick: {e}", extra=e.to_dict()
                )
                report.aborted = True
                report.error = e
                sources = []

            for source in sources:
                report.sources.append(await self._supervise(source, report))

            await self._flush_remaining(report)

        report.duration_seconds = perf.duration or 0.0
        self._log_report(report)
        return report

    async def _supervise(self, source: Source, report: TickReport) -> SourceResult:
        """Process one source, then flush any full batches.

        Any unexpected exception from ``process_source`` becomes a CRASHED
        result. A crashed source never reaches the queue, since documents
        are queued only from a finished result.
        """
        try:
            result = await self.process_source(source)
        except Exception as e:
            self._source_logger(source).error(
                f"Source processing crashed: {e.__class__.__name__}: {e}", exc_info=True
            )
            crash = SourceCrashError(f"{e.__class__.__name__}: {e}", source_id=source.id)
            crash.__cause__ = e
            return SourceResult(
                source_id=source.id,
                source_url=source.url,
                outcome=SourceOutcome.CRASHED,
                errors=[crash],
            )

        self.pending.extend(source.id, result.documents)
        await self._flush_full_batches(report, result)
        return result

    async def process_source(self, source: Source) -> SourceResult:
        """Fetch one source and store its entries.

        Changed entries are returned in ``result.documents``; queuing and
        flushing them is left to the caller.
        """
        logger = self._source_logger(source)

        wait = self.backoff.remaining(source.id, self.clock())
        if wait > timedelta(0):
            logger.debug(f"In backoff for another {wait.total_seconds():.0f}s, skipping")
            return SourceResult(
                source_id=source.id,
                source_url=source.url,
                outcome=SourceOutcome.SKIPPED_BACKOFF,
                retry_in=wait,
            )

        try:
            fetched = await self.fetcher.fetch(
                source.url, source.etag, source.last_modified
            )
        except FeedFetchError as e:
            suggested = e.retry_after if isinstance(e, RetryLaterError) else None
            delay = self.backoff.schedule(source.id, self.clock(), suggested)
            log = logger.warning if is_retryable_error(e) else logger.error
            log(
                f"Fetch failed ({e.kind}), retrying in {delay.total_seconds():.0f}s: {e}",
                extra={
                    "status": e.status,
                    "fetch_error_kind": e.kind,
                    "retry_in_seconds": delay.total_seconds(),
                },
            )
            return SourceResult(
                source_id=source.id,
                source_url=source.url,
                outcome=SourceOutcome.FETCH_FAILED,
                status=e.status,
                fetch_error_kind=e.kind,
                retry_in=delay,
                errors=[e],
            )

        self.backoff.reset(source.id)

        if fetched.not_modified:
            logger.debug("Not modified")
            return SourceResult(
                source_id=source.id,
                source_url=source.url,
                outcome=SourceOutcome.NOT_MODIFIED,
                status=fetched.status,
            )

        if fetched.feed is None:
            logger.debug("Empty response body")
            return SourceResult(
                source_id=source.id,
                source_url=source.url,
                outcome=SourceOutcome.NO_CONTENT,
                status=fetched.status,
            )

        try:
            self.repository.update_crawl_state(
                source.id,
                fetched.etag,
                fetched.last_modified,
                fetched.fetched_at,
                fetched.feed.title,
            )
        except DatabaseError as e:
            error = CrawlStatePersistError(
                f"Failed to persist crawl state: {e}", source_id=source.id
            )
            error.__cause__ = e
            logger.error(str(error), extra={"status": fetched.status})
            return SourceResult(
                source_id=source.id,
                source_url=source.url,
                outcome=SourceOutcome.CRAWL_STATE_FAILED,
                status=fetched.status,
                errors=[error],
            )

        result = SourceResult(
            source_id=source.id,
            source_url=source.url,
            outcome=SourceOutcome.MUTATED,
            status=fetched.status,
            items=len(fetched.feed.items),
        )

        for item in fetched.feed.items:
            item_ref = item.guid or item.link or item.title[:80]
            try:
                params = build_entry_params(
                    source.id,
                    item,
                    self.content_max_length,
                    retrieved_at=fetched.fetched_at,
                )
                upserted = self.repository.upsert_entry(params)
            except (DatabaseError, ContentValidationError) as e:
                error = ItemUpsertError(
                    f"Failed to store item {item_ref!r}: {e}",
                    source_id=source.id,
                    item_ref=item_ref,
                )
                error.__cause__ = e
                result.errors.append(error)
                logger.warning(str(error))
                continue

            if upserted.inserted:
                result.inserted += 1
            if upserted.changed:
                result.changed += 1
                result.documents.append(Document.from_entry(upserted.entry))

        logger.info(
            f"Stored {result.items} items: {result.inserted} new, {result.changed} changed",
            extra={
                "status": fetched.status,
                "item_errors": len(result.errors),
            },
        )
        return result

    async def _flush_full_batches(
        self, report: TickReport, result: Optional[SourceResult] = None
    ) -> None:
        while len(self.pending) >= self.batch_size:
            await self._flush_batch(self.pending.pop_front(self.batch_size), report, result)

    async def _flush_remaining(self, report: TickReport) -> None:
        while self.pending:
            await self._flush_batch(self.pending.pop_front(self.batch_size), report)

    async def _flush_batch(
        self,
        batch: List[Tuple[str, Document]],
        report: TickReport,
        result: Optional[SourceResult] = None,
    ) -> None:
        """Bulk upsert; on failure upsert one by one, stopping at the first failure."""
        documents = [document for _, document in batch]
        if not documents:
            return

        self._in_flight = list(documents)
        try:
            await self.indexer.upsert_batch(documents)
            report.documents_indexed += len(documents)
            self._in_flight = []
            return
        except Exception as e:
            # Any failure; the batch is already off the queue
            flush_error = IndexFlushError(
                f"Batch upsert of {len(documents)} documents failed, "
                f"falling back to single upserts: {e}",
                batch_size=len(documents),
                status=getattr(e, "status", None),
            )
            flush_error.__cause__ = e
            self.logger.warning(str(flush_error), extra=flush_error.to_dict())

        for position, document in enumerate(documents):
            try:
                await self.indexer.upsert_one(document)
            except Exception as e:
                unindexed = [d.id for d in documents[position:]]
                self._in_flight = []
                report.unindexed_document_ids.extend(unindexed)
                error = IndexDocumentError(
                    f"Upsert of document {document.id} failed; "
                    f"{len(unindexed)} documents left unindexed: {e}",
                    document_id=document.id,
                    context={"unindexed_document_ids": unindexed},
                )
                error.__cause__ = e
                report.flush_errors.append(error)
                if result is not None:
                    result.errors.append(error)
                self.logger.error(
                    str(error),
                    extra={"unindexed_document_ids": unindexed},
                )
                return
            report.documents_indexed += 1
            self._in_flight = documents[position + 1:]

    def abandon_pending(self) -> List[str]:
        """Drop the batch being sent and everything still queued.

        Called after the tick deadline cancelled ``run_tick``; a cancelled
        upsert may or may not have reached the index, so its documents are
        reported with the queued ones.

        Returns:
            IDs of the dropped documents, in-flight batch first
        """
        dropped = [document.id for document in self._in_flight]
        dropped += [document.id for document in self.pending.clear()]
        self._in_flight = []
        if dropped:
            self.logger.warning(
                f"Abandoned {len(dropped)} pending documents",
                extra={"abandoned_document_ids": dropped},
            )
        return dropped

    def _source_logger(self, source: Source):
        return get_logger_for_component(
            "orchestrator", source_id=source.id, source_url=source.url
        )

    def _log_report(self, report: TickReport) -> None:
        counts = report.outcome_counts()
        summary = ", ".join(f"{k}={v}" for k, v in sorted(counts.items())) or "no sources"
        extra = {
            "outcomes": counts,
            "documents_indexed": report.documents_indexed,
            "unindexed_documents": len(report.unindexed_document_ids),
            "failed_sources": len(report.failed_sources),
        }
        if report.aborted:
            self.logger.error("Crawl tick aborted", extra=extra)
        elif report.failed_sources or report.unindexed_document_ids:
            self.logger.warning(f"Crawl tick finished with errors: {summary}", extra=extra)
        else:
            self.logger.info(f"Crawl tick finished: {summary}", extra=extra)
