"""
Unit Tests for Crawl Orchestrator
=================================

Runs ticks against a real temporary repository with stub fetcher and
indexer collaborators and a controllable clock.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock, patch

import pytest

from courier.ingestion.feed_fetcher import FeedItem, FetchResult, ParsedFeed
from courier.processing.backoff import BackoffTracker
from courier.processing.orchestrator import (
    CrawlOrchestrator,
    SourceOutcome,
    SourceResult,
    TickReport,
)
from courier.scheduler.crawl_scheduler import CrawlScheduler
from courier.utils.exceptions import (
    CrawlStatePersistError,
    DatabaseError,
    FatalFetchError,
    IndexDocumentError,
    ItemUpsertError,
    RetryLaterError,
    SearchIndexError,
    SourceCrashError,
    SourceProcessingError,
    TransientFetchError,
)

T0 = datetime(2024, 9, 5, 12, 0, tzinfo=timezone.utc)


class Clock:
    def __init__(self, now=T0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


class StubFetcher:
    """Replays queued results or exceptions per URL."""

    def __init__(self):
        self.responses = {}
        self.calls = []

    def queue(self, url, *outcomes):
        self.responses.setdefault(url, []).extend(outcomes)

    async def fetch(self, url, etag=None, last_modified=None):
        self.calls.append((url, etag, last_modified))
        outcome = self.responses[url].pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class StubIndexer:
    """Records document titles; can reject batches or single titles."""

    def __init__(self, fail_batch=False, fail_titles=(), crash_titles=(), crash_singles=False):
        self.fail_batch = fail_batch
        self.fail_titles = set(fail_titles)
        self.crash_titles = set(crash_titles)
        self.crash_singles = crash_singles
        self.batches = []
        self.singles = []

    async def upsert_batch(self, documents):
        titles = [d.title for d in documents]
        if self.crash_titles.intersection(titles):
            raise RuntimeError("indexer client bug")
        self.batches.append(titles)
        if self.fail_batch:
            raise SearchIndexError("batch rejected", status=400)

    async def upsert_one(self, document):
        self.singles.append(document.title)
        if self.crash_singles and document.title in self.crash_titles:
            raise RuntimeError("indexer client bug")
        if document.title in self.fail_titles:
            raise SearchIndexError("document rejected", status=400)


def feed_result(url, titles, title="Feed", etag='"v1"', body="body"):
    items = [
        FeedItem(
            guid=f"guid-{t}",
            link=f"https://example.com/{t}",
            title=t,
            content=f"<p>{t} {body}</p>",
        )
        for t in titles
    ]
    return FetchResult(
        url=url,
        status=200,
        feed=ParsedFeed(title=title, items=items),
        etag=etag,
        last_modified="Thu, 05 Sep 2024 12:00:00 GMT",
        fetched_at=T0,
    )


def not_modified(url, etag='"v1"'):
    return FetchResult(url=url, status=304, etag=etag, not_modified=True, fetched_at=T0)


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def fetcher():
    return StubFetcher()


@pytest.fixture
def indexer():
    return StubIndexer()


@pytest.fixture
def make_orchestrator(feed_repository, fetcher, indexer, clock):
    def _make(batch_size=100, repository=None, indexer_override=None):
        return CrawlOrchestrator(
            repository or feed_repository,
            fetcher,
            indexer_override or indexer,
            batch_size=batch_size,
            backoff=BackoffTracker(),
            content_max_length=2000,
            clock=clock,
        )
    return _make


@pytest.fixture
def source_a(feed_repository):
    return feed_repository.insert_source("https://a.example.com/feed", title="A feed")


@pytest.fixture
def source_b(feed_repository):
    return feed_repository.insert_source("https://b.example.com/feed", title="B feed")


class TestMutatedSource:

    @pytest.mark.asyncio
    async def test_items_stored_and_indexed(self, make_orchestrator, fetcher, indexer,
                                            feed_repository, source_a):
        fetcher.queue(source_a.url, feed_result(source_a.url, ["A1", "A2"], title="A feed"))

        report = await make_orchestrator().run_tick()

        result = report.sources[0]
        assert result.outcome == SourceOutcome.MUTATED
        assert result.items == 2
        assert result.inserted == 2
        assert result.changed == 2
        assert result.success
        assert indexer.batches == [["A1", "A2"]]
        assert report.documents_indexed == 2
        assert feed_repository.count_entries(source_a.id) == 2

        stored = feed_repository.get_source(source_a.id)
        assert stored.etag == '"v1"'
        assert stored.last_modified == "Thu, 05 Sep 2024 12:00:00 GMT"
        assert stored.last_crawled_at == T0

    @pytest.mark.asyncio
    async def test_documents_carry_source_title(self, make_orchestrator, fetcher, feed_repository, source_a):
        fetcher.queue(source_a.url, feed_result(source_a.url, ["A1"], title="Renamed"))
        orchestrator = make_orchestrator()

        result = await orchestrator.process_source(source_a)

        assert result.documents[0].source_title == "Renamed"
        assert result.documents[0].content_text == "A1 body"
        assert result.documents[0].url == "https://example.com/A1"

    @pytest.mark.asyncio
    async def test_empty_feed_is_still_mutated(self, make_orchestrator, fetcher, indexer, source_a):
        fetcher.queue(source_a.url, feed_result(source_a.url, [], title="A feed"))

        report = await make_orchestrator().run_tick()

        assert report.sources[0].outcome == SourceOutcome.MUTATED
        assert report.sources[0].items == 0
        assert indexer.batches == []


class TestConditionalFetch:

    @pytest.mark.asyncio
    async def test_second_fetch_not_modified_writes_nothing(self, make_orchestrator, fetcher,
                                                           indexer, feed_repository, source_a):
        fetcher.queue(
            source_a.url,
            feed_result(source_a.url, ["A1", "A2"], title="A feed"),
            not_modified(source_a.url),
        )
        orchestrator = make_orchestrator()
        await orchestrator.run_tick()

        with patch.object(
            feed_repository, "upsert_entry", wraps=feed_repository.upsert_entry
        ) as upsert, patch.object(
            feed_repository, "update_crawl_state", wraps=feed_repository.update_crawl_state
        ) as update_state:
            report = await orchestrator.run_tick()

        assert fetcher.calls[1] == (source_a.url, '"v1"', "Thu, 05 Sep 2024 12:00:00 GMT")
        assert report.sources[0].outcome == SourceOutcome.NOT_MODIFIED
        assert report.sources[0].status == 304
        assert upsert.call_count == 0
        assert update_state.call_count == 0
        assert len(indexer.batches) == 1
        assert report.documents_indexed == 0

    @pytest.mark.asyncio
    async def test_empty_body_is_no_content(self, make_orchestrator, fetcher, feed_repository, source_a):
        fetcher.queue(source_a.url, FetchResult(url=source_a.url, status=200, fetched_at=T0))

        report = await make_orchestrator().run_tick()

        assert report.sources[0].outcome == SourceOutcome.NO_CONTENT
        assert feed_repository.get_source(source_a.id).last_crawled_at is None


class TestChangeGatedIndexing:

    @pytest.mark.asyncio
    async def test_unchanged_entries_not_reindexed(self, make_orchestrator, fetcher, indexer, source_a):
        fetcher.queue(
            source_a.url,
            feed_result(source_a.url, ["A1", "A2"], title="A feed"),
            feed_result(source_a.url, ["A1", "A2"], title="A feed"),
            feed_result(source_a.url, ["A1", "A2"], title="A feed", body="edited"),
        )
        orchestrator = make_orchestrator()

        await orchestrator.run_tick()
        second = await orchestrator.run_tick()

        assert second.sources[0].items == 2
        assert second.sources[0].inserted == 0
        assert second.sources[0].changed == 0
        assert indexer.batches == [["A1", "A2"]]

        third = await orchestrator.run_tick()

        assert third.sources[0].changed == 2
        assert indexer.batches[-1] == ["A1", "A2"]
        assert len(indexer.batches) == 2


class TestBackoff:

    @pytest.mark.asyncio
    async def test_failures_back_off_and_success_resets(self, make_orchestrator, fetcher, clock, source_a):
        fetcher.queue(
            source_a.url,
            TransientFetchError("connection reset", feed_url=source_a.url),
            TransientFetchError("connection reset", feed_url=source_a.url),
            not_modified(source_a.url),
            TransientFetchError("connection reset", feed_url=source_a.url),
        )
        orchestrator = make_orchestrator()

        first = (await orchestrator.run_tick()).sources[0]
        assert first.outcome == SourceOutcome.FETCH_FAILED
        assert first.fetch_error_kind == "transient"
        assert first.retry_in == timedelta(seconds=30)

        clock.advance(10)
        skipped = (await orchestrator.run_tick()).sources[0]
        assert skipped.outcome == SourceOutcome.SKIPPED_BACKOFF
        assert skipped.retry_in == timedelta(seconds=20)
        assert skipped.success
        assert len(fetcher.calls) == 1

        clock.advance(20)
        second = (await orchestrator.run_tick()).sources[0]
        assert second.outcome == SourceOutcome.FETCH_FAILED
        assert second.retry_in == timedelta(seconds=30)
        assert len(fetcher.calls) == 2

        clock.advance(30)
        recovered = (await orchestrator.run_tick()).sources[0]
        assert recovered.outcome == SourceOutcome.NOT_MODIFIED
        assert source_a.id not in orchestrator.backoff

        again = (await orchestrator.run_tick()).sources[0]
        assert again.retry_in == timedelta(seconds=30)

    @pytest.mark.asyncio
    async def test_retry_later_uses_suggested_delay(self, make_orchestrator, fetcher, source_a):
        fetcher.queue(
            source_a.url,
            RetryLaterError(503, retry_after=timedelta(seconds=90), feed_url=source_a.url),
        )

        result = (await make_orchestrator().run_tick()).sources[0]

        assert result.outcome == SourceOutcome.FETCH_FAILED
        assert result.fetch_error_kind == "retry_later"
        assert result.status == 503
        assert result.retry_in == timedelta(seconds=90)
        assert isinstance(result.error, RetryLaterError)
        assert not result.success

    @pytest.mark.asyncio
    async def test_fatal_failure_uses_default_backoff(self, make_orchestrator, fetcher, source_a):
        fetcher.queue(
            source_a.url,
            FatalFetchError("unexpected status 404", feed_url=source_a.url, status=404),
        )

        result = (await make_orchestrator().run_tick()).sources[0]

        assert result.fetch_error_kind == "fatal"
        assert result.status == 404
        assert result.retry_in == timedelta(seconds=30)


class TestPartialFailure:

    @pytest.mark.asyncio
    async def test_failed_item_does_not_lose_siblings(self, make_orchestrator, fetcher, indexer,
                                                      feed_repository, source_a, source_b):
        fetcher.queue(source_a.url, feed_result(source_a.url, ["A1", "A2", "A3"], title="A feed"))
        fetcher.queue(source_b.url, feed_result(source_b.url, ["B1"], title="B feed"))

        real_upsert = feed_repository.upsert_entry

        def flaky_upsert(params):
            if params.guid == "guid-A2":
                raise DatabaseError("disk I/O error")
            return real_upsert(params)

        with patch.object(feed_repository, "upsert_entry", side_effect=flaky_upsert):
            report = await make_orchestrator().run_tick()

        a, b = report.sources
        assert a.outcome == SourceOutcome.MUTATED
        assert a.items == 3
        assert a.changed == 2
        assert len(a.errors) == 1
        assert isinstance(a.errors[0], ItemUpsertError)
        assert a.errors[0].item_ref == "guid-A2"
        assert not a.success
        assert b.outcome == SourceOutcome.MUTATED
        assert b.success
        assert indexer.batches == [["A1", "A3", "B1"]]
        assert feed_repository.count_entries(source_a.id) == 2

    @pytest.mark.asyncio
    async def test_item_without_identity_is_reported(self, make_orchestrator, fetcher, source_a):
        result = feed_result(source_a.url, ["A1"], title="A feed")
        result.feed.items.append(FeedItem(title="orphan", content="<p>x</p>"))
        fetcher.queue(source_a.url, result)

        source_result = (await make_orchestrator().run_tick()).sources[0]

        assert source_result.changed == 1
        assert isinstance(source_result.error, ItemUpsertError)

    @pytest.mark.asyncio
    async def test_multiple_item_errors_joined(self, make_orchestrator, fetcher, feed_repository, source_a):
        fetcher.queue(source_a.url, feed_result(source_a.url, ["A1", "A2"], title="A feed"))

        with patch.object(feed_repository, "upsert_entry", side_effect=DatabaseError("read-only")):
            result = (await make_orchestrator().run_tick()).sources[0]

        error = result.error
        assert isinstance(error, SourceProcessingError)
        assert len(error.errors) == 2
        assert "; " in str(error)

    @pytest.mark.asyncio
    async def test_crawl_state_failure_skips_items(self, make_orchestrator, fetcher, indexer,
                                                   feed_repository, source_a):
        fetcher.queue(source_a.url, feed_result(source_a.url, ["A1"], title="A feed"))

        with patch.object(
            feed_repository, "update_crawl_state", side_effect=DatabaseError("database is locked")
        ):
            result = (await make_orchestrator().run_tick()).sources[0]

        assert result.outcome == SourceOutcome.CRAWL_STATE_FAILED
        assert isinstance(result.error, CrawlStatePersistError)
        assert feed_repository.count_entries() == 0
        assert indexer.batches == []


class TestCrashIsolation:

    @pytest.mark.asyncio
    async def test_crash_reported_and_next_source_runs(self, make_orchestrator, fetcher, indexer,
                                                       source_a, source_b):
        fetcher.queue(source_a.url, KeyError("unexpected"))
        fetcher.queue(source_b.url, feed_result(source_b.url, ["B1"], title="B feed"))

        report = await make_orchestrator().run_tick()

        a, b = report.sources
        assert a.outcome == SourceOutcome.CRASHED
        assert isinstance(a.error, SourceCrashError)
        assert isinstance(a.error.__cause__, KeyError)
        assert b.outcome == SourceOutcome.MUTATED
        assert indexer.batches == [["B1"]]

    @pytest.mark.asyncio
    async def test_indexer_crash_falls_back_for_shared_batch(self, make_orchestrator, fetcher,
                                                             source_a, source_b):
        crashing_indexer = StubIndexer(crash_titles={"B1"})
        fetcher.queue(source_a.url, feed_result(source_a.url, ["A1"], title="A feed"))
        fetcher.queue(source_b.url, feed_result(source_b.url, ["B1", "B2"], title="B feed"))
        orchestrator = make_orchestrator(batch_size=2, indexer_override=crashing_indexer)

        report = await orchestrator.run_tick()

        assert [r.outcome for r in report.sources] == [SourceOutcome.MUTATED, SourceOutcome.MUTATED]
        assert crashing_indexer.singles == ["A1", "B1"]
        assert crashing_indexer.batches == [["B2"]]
        assert report.documents_indexed == 3
        assert report.unindexed_document_ids == []
        assert len(orchestrator.pending) == 0

    @pytest.mark.asyncio
    async def test_broken_indexer_reports_every_lost_document(self, make_orchestrator, fetcher,
                                                              feed_repository, source_a, source_b):
        broken = StubIndexer(crash_titles={"A1", "B1", "B2"}, crash_singles=True)
        fetcher.queue(source_a.url, feed_result(source_a.url, ["A1"], title="A feed"))
        fetcher.queue(source_b.url, feed_result(source_b.url, ["B1", "B2"], title="B feed"))

        report = await make_orchestrator(batch_size=2, indexer_override=broken).run_tick()

        ids = {entry.title: entry.id for entry in feed_repository.list_recent_entries(10)}
        assert report.unindexed_document_ids == [ids["A1"], ids["B1"], ids["B2"]]
        assert report.documents_indexed == 0
        assert len(report.flush_errors) == 2
        a, b = report.sources
        assert a.success
        assert isinstance(b.error, IndexDocumentError)
        assert isinstance(b.error.__cause__, RuntimeError)


class TestBatchFlush:

    @pytest.mark.asyncio
    async def test_full_batches_flushed_between_sources(self, make_orchestrator, fetcher, indexer,
                                                        source_a, source_b):
        fetcher.queue(source_a.url, feed_result(source_a.url, ["A1", "A2", "A3"], title="A feed"))
        fetcher.queue(source_b.url, feed_result(source_b.url, ["B1"], title="B feed"))

        report = await make_orchestrator(batch_size=2).run_tick()

        assert indexer.batches == [["A1", "A2"], ["A3", "B1"]]
        assert report.documents_indexed == 4

    @pytest.mark.asyncio
    async def test_fallback_stops_at_first_failing_document(self, make_orchestrator, fetcher, source_a):
        failing = StubIndexer(fail_batch=True, fail_titles={"A2"})
        fetcher.queue(source_a.url, feed_result(source_a.url, ["A1", "A2", "A3"], title="A feed"))

        report = await make_orchestrator(indexer_override=failing).run_tick()

        assert failing.singles == ["A1", "A2"]
        assert report.documents_indexed == 1
        assert len(report.unindexed_document_ids) == 2
        assert len(report.flush_errors) == 1
        assert isinstance(report.flush_errors[0], IndexDocumentError)
        assert report.sources[0].success

    @pytest.mark.asyncio
    async def test_fallback_succeeds_document_by_document(self, make_orchestrator, fetcher, source_a):
        failing = StubIndexer(fail_batch=True)
        fetcher.queue(source_a.url, feed_result(source_a.url, ["A1", "A2"], title="A feed"))

        report = await make_orchestrator(indexer_override=failing).run_tick()

        assert failing.singles == ["A1", "A2"]
        assert report.documents_indexed == 2
        assert report.flush_errors == []

    @pytest.mark.asyncio
    async def test_mid_tick_flush_error_attached_to_source(self, make_orchestrator, fetcher, source_a):
        failing = StubIndexer(fail_batch=True, fail_titles={"A1"})
        fetcher.queue(source_a.url, feed_result(source_a.url, ["A1", "A2"], title="A feed"))

        report = await make_orchestrator(batch_size=2, indexer_override=failing).run_tick()

        result = report.sources[0]
        assert isinstance(result.error, IndexDocumentError)
        assert report.failed_sources == [result]

    @pytest.mark.asyncio
    async def test_abandon_pending(self, make_orchestrator):
        orchestrator = make_orchestrator()
        document = Mock(id="doc-1")
        orchestrator.pending.extend("src", [document])

        assert orchestrator.abandon_pending() == ["doc-1"]
        assert not orchestrator.pending


class HangingIndexer:
    """Accepts batches but never answers."""

    def __init__(self):
        self.received = []

    async def upsert_batch(self, documents):
        self.received.append([d.id for d in documents])
        await asyncio.sleep(10)

    async def upsert_one(self, document):
        await asyncio.sleep(10)


class TestTickDeadline:

    @pytest.mark.asyncio
    async def test_in_flight_batch_is_abandoned_with_queue(self, make_orchestrator, fetcher, source_a):
        hanging = HangingIndexer()
        fetcher.queue(source_a.url, feed_result(source_a.url, ["A1", "A2", "A3"], title="A feed"))
        orchestrator = make_orchestrator(batch_size=2, indexer_override=hanging)

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(orchestrator.run_tick(), timeout=0.2)

        abandoned = orchestrator.abandon_pending()

        assert len(hanging.received) == 1
        assert abandoned[:2] == hanging.received[0]
        assert len(abandoned) == 3
        assert orchestrator.abandon_pending() == []

    @pytest.mark.asyncio
    async def test_scheduler_deadline_abandons_in_flight_batch(self, make_orchestrator, fetcher,
                                                               source_a):
        hanging = HangingIndexer()
        fetcher.queue(source_a.url, feed_result(source_a.url, ["A1", "A2"], title="A feed"))
        orchestrator = make_orchestrator(batch_size=2, indexer_override=hanging)
        scheduler = CrawlScheduler(orchestrator, interval_seconds=0.2, startup_timeout=1)

        abandoned = []
        abandon = orchestrator.abandon_pending

        def record_abandon():
            abandoned.append(abandon())
            return abandoned[-1]

        with patch.object(orchestrator, "abandon_pending", side_effect=record_abandon):
            assert await scheduler.run_once() is None

        assert abandoned == [hanging.received[0]]
        assert scheduler.ticks_timed_out == 1
        assert not orchestrator.pending


class TestTickAbort:

    @pytest.mark.asyncio
    async def test_listing_failure_aborts(self, make_orchestrator, fetcher):
        repository = Mock()
        repository.list_active_sources.side_effect = DatabaseError("no such table: sources")

        report = await make_orchestrator(repository=repository).run_tick()

        assert report.aborted
        assert isinstance(report.error, DatabaseError)
        assert report.sources == []
        assert fetcher.calls == []

    @pytest.mark.asyncio
    async def test_inactive_sources_not_visited(self, make_orchestrator, fetcher, feed_repository, source_a):
        feed_repository.set_source_active(source_a.id, False)

        report = await make_orchestrator().run_tick()

        assert report.sources == []
        assert not report.aborted


class TestReport:

    def test_outcome_counts_and_failures(self):
        ok = SourceResult(source_id="a", source_url="u1", outcome=SourceOutcome.NOT_MODIFIED)
        failed = SourceResult(
            source_id="b", source_url="u2", outcome=SourceOutcome.FETCH_FAILED,
            errors=[TransientFetchError("reset")],
        )
        report = TickReport(started_at=T0, sources=[ok, failed, ok])

        assert report.outcome_counts() == {"not_modified": 2, "fetch_failed": 1}
        assert report.failed_sources == [failed]
        assert ok.error is None

    def test_batch_size_must_be_positive(self):
        with pytest.raises(ValueError):
            CrawlOrchestrator(Mock(), Mock(), Mock(), batch_size=0,
                              backoff=BackoffTracker(), content_max_length=10)
