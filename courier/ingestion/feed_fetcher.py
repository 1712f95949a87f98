"""
Conditional Feed Fetcher
========================

Performs one conditional HTTP GET for a feed and classifies the outcome:
not modified, parsed feed, empty body, or one of three failure kinds
(transient network fault, server-requested retry, fatal).
"""

import asyncio
import errno
import io
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone, timedelta
from email.utils import parsedate_to_datetime
from typing import Any, Dict, List, Optional
import ssl

import aiohttp
import certifi
import feedparser

from ..config.settings import get_settings
from ..utils.logging import get_logger_for_component
from ..utils.exceptions import (
    FatalFetchError,
    RetryLaterError,
    TransientFetchError,
    ErrorCode,
)

RETRY_LATER_STATUSES = frozenset({408, 429, 500, 502, 503, 504})
BODY_EXCERPT_BYTES = 512

# Content-Type and charset complaints; the document itself parsed
BENIGN_PARSE_WARNINGS = (
    feedparser.NonXMLContentType,
    feedparser.CharacterEncodingOverride,
)

TRANSIENT_ERRNOS = frozenset({
    errno.ECONNRESET,
    errno.ECONNREFUSED,
    errno.ECONNABORTED,
    errno.EPIPE,
    errno.EHOSTUNREACH,
    errno.ENETUNREACH,
    errno.ENETDOWN,
    errno.ENETRESET,
    errno.ETIMEDOUT,
})


@dataclass
class FeedItem:
    """One entry of a parsed feed, before normalization."""

    guid: str = ""
    link: str = ""
    title: str = ""
    author: Optional[str] = None
    published_at: Optional[datetime] = None
    content: str = ""
    description: str = ""


@dataclass
class ParsedFeed:
    """Feed-level metadata plus items."""

    title: str = ""
    link: str = ""
    items: List[FeedItem] = field(default_factory=list)


@dataclass
class FetchResult:
    """Successful outcome of a conditional fetch.

    ``feed`` is None when the server answered 304 (``not_modified``) or sent
    an empty body. Validators fall back to the ones supplied by the caller
    when the response carries none.
    """

    url: str
    status: int
    feed: Optional[ParsedFeed] = None
    etag: Optional[str] = None
    last_modified: Optional[str] = None
    not_modified: bool = False
    fetched_at: Optional[datetime] = None

    def __post_init__(self):
        if not self.fetched_at:
            self.fetched_at = datetime.now(timezone.utc)

    @property
    def no_content(self) -> bool:
        return not self.not_modified and self.feed is None


def parse_retry_after(value: Optional[str], now: Optional[datetime] = None) -> Optional[timedelta]:
    """Parse a Retry-After header given as delta-seconds or an HTTP date.

    Returns:
        Positive delay, or None when absent, unparsable or already past
    """
    if not value:
        return None
    value = value.strip()
    now = now or datetime.now(timezone.utc)

    if value.isdigit():
        seconds = int(value)
        return timedelta(seconds=seconds) if seconds > 0 else None

    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        return None
    if when is None:
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)

    delay = when - now
    return delay if delay > timedelta(0) else None


def _struct_time_to_datetime(value: Any) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime(*value[:6], tzinfo=timezone.utc)
    except (TypeError, ValueError):
        return None


class FeedFetcher:
    """Conditional feed fetcher over a shared aiohttp session."""

    def __init__(
        self,
        timeout: Optional[float] = None,
        user_agent: Optional[str] = None,
        max_connections: Optional[int] = None,
        max_redirects: Optional[int] = None,
        max_connections_per_host: Optional[int] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        """Initialize feed fetcher.

        Args:
            timeout: Total request timeout in seconds (default from config)
            user_agent: User-Agent header (default from config)
            max_connections: Connection pool limit (default from config)
            max_redirects: Redirects followed per fetch (default from config)
            max_connections_per_host: Per-host connection limit (default from config)
            session: Externally owned session; when given it is never closed here
        """
        if None in (timeout, user_agent, max_connections, max_redirects, max_connections_per_host):
            fetch_settings = get_settings().fetch
            timeout = timeout or fetch_settings.timeout_seconds
            user_agent = user_agent or fetch_settings.user_agent
            max_connections = max_connections or fetch_settings.max_connections
            if max_redirects is None:
                max_redirects = fetch_settings.max_redirects
            max_connections_per_host = max_connections_per_host or fetch_settings.max_connections_per_host

        self.timeout = timeout
        self.user_agent = user_agent
        self.max_connections = max_connections
        self.max_redirects = max_redirects
        self.max_connections_per_host = max_connections_per_host
        self.logger = get_logger_for_component("feed_fetcher")

        self._session = session
        self._owns_session = False

        self.ssl_context = ssl.create_default_context(cafile=certifi.where())

    def _create_session(self) -> aiohttp.ClientSession:
        connector = aiohttp.TCPConnector(
            ssl=self.ssl_context,
            limit=self.max_connections,
            limit_per_host=self.max_connections_per_host,
            enable_cleanup_closed=True,
        )

        headers = {
            "User-Agent": self.user_agent,
            "Accept": "application/rss+xml, application/atom+xml, application/xml, text/xml, */*",
            "Accept-Encoding": "gzip, deflate",
        }

        return aiohttp.ClientSession(
            connector=connector,
            timeout=aiohttp.ClientTimeout(total=self.timeout),
            headers=headers,
        )

    async def __aenter__(self) -> "FeedFetcher":
        if self._session is None:
            self._session = self._create_session()
            self._owns_session = True
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def close(self) -> None:
        """Close the session if this fetcher created it."""
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None
            self._owns_session = False

    @asynccontextmanager
    async def get_session(self):
        """Yield the shared session, or a temporary one outside ``async with``."""
        if self._session is not None:
            yield self._session
            return

        session = self._create_session()
        try:
            yield session
        finally:
            await session.close()

    async def fetch(
        self,
        url: str,
        etag: Optional[str] = None,
        last_modified: Optional[str] = None,
    ) -> FetchResult:
        """Fetch ``url`` conditionally.

        Args:
            url: Feed URL
            etag: Validator from the previous successful fetch
            last_modified: Validator from the previous successful fetch

        Returns:
            FetchResult for 304 and 2xx responses

        Raises:
            RetryLaterError: 408, 429, 500, 502, 503, 504 (with Retry-After if sent)
            TransientFetchError: Timeouts and connection-level faults
            FatalFetchError: Any other status, unparsable body or unusable request
        """
        headers: Dict[str, str] = {}
        if etag:
            headers["If-None-Match"] = etag
        if last_modified:
            headers["If-Modified-Since"] = last_modified

        self.logger.debug(
            f"Fetching feed: {url}",
            extra={"source_url": url, "conditional": bool(headers)},
        )

        try:
            async with self.get_session() as session:
                async with session.get(
                    url, headers=headers, max_redirects=self.max_redirects
                ) as response:
                    return await self._handle_response(
                        url, response, etag, last_modified
                    )

        except (RetryLaterError, TransientFetchError, FatalFetchError):
            raise
        except asyncio.TimeoutError as e:
            raise TransientFetchError(
                f"Request timeout after {self.timeout}s",
                feed_url=url,
                error_code=ErrorCode.FEED_FETCH_TIMEOUT,
            ) from e
        except (aiohttp.ClientConnectionError, aiohttp.ClientPayloadError) as e:
            raise TransientFetchError(
                f"Network error: {e.__class__.__name__}: {e}", feed_url=url
            ) from e
        except aiohttp.ClientError as e:
            raise FatalFetchError(
                f"Request failed: {e.__class__.__name__}: {e}", feed_url=url
            ) from e
        except OSError as e:
            if e.errno in TRANSIENT_ERRNOS:
                raise TransientFetchError(f"Network error: {e}", feed_url=url) from e
            raise FatalFetchError(f"Request failed: {e}", feed_url=url) from e
        except ValueError as e:
            raise FatalFetchError(
                f"Invalid request: {e}",
                feed_url=url,
                error_code=ErrorCode.FEED_INVALID_URL,
            ) from e

    async def _handle_response(
        self,
        url: str,
        response: aiohttp.ClientResponse,
        etag: Optional[str],
        last_modified: Optional[str],
    ) -> FetchResult:
        status = response.status
        new_etag = response.headers.get("ETag") or etag
        new_last_modified = response.headers.get("Last-Modified") or last_modified

        if status == 304:
            return FetchResult(
                url=url,
                status=status,
                etag=new_etag,
                last_modified=new_last_modified,
                not_modified=True,
            )

        if 200 <= status < 300:
            body = await response.read()
            if not body or not body.strip():
                return FetchResult(
                    url=url,
                    status=status,
                    etag=new_etag,
                    last_modified=new_last_modified,
                )

            feed = self._parse_feed(url, body, response)
            return FetchResult(
                url=url,
                status=status,
                feed=feed,
                etag=new_etag,
                last_modified=new_last_modified,
            )

        if status in RETRY_LATER_STATUSES:
            raise RetryLaterError(
                status,
                retry_after=parse_retry_after(response.headers.get("Retry-After")),
                feed_url=url,
            )

        excerpt = await response.content.read(BODY_EXCERPT_BYTES)
        raise FatalFetchError(
            f"unexpected status {status}",
            feed_url=url,
            status=status,
            body_excerpt=excerpt.decode("utf-8", errors="replace"),
        )

    def _parse_feed(
        self, url: str, body: bytes, response: aiohttp.ClientResponse
    ) -> ParsedFeed:
        response_headers = {
            "content-type": response.headers.get("Content-Type", ""),
            "content-location": str(response.url),
        }
        feed_data = feedparser.parse(io.BytesIO(body), response_headers=response_headers)

        malformed = feed_data.get("bozo") and not isinstance(
            feed_data.get("bozo_exception"), BENIGN_PARSE_WARNINGS
        )
        if not feed_data.entries and (malformed or not feed_data.get("version")):
            reason = feed_data.get("bozo_exception") or "not a recognized feed format"
            raise FatalFetchError(
                f"Feed parse error: {reason}",
                feed_url=url,
                status=response.status,
                body_excerpt=body[:BODY_EXCERPT_BYTES].decode("utf-8", errors="replace"),
                error_code=ErrorCode.FEED_PARSE_ERROR,
            )

        if feed_data.get("bozo"):
            self.logger.debug(
                f"Feed has parse warnings but contains entries: {url}",
                extra={"source_url": url},
            )

        feed_info = feed_data.get("feed", {})
        return ParsedFeed(
            title=(feed_info.get("title") or "").strip(),
            link=feed_info.get("link") or "",
            items=[self._parse_entry(entry) for entry in feed_data.entries],
        )

    def _parse_entry(self, entry: Any) -> FeedItem:
        author = entry.get("author")
        if not author and entry.get("author_detail"):
            author = entry.author_detail.get("name")

        content = ""
        for block in entry.get("content") or []:
            value = block.get("value") if isinstance(block, dict) else None
            if value:
                content = value
                break

        published = _struct_time_to_datetime(
            entry.get("published_parsed") or entry.get("updated_parsed")
        )

        return FeedItem(
            guid=(entry.get("id") or "").strip(),
            link=(entry.get("link") or "").strip(),
            title=entry.get("title") or "",
            author=author or None,
            published_at=published,
            content=content,
            description=entry.get("summary") or "",
        )
