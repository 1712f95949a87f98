"""
PyTest Configuration and Fixtures
=================================

Shared fixtures for Courier tests: temporary SQLite databases, sample
feeds, and fake aiohttp sessions for the HTTP clients.
"""

import pytest
import os
import sys
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional

# Add project root to Python path
sys.path.insert(0, str(Path(__file__).parent.parent))

# Set test environment variables before any imports
_TEST_DIR = Path(tempfile.gettempdir()) / "courier_tests"
os.environ["COURIER_DATABASE__PATH"] = str(_TEST_DIR / "courier_test.db")
os.environ["COURIER_LOGGING__FILE_PATH"] = ""
os.environ["COURIER_SEARCH__URL"] = "http://search.test:7700"


@pytest.fixture(autouse=True)
def reset_settings():
    """Drop the cached settings singleton between tests."""
    from courier.config import settings as settings_module

    settings_module._settings = None
    yield
    settings_module._settings = None


# ============================================================================
# Database Fixtures
# ============================================================================


@pytest.fixture
def test_database(tmp_path):
    """Temporary database file with the schema created."""
    from courier.database.schema import DatabaseSchema

    db_path = tmp_path / "courier_test.db"
    DatabaseSchema(str(db_path)).create_tables()
    return str(db_path)


@pytest.fixture
def db_connection(test_database):
    """Create a database connection manager for testing."""
    from courier.database.connection import DatabaseConnection

    connection = DatabaseConnection(test_database, pool_size=2)
    yield connection

    connection.close_all_connections()


@pytest.fixture
def feed_repository(db_connection):
    from courier.storage.feed_repository import FeedRepository

    return FeedRepository(db_connection)


# ============================================================================
# Sample Feeds
# ============================================================================


SAMPLE_RSS_FEED = """<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0">
    <channel>
        <title>Test RSS Feed</title>
        <link>http://example.com</link>
        <description>Test feed for unit testing</description>
        <item>
            <title>Test Article 1</title>
            <link>http://www.example.com/article1/?utm_source=rss</link>
            <description>This is a test article summary with &lt;strong&gt;HTML&lt;/strong&gt;</description>
            <pubDate>Thu, 05 Sep 2024 12:00:00 GMT</pubDate>
            <guid>article-1-guid</guid>
            <author>test@example.com</author>
        </item>
        <item>
            <title>Test Article 2</title>
            <link>http://example.com/article2</link>
            <description>Another test article with some content</description>
            <pubDate>Wed, 04 Sep 2024 15:30:00 GMT</pubDate>
        </item>
    </channel>
</rss>"""

SAMPLE_ATOM_FEED = """<?xml version="1.0" encoding="UTF-8"?>
<feed xmlns="http://www.w3.org/2005/Atom">
    <title>Test Atom Feed</title>
    <link href="http://example.com"/>
    <id>http://example.com/feed</id>
    <updated>2024-09-07T00:00:01Z</updated>
    <entry>
        <title>Atom Test Article</title>
        <link href="http://example.com/atom-article"/>
        <id>urn:uuid:atom-article-1</id>
        <updated>2024-09-05T12:00:00Z</updated>
        <published>2024-09-05T12:00:00Z</published>
        <summary>This is an Atom article summary</summary>
        <content type="html">&lt;p&gt;Full content with &lt;em&gt;formatting&lt;/em&gt;&lt;/p&gt;</content>
        <author>
            <name>Atom Author</name>
        </author>
    </entry>
</feed>"""

EMPTY_RSS_FEED = """<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0">
    <channel>
        <title>Quiet Feed</title>
        <link>http://quiet.example.com</link>
        <description>No items yet</description>
    </channel>
</rss>"""


@pytest.fixture
def sample_rss_feed():
    return SAMPLE_RSS_FEED


@pytest.fixture
def sample_atom_feed():
    return SAMPLE_ATOM_FEED


@pytest.fixture
def empty_rss_feed():
    return EMPTY_RSS_FEED


# ============================================================================
# Fake aiohttp session
# ============================================================================


class FakeStream:
    def __init__(self, body: bytes):
        self._body = body

    async def read(self, n: int = -1) -> bytes:
        return self._body if n < 0 else self._body[:n]


class FakeResponse:
    """Subset of aiohttp.ClientResponse used by the clients."""

    def __init__(
        self,
        status: int = 200,
        body: Any = b"",
        headers: Optional[Dict[str, str]] = None,
        url: str = "http://example.com/feed.xml",
        json_body: Any = None,
    ):
        if isinstance(body, str):
            body = body.encode("utf-8")
        self.status = status
        self._body = body
        self.headers = headers or {}
        self.url = url
        self.content = FakeStream(body)
        self._json_body = json_body

    async def read(self) -> bytes:
        return self._body

    async def json(self, content_type=None):
        if self._json_body is None:
            raise ValueError("no json body")
        return self._json_body


class FakeRequestContext:
    def __init__(self, outcome):
        self._outcome = outcome

    async def __aenter__(self):
        if isinstance(self._outcome, BaseException):
            raise self._outcome
        return self._outcome

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return False


class FakeSession:
    """Records requests and replays queued responses or exceptions."""

    def __init__(self, *outcomes):
        self.outcomes: List[Any] = list(outcomes)
        self.requests: List[Dict[str, Any]] = []
        self.closed = False

    def _next(self):
        if not self.outcomes:
            raise AssertionError("unexpected request")
        return self.outcomes.pop(0)

    def get(self, url, headers=None, **kwargs):
        self.requests.append({"method": "GET", "url": url, "headers": headers or {}, **kwargs})
        return FakeRequestContext(self._next())

    def request(self, method, url, json=None, params=None, **kwargs):
        self.requests.append(
            {"method": method, "url": url, "json": json, "params": params, **kwargs}
        )
        return FakeRequestContext(self._next())

    async def close(self):
        self.closed = True


@pytest.fixture
def fake_session_factory():
    return FakeSession


@pytest.fixture
def fake_response_factory():
    return FakeResponse
