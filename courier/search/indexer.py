"""
Search Indexer
==============

Meilisearch client over aiohttp. Only the calls ingestion needs are
implemented: index bootstrap, health, and document upserts. Upserts are
enqueued by the engine; a 2xx answer means the batch was accepted.
"""

import asyncio
from typing import Any, Dict, List, Optional, Sequence

import aiohttp

from ..config.settings import get_settings
from ..database.models import Document
from ..utils.logging import get_logger_for_component
from ..utils.exceptions import SearchIndexError, ErrorCode

SEARCHABLE_ATTRIBUTES = ["title", "content_text"]
FILTERABLE_ATTRIBUTES = ["source_id", "published_at"]
PRIMARY_KEY = "id"


class SearchIndexer:
    """Document indexer backed by a Meilisearch index."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        index_uid: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        """Initialize search indexer.

        Args:
            base_url: Search engine URL (default from config)
            index_uid: Index uid (default from config)
            api_key: Bearer API key (default from config)
            timeout: Per-request timeout in seconds (default from config)
            session: Externally owned session; when given it is never closed here
        """
        if base_url is None or index_uid is None or timeout is None:
            search_settings = get_settings().search
            base_url = base_url or search_settings.url
            index_uid = index_uid or search_settings.index
            api_key = api_key if api_key is not None else search_settings.api_key
            timeout = timeout or search_settings.timeout_seconds

        self.base_url = base_url.rstrip("/")
        self.index_uid = index_uid
        self.api_key = api_key
        self.timeout = timeout
        self.logger = get_logger_for_component("search_indexer")

        self._session = session
        self._owns_session = False

    async def __aenter__(self) -> "SearchIndexer":
        self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            headers = {"Content-Type": "application/json"}
            if self.api_key:
                headers["Authorization"] = f"Bearer {self.api_key}"
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout),
                headers=headers,
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None
            self._owns_session = False

    async def _request(
        self,
        method: str,
        path: str,
        payload: Any = None,
        params: Optional[Dict[str, str]] = None,
    ) -> Any:
        session = self._ensure_session()
        url = f"{self.base_url}{path}"

        try:
            async with session.request(method, url, json=payload, params=params) as response:
                try:
                    body = await response.json(content_type=None)
                except ValueError:
                    body = None

                if response.status >= 400:
                    code = body.get("code") if isinstance(body, dict) else None
                    message = body.get("message") if isinstance(body, dict) else None
                    raise SearchIndexError(
                        f"{method} {path} returned {response.status}: {message or code or 'no details'}",
                        index_uid=self.index_uid,
                        status=response.status,
                        error_code=ErrorCode.INDEX_REJECTED,
                        context={"meili_code": code},
                        recoverable=response.status >= 500,
                    )
                return body

        except SearchIndexError:
            raise
        except asyncio.TimeoutError as e:
            raise SearchIndexError(
                f"{method} {path} timed out after {self.timeout}s",
                index_uid=self.index_uid,
            ) from e
        except aiohttp.ClientError as e:
            raise SearchIndexError(
                f"{method} {path} failed: {e.__class__.__name__}: {e}",
                index_uid=self.index_uid,
            ) from e

    async def health(self) -> bool:
        """Return True when the engine reports itself available.

        Raises:
            SearchIndexError: If the engine cannot be reached
        """
        body = await self._request("GET", "/health")
        return isinstance(body, dict) and body.get("status") == "available"

    async def ensure_index(self) -> None:
        """Create the index if missing and apply its attribute settings."""
        try:
            await self._request("GET", f"/indexes/{self.index_uid}")
        except SearchIndexError as e:
            if e.context.get("meili_code") != "index_not_found":
                raise
            self.logger.info(f"Creating search index {self.index_uid}")
            await self._request(
                "POST",
                "/indexes",
                {"uid": self.index_uid, "primaryKey": PRIMARY_KEY},
            )

        await self._request(
            "PATCH",
            f"/indexes/{self.index_uid}/settings",
            {
                "searchableAttributes": SEARCHABLE_ATTRIBUTES,
                "filterableAttributes": FILTERABLE_ATTRIBUTES,
            },
        )
        self.logger.info(f"Search index {self.index_uid} ready")

    async def upsert_documents(self, documents: Sequence[Document]) -> None:
        if not documents:
            return
        await self._request(
            "PUT",
            f"/indexes/{self.index_uid}/documents",
            [document.to_index_payload() for document in documents],
            params={"primaryKey": PRIMARY_KEY},
        )

    async def upsert_batch(self, documents: List[Document]) -> None:
        """Upsert a batch of documents in one request."""
        if not documents:
            return
        self.logger.info(
            "Upserting document batch",
            extra={"index": self.index_uid, "batch_size": len(documents)},
        )
        await self.upsert_documents(documents)

    async def upsert_one(self, document: Document) -> None:
        """Upsert a single document."""
        await self.upsert_documents([document])
