"""
Entry derivation: turns a parsed feed item into normalized upsert values.
"""

from datetime import datetime
from typing import Optional

from ..database.models import UpsertEntryParams, utc_now
from ..utils.exceptions import ContentValidationError
from .content_cleaner import clean_html
from .feed_fetcher import FeedItem
from .fingerprint import hash_content
from .url_canon import normalize

DEFAULT_TEXT_LENGTH = 2000


def build_entry_params(
    source_id: str,
    item: FeedItem,
    max_text_length: int = DEFAULT_TEXT_LENGTH,
    retrieved_at: Optional[datetime] = None,
) -> UpsertEntryParams:
    """Derive canonical URL, sanitized text and fingerprint for one item.

    Raises:
        ContentValidationError: If the item has neither a GUID nor a link
    """
    guid = (item.guid or "").strip() or None
    url = normalize(item.link)
    if not guid and not url:
        raise ContentValidationError(
            "feed item has neither guid nor link",
            content_type="feed_item",
            context={"source_id": source_id, "title": item.title[:100]},
        )

    title = (item.title or "").strip()
    content_html = item.content or item.description or None

    text = clean_html(content_html, max_text_length)
    if not text and item.description:
        text = clean_html(item.description, max_text_length)

    author = (item.author or "").strip() or None

    return UpsertEntryParams(
        source_id=source_id,
        guid=guid,
        url=url,
        title=title,
        author=author,
        content_html=content_html,
        content_text=text,
        published_at=item.published_at,
        retrieved_at=retrieved_at or utc_now(),
        content_hash=hash_content(source_id, guid or "", url, title, text),
    )
