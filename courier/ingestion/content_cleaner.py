"""
Content Cleaner
===============

Reduces an HTML fragment from a feed to bounded plain text for indexing.

- ``script`` and ``style`` content is dropped, comments and doctypes ignored
- entering or leaving a block-level element separates words with one space;
  inline elements join their text directly (``Hello <b>world</b>!``)
- whitespace runs collapse, stray spaces before punctuation are removed
- output is cut to a maximum number of characters
"""

import html
import re
from typing import List, Optional

from bs4 import BeautifulSoup, NavigableString, Tag
from bs4.builder import ParserRejectedMarkup
from bs4.element import CData, Comment, Declaration, Doctype, ProcessingInstruction

from ..utils.logging import get_logger_for_component

DEFAULT_MAX_LENGTH = 2048

_SPACE_BEFORE_PUNCTUATION = re.compile(r" ([!?,.;:])")

_IGNORED_STRINGS = (Comment, Declaration, Doctype, ProcessingInstruction, CData)


class ContentCleaner:
    """HTML to plain-text reducer used for entry content."""

    SKIPPED_ELEMENTS = frozenset({"script", "style"})

    BLOCK_ELEMENTS = frozenset({
        "address", "article", "aside", "blockquote", "br", "div", "dl", "dt",
        "dd", "fieldset", "figcaption", "figure", "footer", "form",
        "h1", "h2", "h3", "h4", "h5", "h6", "header", "hr", "li", "main",
        "nav", "ol", "p", "pre", "section", "table", "tbody", "td", "tfoot",
        "th", "thead", "tr", "ul",
    })

    def __init__(self, default_max_length: int = DEFAULT_MAX_LENGTH):
        self.default_max_length = default_max_length
        self.logger = get_logger_for_component("content_cleaner")

    def clean(self, fragment: Optional[str], max_length: int = 0) -> str:
        """Return sanitized text of ``fragment`` of at most ``max_length`` characters.

        Args:
            fragment: HTML fragment, may be empty or None
            max_length: Character limit; values <= 0 use the default

        Returns:
            Plain text, possibly empty
        """
        if max_length <= 0:
            max_length = self.default_max_length
        if not fragment:
            return ""

        try:
            soup = BeautifulSoup(fragment, "html.parser")
            text = self._extract_text(soup)
        except (ParserRejectedMarkup, RecursionError) as e:
            self.logger.debug(f"HTML parse failed, using raw text fallback: {e}")
            text = html.unescape(fragment)

        text = " ".join(text.split())
        text = _SPACE_BEFORE_PUNCTUATION.sub(r"\1", text)
        return self._truncate(text, max_length)

    def _extract_text(self, soup: BeautifulSoup) -> str:
        pieces: List[str] = []
        # (node, leaving) pairs; walked iteratively so deep nesting is safe
        stack = [(child, False) for child in reversed(soup.contents)]

        while stack:
            node, leaving = stack.pop()

            if isinstance(node, NavigableString):
                if isinstance(node, _IGNORED_STRINGS):
                    continue
                # Feeds often double-escape entities; decode once more
                pieces.append(html.unescape(str(node)))
                continue

            if not isinstance(node, Tag):
                continue

            name = (node.name or "").lower()
            if name in self.SKIPPED_ELEMENTS:
                continue

            is_block = name in self.BLOCK_ELEMENTS
            if leaving:
                if is_block:
                    pieces.append(" ")
                continue

            if is_block:
                pieces.append(" ")
            stack.append((node, True))
            stack.extend((child, False) for child in reversed(node.contents))

        return "".join(pieces)

    @staticmethod
    def _truncate(text: str, max_length: int) -> str:
        if len(text) <= max_length:
            return text
        cut = text[:max_length]
        return cut.rstrip() or cut


_default_cleaner: Optional[ContentCleaner] = None


def clean_html(fragment: Optional[str], max_length: int = 0) -> str:
    """Module-level shortcut for :meth:`ContentCleaner.clean`."""
    global _default_cleaner

    if _default_cleaner is None:
        _default_cleaner = ContentCleaner()

    return _default_cleaner.clean(fragment, max_length)
