"""
Document normalization.

Turns raw message bodies (HTML or plain text) into indexable plain text:
markup stripped, whitespace collapsed, NUL bytes and surrogates removed,
length capped.
"""
import logging
import re
from typing import Optional

from bs4 import BeautifulSoup

from mailsearch.core.search.models import (
    BODY_MAX_CHARS,
    SNIPPET_MAX_CHARS,
    RawMessage,
    SearchDocument,
)

logger = logging.getLogger(__name__)

_TAG_RE = re.compile(r"<\s*/?\s*[a-zA-Z!][^>]*>")
_WHITESPACE_RE = re.compile(r"\s+")


def looks_like_html(text: str) -> bool:
    return bool(_TAG_RE.search(text))


def sanitize_text(text: Optional[str]) -> str:
    """
    Remove NUL bytes and UTF-8 surrogates.

    PostgreSQL text fields cannot contain NUL (0x00) characters, and
    surrogates cannot be encoded as valid UTF-8.
    """
    if not text:
        return ""
    sanitized = text.replace('\x00', '')
    try:
        sanitized.encode('utf-8', errors='strict')
    except UnicodeEncodeError:
        sanitized = sanitized.encode('utf-8', errors='replace').decode('utf-8', errors='replace')
    return sanitized


def strip_markup(html: str) -> str:
    """Visible text of an HTML fragment (scripts, styles and tracking pixels dropped)."""
    soup = BeautifulSoup(html, 'html.parser')

    for tag in soup(["script", "style", "head", "title"]):
        tag.decompose()

    for tag in soup.find_all(['img'], {'width': '1', 'height': '1'}):
        tag.decompose()

    return soup.get_text(separator=" ")


def collapse_whitespace(text: str) -> str:
    return _WHITESPACE_RE.sub(" ", text).strip()


def truncate(text: str, max_length: int) -> str:
    if len(text) <= max_length:
        return text
    return text[:max_length].rstrip()


class DocumentNormalizer:
    """
    Builds SearchDocuments from raw message content.

    The same cleaning is applied to embedding input, with a provider-specific
    length cap.
    """

    def __init__(self, body_max_chars: int = BODY_MAX_CHARS, snippet_max_chars: int = SNIPPET_MAX_CHARS):
        self.body_max_chars = body_max_chars
        self.snippet_max_chars = snippet_max_chars

    def normalize_text(self, raw: Optional[str], max_length: Optional[int] = None) -> str:
        """Strip markup, normalize whitespace, truncate."""
        text = sanitize_text(raw)
        if not text:
            return ""

        if looks_like_html(text):
            try:
                text = strip_markup(text)
            except Exception as e:
                # Malformed markup: fall back to a regex tag strip
                logger.warning(f"HTML parsing failed, stripping tags with regex: {e}")
                text = _TAG_RE.sub(" ", text)

        text = collapse_whitespace(text)
        return truncate(text, max_length if max_length is not None else self.body_max_chars)

    def make_snippet(self, body_text: str) -> str:
        return truncate(body_text, self.snippet_max_chars)

    def build_document(self, message_id: str, raw: RawMessage) -> SearchDocument:
        """Create the indexable document for one raw message."""
        body_text = self.normalize_text(raw.body_html_or_text)

        if raw.snippet:
            snippet = self.normalize_text(raw.snippet, self.snippet_max_chars)
        else:
            snippet = self.make_snippet(body_text)

        return SearchDocument(
            id=message_id,
            subject=collapse_whitespace(sanitize_text(raw.subject)),
            sender_name=collapse_whitespace(sanitize_text(raw.sender_name)),
            sender_email=sanitize_text(raw.sender_email).strip(),
            snippet=snippet,
            body_text=body_text,
            received_at=raw.received_at,
            status=raw.status or "inbox",
        )
