#!/usr/bin/env python3
"""
RSS/Atom document parsing.

Turns a raw feed document into an ordered list of ``RawItem`` records using
feedparser. The document must be well-formed: when feedparser's strict XML pass
fails (it would otherwise fall back to its lenient parser and return whatever it
could salvage) a ``ParseError`` is raised instead of yielding a partial list.
"""

from calendar import timegm
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from io import BytesIO
from time import struct_time
from typing import Any, List, Optional, Union
from xml.sax import SAXException

import feedparser

from config import get_logger
from errors import ParseError
from models import RawItem
from telemetry import trace_span

logger = get_logger("feed_document")

UNTITLED = "Untitled"

FEEDPARSER_OPTIONS = {
    'sanitize_html': True,
    'resolve_relative_uris': True,
}

# Text handed over already decoded (e.g. from a JSON relay) is re-encoded as UTF-8
DECODED_TEXT_HEADERS = {'content-type': 'application/xml; charset=utf-8'}

# RSS pubDate surfaces as "published"; Atom has published and updated
DATE_FIELDS = ('published', 'updated', 'created')


def _entry_value(entry, field: str) -> Any:
    """Fetch a feedparser entry field, tolerating absent keys."""
    try:
        return entry.get(field)
    except (KeyError, AttributeError):
        return None


def _struct_to_iso(value: Any) -> Optional[str]:
    if not isinstance(value, (struct_time, tuple)):
        return None
    try:
        return datetime.fromtimestamp(timegm(tuple(value)), tz=timezone.utc).isoformat()
    except (OverflowError, ValueError, OSError, TypeError):
        return None


def parse_date_to_iso(value: Optional[str]) -> Optional[str]:
    """Parse a feed date string into an ISO 8601 UTC timestamp, or None.

    Tries feedparser's date handlers first (RFC 822, W3C-DTF, and many
    malformed variants), then email.utils, then ISO 8601.
    """
    if not value or not value.strip():
        return None
    value = value.strip()

    try:
        iso = _struct_to_iso(feedparser._parse_date(value))
        if iso:
            return iso
    except (ValueError, TypeError, AttributeError, OverflowError, OSError):
        pass

    try:
        dt = parsedate_to_datetime(value)
        if dt:
            if dt.tzinfo is None:
                dt = dt.replace(tzinfo=timezone.utc)
            return dt.astimezone(timezone.utc).isoformat()
    except (TypeError, ValueError, OverflowError):
        pass

    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.astimezone(timezone.utc).isoformat()
    except ValueError:
        logger.debug(f"Unparseable feed date '{value}'")
    return None


def _entry_date(entry) -> Optional[str]:
    """First usable date among the entry's date fields, parsed struct before raw string."""
    for field in DATE_FIELDS:
        iso = _struct_to_iso(_entry_value(entry, f"{field}_parsed"))
        if iso:
            return iso
        raw = _entry_value(entry, field)
        if isinstance(raw, str):
            iso = parse_date_to_iso(raw)
            if iso:
                return iso
    return None


def _entry_link(entry) -> str:
    """The alternate link feedparser picked, else the first link with an href."""
    link = _entry_value(entry, 'link')
    if link:
        return link.strip()
    for candidate in _entry_value(entry, 'links') or []:
        href = candidate.get('href')
        if href:
            return href.strip()
    return ""


def _entry_content(entry) -> str:
    """Full content (content:encoded, Atom <content>) when the entry carries it."""
    for content_item in _entry_value(entry, 'content') or []:
        value = content_item.get('value')
        if value:
            return value.strip()
    return ""


def _parse_entry(entry, now_iso: str) -> RawItem:
    guid = (_entry_value(entry, 'id') or "").strip()
    return RawItem(
        title=(_entry_value(entry, 'title') or "").strip() or UNTITLED,
        link=_entry_link(entry),
        description=(_entry_value(entry, 'summary') or "").strip(),
        content=_entry_content(entry),
        published=_entry_date(entry) or now_iso,
        guid=guid or None,
    )


def _raise_if_unusable(feed) -> None:
    """Reject documents feedparser could only salvage, or that are not feeds."""
    if feed.get('bozo'):
        cause = feed.get('bozo_exception')
        if isinstance(cause, SAXException):
            raise ParseError(f"Invalid XML format: {cause}", details={"cause": cause})
        # Encoding overrides and undeclared namespaces are recoverable
        logger.warning(f"Feed parsed with warnings: {cause}")
    if not feed.get('version'):
        raise ParseError("Document is not an RSS or Atom feed")


@trace_span(
    "parse_feed_document",
    tracer_name="feed_document",
    attr_from_args=lambda document: {"feed.document.size": len(document or "")},
)
def parse_feed_document(document: Union[str, bytes]) -> List[RawItem]:
    """Parse RSS or Atom into RawItems, preserving document order.

    Bytes are decoded by feedparser from the BOM or XML declaration; text is
    treated as UTF-8.

    Raises:
        ParseError: when the document is empty, not well-formed XML, or a
            well-formed document that is not a feed.
    """
    if not isinstance(document, (str, bytes)) or not document.strip():
        raise ParseError("Empty feed document")

    headers = None
    if isinstance(document, str):
        document = document.encode("utf-8")
        headers = DECODED_TEXT_HEADERS

    # A file-like source keeps feedparser from treating the input as a path or URL
    try:
        feed = feedparser.parse(BytesIO(document), response_headers=headers, **FEEDPARSER_OPTIONS)
    except (ValueError, TypeError, LookupError) as e:
        raise ParseError(f"Unreadable feed document: {e}", details={"cause": e}) from e

    _raise_if_unusable(feed)

    now_iso = datetime.now(timezone.utc).isoformat()
    items = [_parse_entry(entry, now_iso) for entry in feed.get('entries') or []]
    logger.debug("Parsed %d entries (%s)", len(items), feed.get('version'))
    return items
