#!/usr/bin/env python3
"""
HTML to plain text conversion for feed-supplied markup.

Feed titles, descriptions and content arrive as arbitrary (often malformed) HTML.
Before anything is stored it is reduced to readable plain text:

- every list item becomes a line starting with a bullet ("• "), for ordered and
  unordered lists alike
- block elements (paragraphs, divs, headings, list containers, <br>) end a line
- script/style bodies are dropped and every remaining tag is stripped
- entities are decoded (BeautifulSoup knows the full HTML5 table)
- runs of spaces/tabs collapse to one space, at most one blank line is kept
  between paragraphs, and the result is trimmed
"""

import html
import re
import warnings
from typing import Optional

from bs4 import BeautifulSoup, MarkupResemblesLocatorWarning

from config import get_logger

logger = get_logger("sanitizer")

# Titles that are bare URLs would otherwise trigger a warning per item
warnings.filterwarnings("ignore", category=MarkupResemblesLocatorWarning)

BULLET = "• "
ELLIPSIS = "..."

BLOCK_TAGS = [
    "p", "div", "h1", "h2", "h3", "h4", "h5", "h6",
    "ul", "ol", "blockquote", "pre", "tr", "table",
    "section", "article", "header", "footer",
]
DROP_TAGS = ["script", "style", "noscript", "template"]

_TAG_RE = re.compile(r"<[^>]*>")
_TAG_SHAPE_RE = re.compile(r"<[a-zA-Z/!][^>]*>")
MAX_PASSES = 4
_SPACES_RE = re.compile(r"[ \t\f\v]+")
_LINE_EDGE_RE = re.compile(r" *\n *")
_BLANK_LINES_RE = re.compile(r"\n{3,}")


def _normalize_whitespace(text: str) -> str:
    text = text.replace("\r\n", "\n").replace("\r", "\n").replace("\xa0", " ")
    text = _SPACES_RE.sub(" ", text)
    text = _LINE_EDGE_RE.sub("\n", text)
    text = _BLANK_LINES_RE.sub("\n\n", text)
    return text.strip()


def _markup_to_text(raw_markup: str) -> str:
    soup = BeautifulSoup(raw_markup, "html.parser")

    for tag in soup(DROP_TAGS):
        tag.decompose()

    for br in soup.find_all("br"):
        br.replace_with("\n")

    for li in soup.find_all("li"):
        li.insert(0, BULLET)
        li.append("\n")

    for tag in soup.find_all(BLOCK_TAGS):
        tag.append("\n")

    return soup.get_text()


def sanitize_html_to_text(raw_markup: Optional[str]) -> str:
    """Convert an HTML/XML fragment into plain text.

    Never raises and never returns None: empty input yields "", and markup the
    parser cannot cope with degrades to a regex tag strip.
    """
    if not raw_markup:
        return ""
    if not isinstance(raw_markup, str):
        raw_markup = str(raw_markup)

    if "<" not in raw_markup and "&" not in raw_markup:
        return _normalize_whitespace(raw_markup)

    try:
        text = _markup_to_text(raw_markup)
        passes = 1
        # Stripping can splice fragments into new tags, e.g. "<<b>b>"
        while _TAG_SHAPE_RE.search(text) and passes < MAX_PASSES:
            text = _markup_to_text(text)
            passes += 1
    except Exception as e:
        logger.warning(f"Falling back to tag stripping for unparseable markup: {e}")
        text = html.unescape(_TAG_RE.sub("", raw_markup))
    while _TAG_SHAPE_RE.search(text):
        text = _TAG_SHAPE_RE.sub("", text)
    return _normalize_whitespace(text)


def truncate_text(text: Optional[str], max_length: int) -> str:
    """Sanitize ``text`` and cut it to ``max_length`` characters plus an ellipsis.

    The ellipsis is appended after the cut, so the result is at most
    ``max_length + 3`` characters long.
    """
    sanitized = sanitize_html_to_text(text)
    try:
        limit = max(int(max_length), 0)
    except (TypeError, ValueError):
        limit = 0
    if len(sanitized) <= limit:
        return sanitized
    return sanitized[:limit].rstrip() + ELLIPSIS


def sanitize_and_truncate(raw_markup: Optional[str], max_length: int) -> str:
    return truncate_text(raw_markup, max_length)
