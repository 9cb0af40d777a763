#!/usr/bin/env python3
"""
Stable item identifiers.

The base identity of an item is its feed-supplied guid/id, else its link, else
``<feed_url>-<title>``. When a discriminator (the owning feed's id) is supplied the
stored identifier is ``<discriminator>-<base>``, so the same upstream entry
subscribed to by two users or groups never collides in the shared items table.
"""

import re
from typing import Optional

from models import RawItem

SEPARATOR = "-"

# Composite ids start with the feed's UUID followed by the separator
COMPOSITE_ID_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}-", re.IGNORECASE
)


def base_identity(raw: RawItem, feed_url: str) -> str:
    guid = (raw.guid or "").strip()
    if guid:
        return guid
    link = (raw.link or "").strip()
    if link:
        return link
    return f"{feed_url}{SEPARATOR}{(raw.title or '').strip()}"


def compose_id(discriminator: Optional[str], base: str) -> str:
    if not discriminator:
        return base
    return f"{discriminator}{SEPARATOR}{base}"


def resolve_id(raw: RawItem, feed_url: str, scope_id: Optional[str] = None) -> str:
    """Deterministic identifier for ``raw``, discriminated by ``scope_id`` when given."""
    return compose_id(scope_id, base_identity(raw, feed_url))


def is_composite_id(item_id: Optional[str]) -> bool:
    return bool(item_id) and COMPOSITE_ID_RE.match(item_id) is not None


def extract_original_id(item_id: str) -> str:
    """Strip a leading ``<uuid>-`` discriminator, if there is one."""
    match = COMPOSITE_ID_RE.match(item_id or "")
    return item_id[match.end():] if match else item_id
