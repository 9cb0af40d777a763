#!/usr/bin/env python3
"""
Deduplicating ingestion of one feed.

An ingest cycle is strictly sequential: fetch the live document, read the ids
already stored for the feed (one projection query, never cached), write only the
difference with insert-or-ignore semantics, then stamp ``last_fetched``. The
timestamp only advances after a successful fetch, so a failed cycle is retried
against the same baseline.
"""

from dataclasses import replace
from typing import List, Optional

from config import get_logger
from errors import FeedError, PersistenceError
from fetcher import FeedFetcher
from models import DatabaseQueue, FeedItem, FeedSource, IngestResult, Scope
from telemetry import trace_span

logger = get_logger("ingest")

ALREADY_PRESENT_NOTE = "Some items already existed"


def _unique_by_id(items: List[FeedItem]) -> List[FeedItem]:
    """First occurrence wins when a document repeats an identifier."""
    seen = set()
    unique = []
    for item in items:
        if item.id not in seen:
            seen.add(item.id)
            unique.append(item)
    return unique


class IngestGate:
    def __init__(self, db: DatabaseQueue, fetcher: FeedFetcher):
        self.db = db
        self.fetcher = fetcher

    async def ingest_feed(self, feed: FeedSource) -> IngestResult:
        return await self.ingest(
            feed.id, feed.url, feed.scope, feed.integration_name, feed.integration_alias
        )

    @trace_span(
        "ingest",
        tracer_name="ingest",
        attr_from_args=lambda self, feed_id=None, feed_url=None, *a, **k: {
            "feed.id": feed_id or "",
            "feed.url": feed_url or "",
        },
    )
    async def ingest(
        self,
        feed_id: str,
        feed_url: str,
        scope: Scope,
        integration_name: str,
        integration_alias: Optional[str] = None,
    ) -> IngestResult:
        """Run one ingest cycle. Never raises; failures land in ``IngestResult.error``."""
        result = IngestResult(feed_id=feed_id, feed_url=feed_url)

        fetched = await self.fetcher.fetch_and_parse(
            feed_url, integration_name, integration_alias, scope_id=feed_id
        )
        if fetched.error:
            logger.warning(f"Feed {feed_id} ({feed_url}) not fetched: {fetched.error.message}")
            result.error = fetched.error
            return result

        items = [
            replace(item, feed_id=feed_id, user_id=scope.user_id, group_id=scope.group_id)
            for item in _unique_by_id(fetched.items)
        ]
        result.total_item_count = len(items)

        try:
            existing_ids = await self.db.execute('get_item_ids', feed_id=feed_id)
            new_items = [item for item in items if item.id not in existing_ids]

            if new_items:
                try:
                    written = await self.db.execute('insert_items_ignore_conflicts', items=new_items)
                except PersistenceError as e:
                    written = await self._settle_rejected_write(feed_id, new_items, e)
                    result.note = ALREADY_PRESENT_NOTE
                result.new_item_count = written
                result.new_items = new_items

            await self.db.execute('update_last_fetched', feed_id=feed_id)
        except FeedError as e:
            logger.error(f"Feed {feed_id} ({feed_url}) not persisted [{e.code}]: {e.message}")
            result.error = e
            result.new_item_count = 0
            result.new_items = []
            return result
        except Exception as e:
            logger.error(f"Unexpected error persisting feed {feed_id}: {e}")
            result.error = PersistenceError(f"Unexpected error: {e}", details={"cause": e})
            result.new_item_count = 0
            result.new_items = []
            return result

        if result.new_item_count:
            logger.info(f"Feed {feed_id}: {result.new_item_count} new of {result.total_item_count} items")
        else:
            logger.debug(f"Feed {feed_id}: no new items ({result.total_item_count} fetched)")
        return result

    async def _settle_rejected_write(
        self, feed_id: str, attempted: List[FeedItem], error: PersistenceError
    ) -> int:
        """Decide whether a rejected batch write is benign.

        A conflict or policy rejection is a soft success when every attempted id
        turns out to be stored already (a concurrent writer won the race).
        Anything else is re-raised.
        """
        if not error.is_benign_candidate:
            raise error
        stored = await self.db.execute('get_item_ids', feed_id=feed_id)
        missing = [item.id for item in attempted if item.id not in stored]
        if missing:
            raise error
        logger.warning(
            f"Write for feed {feed_id} rejected ({error.kind}) but all {len(attempted)} items already exist"
        )
        return 0
