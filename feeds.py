#!/usr/bin/env python3
"""
Feed lifecycle: registration, edits, deletion, timelines and id migration.

A feed is only registered after a successful validation fetch, and its initial
items are stored right away under the new feed's scope.
"""

from dataclasses import replace
from typing import Any, Dict, List, Optional

from config import get_logger
from errors import FeedError, PersistenceError, ValidationError
from fetcher import FeedFetcher
from identity import compose_id, is_composite_id
from models import DatabaseQueue, FeedItem, FeedSource, Scope
from telemetry import trace_span
from utils import utc_now_iso, validate_url

logger = get_logger("feeds")

DEFAULT_PAGE_SIZE = 50


def _require_name(integration_name: Optional[str]) -> str:
    if not integration_name or not integration_name.strip():
        raise ValidationError("Integration name is required")
    return integration_name.strip()


def _clean_alias(integration_alias: Optional[str]) -> Optional[str]:
    if integration_alias is None:
        return None
    return integration_alias.strip() or None


class FeedService:
    def __init__(self, db: DatabaseQueue, fetcher: FeedFetcher):
        self.db = db
        self.fetcher = fetcher

    @trace_span(
        "feeds.add",
        tracer_name="feeds",
        attr_from_args=lambda self, url=None, *a, **k: {"feed.url": url or ""},
    )
    async def add_feed(
        self,
        url: str,
        integration_name: str,
        integration_alias: Optional[str] = None,
        user_id: Optional[str] = None,
        group_id: Optional[str] = None,
    ) -> FeedSource:
        """Validate, fetch and register a feed, storing its current items.

        Raises:
            ValidationError: bad URL, missing name, or not exactly one scope.
            NetworkError / ParseError: the validation fetch failed.
            PersistenceError: the URL is already registered in this scope, or
                the store failed.
        """
        url = (url or "").strip()
        if not validate_url(url):
            raise ValidationError(f"Invalid feed URL: {url or '(empty)'}", details={"url": url})
        integration_name = _require_name(integration_name)
        integration_alias = _clean_alias(integration_alias)
        scope = Scope(user_id=user_id, group_id=group_id)

        fetched = await self.fetcher.fetch_and_parse(url, integration_name, integration_alias)
        if fetched.error:
            raise fetched.error

        try:
            feed = await self.db.execute(
                'create_feed',
                url=url,
                integration_name=integration_name,
                integration_alias=integration_alias,
                title=integration_name,
                user_id=scope.user_id,
                group_id=scope.group_id,
                last_fetched=utc_now_iso(),
            )
        except PersistenceError as e:
            if e.kind == PersistenceError.CONFLICT:
                raise PersistenceError(
                    f"Feed {url} is already registered in {scope}",
                    kind=PersistenceError.CONFLICT,
                    details={"url": url, "cause": e},
                ) from e
            raise

        items = [
            replace(
                item,
                id=compose_id(feed.id, item.id),
                feed_id=feed.id,
                user_id=scope.user_id,
                group_id=scope.group_id,
            )
            for item in fetched.items
        ]
        try:
            stored = await self.db.execute('insert_items_ignore_conflicts', items=items)
        except FeedError:
            logger.error(f"Storing initial items for {url} failed; removing feed {feed.id}")
            try:
                await self.db.execute('delete_feed', feed_id=feed.id)
            except FeedError as cleanup_error:
                logger.error(f"Could not remove feed {feed.id} after failed registration: {cleanup_error.message}")
            raise

        logger.info(f"Registered feed {feed.id} ({integration_name}) for {scope} with {stored} items")
        return feed

    async def update_feed(
        self, feed_id: str, integration_name: str, integration_alias: Optional[str] = None
    ) -> FeedSource:
        """Change a feed's integration name and alias. Stored items keep their labels."""
        integration_name = _require_name(integration_name)
        feed = await self.db.execute(
            'update_feed_integration',
            feed_id=feed_id,
            integration_name=integration_name,
            integration_alias=_clean_alias(integration_alias),
        )
        logger.info(f"Updated feed {feed_id}: {feed.display_name}")
        return feed

    async def delete_feed(self, feed_id: str) -> int:
        """Delete a feed and all of its items; returns how many items went with it."""
        removed = await self.db.execute('delete_feed', feed_id=feed_id)
        logger.info(f"Deleted feed {feed_id} and {removed} items")
        return removed

    async def get_feed(self, feed_id: str) -> Optional[FeedSource]:
        return await self.db.execute('get_feed', feed_id=feed_id)

    async def list_feeds(self, user_id: Optional[str] = None, group_id: Optional[str] = None) -> List[FeedSource]:
        Scope(user_id=user_id, group_id=group_id)
        return await self.db.execute('list_feeds', user_id=user_id, group_id=group_id)

    async def get_feed_items(self, feed_id: str, limit: int = DEFAULT_PAGE_SIZE, offset: int = 0) -> List[FeedItem]:
        return await self.db.execute('query_items', feed_id=feed_id, limit=limit, offset=offset)

    async def get_timeline(
        self,
        user_id: Optional[str] = None,
        group_id: Optional[str] = None,
        limit: int = DEFAULT_PAGE_SIZE,
        offset: int = 0,
    ) -> List[FeedItem]:
        """Items across all feeds of one scope, newest first."""
        Scope(user_id=user_id, group_id=group_id)
        return await self.db.execute(
            'query_items', user_id=user_id, group_id=group_id, limit=limit, offset=offset
        )

    async def integration_counts(self, user_id: Optional[str] = None, group_id: Optional[str] = None) -> Dict[str, int]:
        Scope(user_id=user_id, group_id=group_id)
        return await self.db.execute('integration_counts', user_id=user_id, group_id=group_id)

    @trace_span("feeds.migrate_item_ids", tracer_name="feeds")
    async def migrate_item_ids(self) -> Dict[str, Any]:
        """Rewrite legacy item ids to ``<feed_id>-<original>``.

        Ids that already carry a feed prefix are left alone, as are items whose
        target id is taken. Per-item failures are collected, not raised.
        """
        rows = await self.db.execute('list_items_for_migration')
        migrated = skipped = 0
        errors: List[str] = []

        for item_id, feed_id in rows:
            if is_composite_id(item_id):
                skipped += 1
                continue
            new_id = compose_id(feed_id, item_id)
            try:
                if await self.db.execute('rename_item_id', old_id=item_id, new_id=new_id):
                    migrated += 1
                else:
                    logger.debug(f"Skipping {item_id}: {new_id} already exists")
                    skipped += 1
            except FeedError as e:
                errors.append(f"{item_id}: {e.message}")

        logger.info(f"Item id migration: {migrated} migrated, {skipped} skipped, {len(errors)} errors of {len(rows)}")
        return {"migrated": migrated, "skipped": skipped, "total": len(rows), "errors": errors}
