#!/usr/bin/env python3
"""
Changelog aggregator command line.

Registers feeds, runs manual refreshes (one feed, a user's personal feeds, a
group's feeds, or all), watches a single feed on a timer, shows timelines and
runs the daily scheduler.

Personal-scope commands act for CURRENT_USER_ID; pass --group to act on a group.
"""

import argparse
import asyncio
import sys
from typing import Optional

from config import config, get_logger
from errors import FeedError, ValidationError
from feeds import FeedService
from fetcher import FeedFetcher
from ingest import IngestGate
from models import BatchSummary, DatabaseQueue, FeedItem, FeedSource
from scheduler import UpdateScheduler
from telemetry import init_telemetry, trace_span
from sanitizer import truncate_text

logger = get_logger("main")
init_telemetry("changelog-aggregator")

SNIPPET_LENGTH = 120


class ChangelogAggregator:
    """Wires the store, fetcher, ingest gate, scheduler and feed service together."""

    def __init__(self, db_path: Optional[str] = None):
        self.db = DatabaseQueue(db_path or config.DATABASE_PATH)
        self.fetcher = FeedFetcher()
        self.gate = IngestGate(self.db, self.fetcher)
        self.scheduler = UpdateScheduler(self.db, self.gate)
        self.feeds = FeedService(self.db, self.fetcher)

    async def __aenter__(self) -> "ChangelogAggregator":
        await self.db.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.scheduler.cancel_all_watches()
        await self.scheduler.wait_for_inflight()
        await self.fetcher.close()
        await self.db.stop()


def _scope_args(args) -> dict:
    if getattr(args, 'group', None):
        return {'group_id': args.group}
    if not config.CURRENT_USER_ID:
        raise ValidationError("CURRENT_USER_ID is not set; pass --group or configure a user")
    return {'user_id': config.CURRENT_USER_ID}


def print_feed(feed: FeedSource) -> None:
    alias = f" ({feed.integration_alias})" if feed.integration_alias else ""
    print(f"📡 {feed.id}  {feed.integration_name}{alias}")
    print(f"   {feed.url}")
    print(f"   last fetched: {feed.last_fetched or 'never'}")


def print_item(item: FeedItem) -> None:
    label = item.integration_alias or item.integration_name
    print(f"• [{label}] {item.title}  ({item.pub_date})")
    if item.link:
        print(f"   {item.link}")
    if item.content_snippet:
        print(f"   {truncate_text(item.content_snippet, SNIPPET_LENGTH)}")


def print_summary(summary: BatchSummary) -> None:
    print(f"\n🔄 {summary.feeds_succeeded}/{summary.feeds_attempted} feeds updated, "
          f"{summary.total_new_items} new items")
    for result in summary.per_feed_results:
        if result.succeeded:
            note = f" - {result.note}" if result.note else ""
            print(f"   ✅ {result.feed_id}: {result.new_item_count} new of {result.total_item_count}{note}")
        else:
            print(f"   ❌ {result.feed_id}: [{result.error.code}] {result.error.message}")


async def cmd_add(app: ChangelogAggregator, args) -> int:
    feed = await app.feeds.add_feed(args.url, args.name, args.alias, **_scope_args(args))
    count = await app.db.execute('count_items', feed_id=feed.id)
    print(f"✅ Added feed with {count} items")
    print_feed(feed)
    return 0


async def cmd_list(app: ChangelogAggregator, args) -> int:
    scope = _scope_args(args)
    feeds = await app.feeds.list_feeds(**scope)
    if not feeds:
        print("No feeds registered")
        return 0
    for feed in feeds:
        print_feed(feed)
    counts = await app.feeds.integration_counts(**scope)
    if counts:
        print("\n📊 Items per integration:")
        for name, total in counts.items():
            print(f"   {name}: {total}")
    return 0


async def cmd_edit(app: ChangelogAggregator, args) -> int:
    feed = await app.feeds.update_feed(args.feed_id, args.name, args.alias)
    print("✅ Feed updated")
    print_feed(feed)
    return 0


async def cmd_delete(app: ChangelogAggregator, args) -> int:
    removed = await app.feeds.delete_feed(args.feed_id)
    print(f"🗑️ Deleted feed {args.feed_id} ({removed} items)")
    return 0


async def cmd_refresh(app: ChangelogAggregator, args) -> int:
    if args.feed:
        outcome = await app.scheduler.manual_refresh(feed_id=args.feed)
    elif args.all:
        outcome = await app.scheduler.manual_refresh()
    else:
        outcome = await app.scheduler.manual_refresh(**_scope_args(args))
    print(("✅ " if outcome['success'] else "❌ ") + outcome['message'])
    print_summary(outcome['summary'])
    return 0 if outcome['success'] else 1


async def cmd_watch(app: ChangelogAggregator, args) -> int:
    watch = app.scheduler.watch_feed(args.feed_id, interval_minutes=args.interval)
    print(f"👀 Watching {args.feed_id}; press Ctrl+C to stop")
    try:
        async for items in watch:
            print(f"\n🆕 {len(items)} new items")
            for item in items:
                print_item(item)
    finally:
        watch.cancel()
    return 0


async def cmd_items(app: ChangelogAggregator, args) -> int:
    if args.feed:
        items = await app.feeds.get_feed_items(args.feed, limit=args.limit, offset=args.offset)
    else:
        items = await app.feeds.get_timeline(limit=args.limit, offset=args.offset, **_scope_args(args))
    if not items:
        print("No items")
    for item in items:
        print_item(item)
    return 0


@trace_span("main.schedule", tracer_name="main")
async def cmd_schedule(app: ChangelogAggregator, args) -> int:
    if args.status:
        status = app.scheduler.get_schedule_status()
        print(f"🕐 Schedule ({status['schedule_timezone']}): {', '.join(status['schedule_times']) or 'none'}")
        print(f"⏭️ Next run: {status['next_run_time'] or 'not scheduled'}")
        return 0
    await app.scheduler.run_schedule(run_now=args.run_now)
    return 0


async def cmd_migrate_ids(app: ChangelogAggregator, args) -> int:
    report = await app.feeds.migrate_item_ids()
    print(f"🔑 Migrated {report['migrated']}, skipped {report['skipped']} of {report['total']} items")
    for error in report['errors']:
        print(f"   ❌ {error}")
    return 0 if not report['errors'] else 1


COMMANDS = {
    'add': cmd_add,
    'list': cmd_list,
    'edit': cmd_edit,
    'delete': cmd_delete,
    'refresh': cmd_refresh,
    'watch': cmd_watch,
    'items': cmd_items,
    'schedule': cmd_schedule,
    'migrate-ids': cmd_migrate_ids,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='RSS changelog aggregator')
    parser.add_argument('--db', type=str, help='SQLite database path (default: DATABASE_PATH)')
    sub = parser.add_subparsers(dest='command', required=True)

    p = sub.add_parser('add', help='Register a feed after a validation fetch')
    p.add_argument('url')
    p.add_argument('--name', required=True, help='Integration name')
    p.add_argument('--alias', help='Display alias')
    p.add_argument('--group', help='Register for this group instead of the current user')

    p = sub.add_parser('list', help='List feeds in a scope')
    p.add_argument('--group')

    p = sub.add_parser('edit', help='Change integration name/alias')
    p.add_argument('feed_id')
    p.add_argument('--name', required=True)
    p.add_argument('--alias')

    p = sub.add_parser('delete', help='Delete a feed and its items')
    p.add_argument('feed_id')

    p = sub.add_parser('refresh', help='Fetch new items now')
    target = p.add_mutually_exclusive_group()
    target.add_argument('--feed', help='Refresh a single feed')
    target.add_argument('--group', help="Refresh a group's feeds")
    target.add_argument('--all', action='store_true', help='Refresh every feed')

    p = sub.add_parser('watch', help='Poll one feed periodically and print new items')
    p.add_argument('feed_id')
    p.add_argument('--interval', type=float, help='Minutes between checks (default: REFRESH_INTERVAL_MINUTES)')

    p = sub.add_parser('items', help='Show a timeline, newest first')
    target = p.add_mutually_exclusive_group()
    target.add_argument('--feed')
    target.add_argument('--group')
    p.add_argument('--limit', type=int, default=20)
    p.add_argument('--offset', type=int, default=0)

    p = sub.add_parser('schedule', help='Run the daily all-feeds refresh loop')
    p.add_argument('--run-now', action='store_true', help='Refresh everything once before waiting')
    p.add_argument('--status', action='store_true', help='Only show the schedule')

    sub.add_parser('migrate-ids', help='Prefix legacy item ids with their feed id')
    return parser


async def run_command(args) -> int:
    async with ChangelogAggregator(args.db) as app:
        return await COMMANDS[args.command](app, args)


def main():
    """Main entry point."""
    args = build_parser().parse_args()
    try:
        sys.exit(asyncio.run(run_command(args)))
    except KeyboardInterrupt:
        logger.info("👋 Shutting down")
    except FeedError as e:
        print(f"❌ [{e.code}] {e.message}")
        sys.exit(1)
    except Exception as e:
        logger.error(f"💥 Unexpected error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
