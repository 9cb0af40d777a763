#!/usr/bin/env python3
"""
Update scheduling.

Three ways to run ingest cycles:

- ``watch_feed``: a background timer for one feed that pushes newly found items
  to a listener and to an async-iterable channel until the returned handle is
  cancelled
- ``refresh_feed`` / ``refresh_scope``: on-demand batch runs over one feed, a
  user's personal feeds, a group's feeds or every feed; feeds run concurrently
  (bounded), stalest first, and one failure never cancels its siblings
- ``run_schedule``: the long-running daily loop that refreshes every feed at
  the configured times of day (feeds.yaml ``schedule``, default 08:00 UTC)
"""

import asyncio
import inspect
from datetime import datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple, Union

from config import config, get_logger
from errors import FeedError, PersistenceError
from ingest import IngestGate
from models import BatchSummary, DatabaseQueue, FeedItem, FeedSource, IngestResult
from telemetry import init_telemetry, trace_span
from utils import format_duration

logger = get_logger("scheduler")
init_telemetry("changelog-aggregator-scheduler")

Listener = Callable[[List[FeedItem]], Union[None, Awaitable[None]]]

_CLOSED = object()
ERROR_RETRY_SECONDS = 60
CHANNEL_MAX_BATCHES = 100


class ScheduleEntry:
    """A time of day ("HH:MM") at which the all-feeds batch runs."""

    def __init__(self, time_str: str):
        self.time_str = str(time_str).strip().strip('"\'')
        self.time = self._parse_time(self.time_str)

    def _parse_time(self, time_str: str) -> time:
        try:
            parts = time_str.split(':')
            if len(parts) != 2:
                raise ValueError(f"Time must be in HH:MM format, got: {time_str}")
            hour, minute = int(parts[0]), int(parts[1])
            if not (0 <= hour <= 23):
                raise ValueError(f"Hour must be 0-23, got: {hour}")
            if not (0 <= minute <= 59):
                raise ValueError(f"Minute must be 0-59, got: {minute}")
            return time(hour=hour, minute=minute)
        except (ValueError, TypeError) as e:
            raise ValueError(f"Invalid time format '{time_str}': {e}")

    def next_occurrence(self, from_time: Optional[datetime] = None, tz=None) -> datetime:
        """Next occurrence strictly after ``from_time``, as a UTC datetime.

        The time of day is interpreted in ``tz`` (default UTC).
        """
        tz = tz or timezone.utc
        from_time = from_time or datetime.now(timezone.utc)
        ref_local = from_time.astimezone(tz)
        candidate = datetime.combine(ref_local.date(), self.time, tzinfo=tz)
        if candidate <= ref_local:
            candidate = candidate + timedelta(days=1)
        return candidate.astimezone(timezone.utc)

    def __repr__(self) -> str:
        return f"ScheduleEntry({self.time_str})"


def parse_schedule(raw: Any, timezone_name: str = "UTC") -> Tuple[List[ScheduleEntry], Any, str]:
    """Parse the ``schedule`` setting into entries plus the schedule timezone.

    Accepts a list of "HH:MM" strings (or ``{time: "HH:MM"}`` mappings), or a
    mapping with ``timezone`` and ``times``.
    """
    raw_entries: List[Any] = []
    if isinstance(raw, list):
        raw_entries = raw
    elif isinstance(raw, str):
        raw_entries = [raw]
    elif isinstance(raw, dict):
        timezone_name = str(raw.get('timezone') or raw.get('tz') or timezone_name)
        raw_entries = raw.get('times') or []
        if not isinstance(raw_entries, list):
            logger.error("Schedule 'times' must be a list; ignoring")
            raw_entries = []

    try:
        tz = ZoneInfo(timezone_name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Invalid timezone '{timezone_name}', falling back to UTC")
        timezone_name, tz = "UTC", timezone.utc

    entries: List[ScheduleEntry] = []
    for entry in raw_entries:
        value = entry.get('time') if isinstance(entry, dict) else entry
        try:
            entries.append(ScheduleEntry(value))
        except ValueError as e:
            logger.error(f"Failed to parse schedule entry {entry}: {e}")
    return entries, tz, timezone_name


class FeedWatch:
    """Handle for a periodic single-feed watcher.

    New items arrive as lists, both through the optional listener and through
    ``async for batch in watch``. The channel opens on first iteration and keeps
    at most ``CHANNEL_MAX_BATCHES`` unread batches, dropping the oldest.
    ``cancel()`` stops the timer, drops the listener and closes the channel; it
    may be called any number of times.
    """

    def __init__(self, feed_id: str, listener: Optional[Listener] = None):
        self.feed_id = feed_id
        self._listener = listener
        self._channel: Optional[asyncio.Queue] = None
        self._task: Optional[asyncio.Task] = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def has_listener(self) -> bool:
        return self._listener is not None

    @property
    def pending_batches(self) -> int:
        """Batches delivered but not yet read from the channel."""
        if self._channel is None:
            return 0
        # The close marker stays queued once cancelled
        return max(self._channel.qsize() - int(self._closed), 0)

    def _offer(self, entry: Any) -> None:
        if self._channel is None:
            return
        if self._channel.full():
            self._channel.get_nowait()
            logger.debug(f"Channel for feed {self.feed_id} is full; dropped the oldest batch")
        self._channel.put_nowait(entry)

    async def deliver(self, items: List[FeedItem]) -> None:
        if self._closed or not items:
            return
        self._offer(list(items))
        listener = self._listener
        if listener is None:
            return
        try:
            outcome = listener(list(items))
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as e:
            logger.error(f"Listener for feed {self.feed_id} failed: {e}")

    def cancel(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._listener = None
        if self._task is not None and not self._task.done() and self._task is not asyncio.current_task():
            self._task.cancel()
        self._offer(_CLOSED)
        logger.info(f"Stopped watching feed {self.feed_id}")

    async def wait_closed(self) -> None:
        if self._task is None:
            return
        try:
            await self._task
        except asyncio.CancelledError:
            pass

    def _open_channel(self) -> None:
        if self._channel is None and not self._closed:
            self._channel = asyncio.Queue(maxsize=CHANNEL_MAX_BATCHES)

    def __aiter__(self):
        self._open_channel()
        return self

    async def __anext__(self) -> List[FeedItem]:
        self._open_channel()
        if self._channel is None:
            raise StopAsyncIteration
        batch = await self._channel.get()
        if batch is _CLOSED:
            # Leave the marker for any other consumer
            self._channel.put_nowait(_CLOSED)
            raise StopAsyncIteration
        return batch


class UpdateScheduler:
    def __init__(self, db: DatabaseQueue, gate: IngestGate, concurrency: Optional[int] = None):
        self.db = db
        self.gate = gate
        self.concurrency = concurrency or config.BATCH_CONCURRENCY
        self._inflight: Set[asyncio.Task] = set()
        self._watches: Dict[int, FeedWatch] = {}
        self.schedule_entries, self.schedule_timezone, self.schedule_timezone_name = parse_schedule(
            config.SCHEDULE, config.SCHEDULER_TIMEZONE or "UTC"
        )

    # Periodic single-feed watcher

    def watch_feed(
        self,
        feed_id: str,
        listener: Optional[Listener] = None,
        interval_minutes: Optional[float] = None,
        run_immediately: bool = True,
    ) -> FeedWatch:
        """Start ingesting ``feed_id`` every ``interval_minutes`` (default 15)."""
        interval = float(interval_minutes or config.REFRESH_INTERVAL_MINUTES) * 60
        watch = FeedWatch(feed_id, listener)
        watch._task = asyncio.create_task(self._watch_loop(watch, interval, run_immediately))
        self._watches[id(watch)] = watch
        watch._task.add_done_callback(lambda _: self._watches.pop(id(watch), None))
        logger.info(f"Watching feed {feed_id} every {format_duration(interval)}")
        return watch

    async def _watch_loop(self, watch: FeedWatch, interval: float, run_immediately: bool) -> None:
        try:
            if not run_immediately:
                await asyncio.sleep(interval)
            while not watch.closed:
                try:
                    feed = await self.db.execute('get_feed', feed_id=watch.feed_id)
                    if feed is None:
                        logger.warning(f"Feed {watch.feed_id} no longer exists; stopping watcher")
                        watch.cancel()
                        break
                    result = await self.gate.ingest_feed(feed)
                    if result.error:
                        logger.warning(f"Periodic update of feed {watch.feed_id} failed: {result.error.message}")
                    elif result.new_items:
                        await watch.deliver(result.new_items)
                except FeedError as e:
                    logger.warning(
                        f"Watcher for feed {watch.feed_id} skipped a cycle [{e.code}]: {e.message}; "
                        f"retrying in {format_duration(interval)}"
                    )
                if watch.closed:
                    break
                await asyncio.sleep(interval)
        except asyncio.CancelledError:
            logger.debug(f"Watcher for feed {watch.feed_id} cancelled")

    def cancel_all_watches(self) -> None:
        for watch in list(self._watches.values()):
            watch.cancel()

    # On-demand batch runs

    @trace_span(
        "scheduler.refresh_feeds",
        tracer_name="scheduler",
        attr_from_args=lambda self, feeds, *a, **k: {"batch.feed_count": len(feeds)},
    )
    async def refresh_feeds(self, feeds: List[FeedSource]) -> BatchSummary:
        """Ingest every feed concurrently and reduce the results.

        Feeds start stalest first. Already-dispatched ingests run to completion
        even if the caller stops waiting.
        """
        if not feeds:
            return BatchSummary()

        ordered = sorted(feeds, key=lambda f: (f.last_fetched is not None, f.last_fetched or ""))
        semaphore = asyncio.Semaphore(self.concurrency)

        async def ingest_with_semaphore(feed: FeedSource) -> IngestResult:
            async with semaphore:
                return await self.gate.ingest_feed(feed)

        tasks = []
        for feed in ordered:
            task = asyncio.create_task(ingest_with_semaphore(feed))
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)
            tasks.append(task)

        outcomes = await asyncio.shield(asyncio.gather(*tasks, return_exceptions=True))

        results: List[IngestResult] = []
        for feed, outcome in zip(ordered, outcomes):
            if isinstance(outcome, IngestResult):
                results.append(outcome)
            else:
                logger.error(f"Ingest of feed {feed.id} crashed: {outcome!r}")
                results.append(IngestResult(
                    feed_id=feed.id,
                    feed_url=feed.url,
                    error=FeedError(f"Unexpected error: {outcome}", details={"cause": outcome}),
                ))

        summary = BatchSummary.from_results(results)
        logger.info(
            f"Batch refresh: {summary.feeds_succeeded}/{summary.feeds_attempted} feeds updated, "
            f"{summary.total_new_items} new items"
        )
        return summary

    async def refresh_scope(self, user_id: Optional[str] = None, group_id: Optional[str] = None) -> BatchSummary:
        """Refresh a user's personal feeds, a group's feeds, or (neither given) every feed.

        Raises:
            PersistenceError: when the feed list cannot be read.
        """
        feeds = await self.db.execute('list_feeds', user_id=user_id, group_id=group_id)
        return await self.refresh_feeds(feeds)

    async def refresh_feed(self, feed_id: str) -> BatchSummary:
        feed = await self.db.execute('get_feed', feed_id=feed_id)
        if feed is None:
            result = IngestResult(
                feed_id=feed_id,
                error=PersistenceError(f"Feed not found: {feed_id}", kind=PersistenceError.NOT_FOUND),
            )
            return BatchSummary.from_results([result])
        return await self.refresh_feeds([feed])

    async def manual_refresh(
        self, feed_id: Optional[str] = None, user_id: Optional[str] = None, group_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """Refresh one feed or one scope and describe the outcome for display."""
        try:
            if feed_id:
                summary = await self.refresh_feed(feed_id)
                result = summary.per_feed_results[0]
                if result.error:
                    return {"success": False, "message": result.error.message, "summary": summary}
                message = "Feed updated successfully"
                if result.note:
                    message = f"{message} ({result.note.lower()})"
                return {"success": True, "message": message, "new_items": result.new_item_count, "summary": summary}

            summary = await self.refresh_scope(user_id=user_id, group_id=group_id)
        except FeedError as e:
            logger.error(f"Manual refresh failed [{e.code}]: {e.message}")
            return {"success": False, "message": e.message, "summary": BatchSummary()}

        if summary.feeds_attempted == 0:
            return {"success": True, "message": "No feeds to update", "new_items": 0, "summary": summary}
        return {
            "success": True,
            "message": f"Update completed: {summary.feeds_succeeded}/{summary.feeds_attempted} feeds updated",
            "new_items": summary.total_new_items,
            "summary": summary,
        }

    async def wait_for_inflight(self) -> None:
        """Wait for dispatched batch ingests (used on shutdown)."""
        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    # Daily schedule

    def get_next_run_time(self, from_time: Optional[datetime] = None) -> Optional[datetime]:
        if not self.schedule_entries:
            return None
        from_time = from_time or datetime.now(timezone.utc)
        return min(entry.next_occurrence(from_time, self.schedule_timezone) for entry in self.schedule_entries)

    def get_schedule_status(self) -> Dict[str, Any]:
        now = datetime.now(timezone.utc)
        next_run = self.get_next_run_time(now)
        return {
            'current_time': now.isoformat(),
            'schedule_times': [entry.time_str for entry in self.schedule_entries],
            'schedule_timezone': self.schedule_timezone_name,
            'next_run_time': next_run.isoformat() if next_run else None,
            'seconds_until_next_run': (next_run - now).total_seconds() if next_run else None,
            'active_watches': len(self._watches),
        }

    @trace_span(
        "scheduler.sleep",
        tracer_name="scheduler",
        attr_from_args=lambda self, next_time, sleep_time: {
            "sleep.seconds": float(sleep_time),
            "scheduled.at": next_time.isoformat(),
        },
    )
    async def _sleep_until(self, next_time: datetime, sleep_time: float) -> None:
        await asyncio.sleep(sleep_time)

    @trace_span("scheduler.main_loop", tracer_name="scheduler")
    async def run_schedule(self, run_now: bool = False) -> None:
        """Refresh every feed at each scheduled time of day until cancelled."""
        if not self.schedule_entries:
            logger.error("No schedule configured - cannot run in scheduled mode")
            return

        times_str = ", ".join(entry.time_str for entry in self.schedule_entries)
        logger.info(f"Starting scheduler: daily at {times_str} ({self.schedule_timezone_name})")

        if run_now:
            logger.info("Running all-feeds refresh immediately on startup")
            try:
                await self.refresh_scope()
            except FeedError as e:
                logger.error(f"Startup run failed [{e.code}]: {e.message}")

        while True:
            try:
                next_time = self.get_next_run_time()
                seconds_until = (next_time - datetime.now(timezone.utc)).total_seconds()
                # Small buffer so we never wake up just before the slot
                sleep_time = max(1, seconds_until + 1)
                logger.info(f"Sleeping {format_duration(sleep_time)} until next run at {next_time.isoformat()}")
                await self._sleep_until(next_time, sleep_time)

                started = datetime.now(timezone.utc)
                summary = await self.refresh_scope()
                duration = (datetime.now(timezone.utc) - started).total_seconds()
                logger.info(
                    f"Scheduled run finished in {format_duration(duration)}: "
                    f"{summary.feeds_succeeded}/{summary.feeds_attempted} feeds, {summary.total_new_items} new items"
                )
            except asyncio.CancelledError:
                logger.info("Scheduler cancelled - shutting down")
                break
            except FeedError as e:
                logger.error(f"Scheduled run failed [{e.code}]: {e.message}")
                await asyncio.sleep(ERROR_RETRY_SECONDS)

        self.cancel_all_watches()
