import asyncio
from datetime import datetime, timezone

import pytest

from errors import NetworkError, PersistenceError
from ingest import IngestGate
from scheduler import CHANNEL_MAX_BATCHES, FeedWatch, ScheduleEntry, UpdateScheduler, parse_schedule

WATCH_INTERVAL_MINUTES = 0.001


class RecordingGate:
    """Delegates to a real gate, remembering feed order; may blow up on chosen feeds."""

    def __init__(self, gate, explode_on=()):
        self.gate = gate
        self.explode_on = set(explode_on)
        self.order = []

    async def ingest_feed(self, feed):
        self.order.append(feed.id)
        if feed.id in self.explode_on:
            raise RuntimeError("ingest crashed")
        return await self.gate.ingest_feed(feed)


async def _feeds(db, count, **scope):
    scope = scope or {"user_id": "alice"}
    return [
        await db.execute('create_feed', url=f"https://example.com/{n}.xml", integration_name=f"Feed {n}", **scope)
        for n in range(count)
    ]


async def _next_batch(watch, timeout=2):
    return await asyncio.wait_for(watch.__anext__(), timeout)


@pytest.mark.asyncio
async def test_batch_survives_individual_failures(db, fake_fetcher, raw_items):
    feeds = await _feeds(db, 5)
    for feed in feeds:
        fake_fetcher.set_items(feed.url, raw_items(2, prefix=f"f{feed.url[-5]}"))
    fake_fetcher.fail(feeds[1].url, NetworkError("HTTP 503: Service Unavailable"))
    fake_fetcher.fail(feeds[3].url, NetworkError("timed out"))
    scheduler = UpdateScheduler(db, IngestGate(db, fake_fetcher), concurrency=2)

    summary = await scheduler.refresh_scope(user_id="alice")

    assert summary.feeds_attempted == 5
    assert summary.feeds_succeeded == 3
    assert summary.feeds_failed == 2
    assert summary.total_new_items == 6
    failed = {result.feed_id for result in summary.per_feed_results if not result.succeeded}
    assert failed == {feeds[1].id, feeds[3].id}


@pytest.mark.asyncio
async def test_stalest_feeds_start_first(db, fake_fetcher):
    fresh, stale, never = await _feeds(db, 3)
    await db.execute('update_last_fetched', feed_id=fresh.id, fetched_at="2025-11-02T00:00:00+00:00")
    await db.execute('update_last_fetched', feed_id=stale.id, fetched_at="2025-11-01T00:00:00+00:00")
    gate = RecordingGate(IngestGate(db, fake_fetcher))
    scheduler = UpdateScheduler(db, gate, concurrency=1)

    feeds = [await db.execute('get_feed', feed_id=feed.id) for feed in (fresh, stale, never)]
    await scheduler.refresh_feeds(feeds)

    assert gate.order == [never.id, stale.id, fresh.id]


@pytest.mark.asyncio
async def test_crashing_ingest_counts_as_failure(db, fake_fetcher, raw_items):
    feeds = await _feeds(db, 3)
    for feed in feeds:
        fake_fetcher.set_items(feed.url, raw_items(1, prefix=feed.id))
    gate = RecordingGate(IngestGate(db, fake_fetcher), explode_on={feeds[0].id})
    scheduler = UpdateScheduler(db, gate)

    summary = await scheduler.refresh_feeds(feeds)

    assert summary.feeds_attempted == 3
    assert summary.feeds_succeeded == 2
    assert summary.total_new_items == 2
    [crashed] = [result for result in summary.per_feed_results if not result.succeeded]
    assert crashed.feed_id == feeds[0].id
    assert "ingest crashed" in crashed.error.message


@pytest.mark.asyncio
async def test_refresh_scope_limits_to_scope(db, fake_fetcher):
    await _feeds(db, 2)
    await _feeds(db, 1, group_id="team")
    scheduler = UpdateScheduler(db, IngestGate(db, fake_fetcher))

    personal = await scheduler.refresh_scope(user_id="alice")
    team = await scheduler.refresh_scope(group_id="team")
    everything = await scheduler.refresh_scope()

    assert personal.feeds_attempted == 2
    assert team.feeds_attempted == 1
    assert everything.feeds_attempted == 3


@pytest.mark.asyncio
async def test_refresh_unknown_feed_is_not_found(db, fake_fetcher):
    scheduler = UpdateScheduler(db, IngestGate(db, fake_fetcher))

    summary = await scheduler.refresh_feed("missing")

    assert summary.feeds_attempted == 1
    assert summary.feeds_succeeded == 0
    error = summary.per_feed_results[0].error
    assert isinstance(error, PersistenceError)
    assert error.kind == PersistenceError.NOT_FOUND
    assert fake_fetcher.calls == []


@pytest.mark.asyncio
async def test_empty_batch(db, fake_fetcher):
    scheduler = UpdateScheduler(db, IngestGate(db, fake_fetcher))

    summary = await scheduler.refresh_feeds([])

    assert summary.feeds_attempted == 0
    assert summary.total_new_items == 0


@pytest.mark.asyncio
async def test_manual_refresh_messages(db, fake_fetcher, raw_items):
    [feed] = await _feeds(db, 1)
    fake_fetcher.set_items(feed.url, raw_items(2))
    scheduler = UpdateScheduler(db, IngestGate(db, fake_fetcher))

    single = await scheduler.manual_refresh(feed_id=feed.id)
    scope = await scheduler.manual_refresh(user_id="alice")
    empty = await scheduler.manual_refresh(group_id="nobody")
    missing = await scheduler.manual_refresh(feed_id="missing")

    assert single == {"success": True, "message": "Feed updated successfully", "new_items": 2, "summary": single["summary"]}
    assert scope["message"] == "Update completed: 1/1 feeds updated"
    assert scope["new_items"] == 0
    assert empty["message"] == "No feeds to update"
    assert missing["success"] is False
    assert "missing" in missing["message"]


@pytest.mark.asyncio
async def test_manual_refresh_reports_fetch_failure(db, fake_fetcher):
    [feed] = await _feeds(db, 1)
    fake_fetcher.fail(feed.url, NetworkError("HTTP 404: Not Found"))
    scheduler = UpdateScheduler(db, IngestGate(db, fake_fetcher))

    outcome = await scheduler.manual_refresh(feed_id=feed.id)

    assert outcome["success"] is False
    assert outcome["message"] == "HTTP 404: Not Found"


@pytest.mark.asyncio
async def test_watch_delivers_new_items_to_listener_and_channel(db, fake_fetcher, raw_items):
    [feed] = await _feeds(db, 1)
    fake_fetcher.set_items(feed.url, raw_items(2))
    scheduler = UpdateScheduler(db, IngestGate(db, fake_fetcher))
    received = []

    watch = scheduler.watch_feed(feed.id, received.append, interval_minutes=WATCH_INTERVAL_MINUTES)
    try:
        first = await _next_batch(watch)
        fake_fetcher.add_items(feed.url, raw_items(1, start=3))
        second = await _next_batch(watch)
    finally:
        watch.cancel()
        await watch.wait_closed()

    assert [item.id for item in first] == [f"{feed.id}-item-1", f"{feed.id}-item-2"]
    assert [item.id for item in second] == [f"{feed.id}-item-3"]
    assert received == [first, second]


@pytest.mark.asyncio
async def test_cancel_is_idempotent_and_ends_iteration(db, fake_fetcher):
    [feed] = await _feeds(db, 1)
    scheduler = UpdateScheduler(db, IngestGate(db, fake_fetcher))
    watch = scheduler.watch_feed(feed.id, lambda items: None, interval_minutes=WATCH_INTERVAL_MINUTES)
    await asyncio.sleep(0.01)

    watch.cancel()
    watch.cancel()
    await watch.wait_closed()

    assert watch.closed
    assert not watch.has_listener
    batches = [batch async for batch in watch]
    assert batches == []
    assert scheduler.get_schedule_status()["active_watches"] == 0


@pytest.mark.asyncio
async def test_listener_can_cancel_its_own_watch(db, fake_fetcher, raw_items):
    [feed] = await _feeds(db, 1)
    fake_fetcher.set_items(feed.url, raw_items(1))
    scheduler = UpdateScheduler(db, IngestGate(db, fake_fetcher))
    calls = []

    async def listener(items):
        calls.append(items)
        watch.cancel()

    watch = scheduler.watch_feed(feed.id, listener, interval_minutes=WATCH_INTERVAL_MINUTES)
    await asyncio.wait_for(watch.wait_closed(), 2)

    assert len(calls) == 1
    assert watch.closed


@pytest.mark.asyncio
async def test_failing_listener_does_not_stop_the_watch(db, fake_fetcher, raw_items):
    [feed] = await _feeds(db, 1)
    fake_fetcher.set_items(feed.url, raw_items(1))
    scheduler = UpdateScheduler(db, IngestGate(db, fake_fetcher))

    def listener(items):
        raise RuntimeError("listener broke")

    watch = scheduler.watch_feed(feed.id, listener, interval_minutes=WATCH_INTERVAL_MINUTES)
    try:
        await _next_batch(watch)
        fake_fetcher.add_items(feed.url, raw_items(1, start=2))
        batch = await _next_batch(watch)
    finally:
        watch.cancel()
        await watch.wait_closed()

    assert [item.id for item in batch] == [f"{feed.id}-item-2"]


@pytest.mark.asyncio
async def test_watch_stops_when_feed_is_deleted(db, fake_fetcher):
    [feed] = await _feeds(db, 1)
    scheduler = UpdateScheduler(db, IngestGate(db, fake_fetcher))
    await db.execute('delete_feed', feed_id=feed.id)

    watch = scheduler.watch_feed(feed.id, interval_minutes=WATCH_INTERVAL_MINUTES)
    await asyncio.wait_for(watch.wait_closed(), 2)

    assert watch.closed


@pytest.mark.asyncio
async def test_deliver_after_cancel_is_dropped():
    received = []
    watch = FeedWatch("feed", received.append)

    watch.cancel()
    await watch.deliver(["item"])

    assert received == []


@pytest.mark.asyncio
async def test_unread_batches_do_not_pile_up_without_a_reader():
    received = []
    watch = FeedWatch("feed", received.append)

    for n in range(500):
        await watch.deliver([f"item-{n}"])

    assert len(received) == 500
    assert watch.pending_batches == 0


@pytest.mark.asyncio
async def test_slow_reader_keeps_only_the_newest_batches():
    watch = FeedWatch("feed")
    batches = watch.__aiter__()

    for n in range(CHANNEL_MAX_BATCHES + 50):
        await watch.deliver([f"item-{n}"])

    assert watch.pending_batches == CHANNEL_MAX_BATCHES
    assert await batches.__anext__() == ["item-50"]
    watch.cancel()
    rest = [batch async for batch in batches]
    assert rest[-1] == [f"item-{CHANNEL_MAX_BATCHES + 49}"]
    assert len(rest) == CHANNEL_MAX_BATCHES - 1


class FlakyFeedLookup:
    """Wraps the store; the first ``failures`` feed lookups fail as if the database were busy."""

    def __init__(self, db, failures=1):
        self.db = db
        self.failures = failures

    async def execute(self, operation, **params):
        if operation == 'get_feed' and self.failures:
            self.failures -= 1
            raise PersistenceError("database is locked")
        return await self.db.execute(operation, **params)


@pytest.mark.asyncio
async def test_watch_survives_a_failed_feed_lookup(db, fake_fetcher, raw_items):
    [feed] = await _feeds(db, 1)
    fake_fetcher.set_items(feed.url, raw_items(1))
    flaky = FlakyFeedLookup(db)
    scheduler = UpdateScheduler(flaky, IngestGate(db, fake_fetcher))

    watch = scheduler.watch_feed(feed.id, interval_minutes=WATCH_INTERVAL_MINUTES)
    try:
        batch = await _next_batch(watch)
    finally:
        watch.cancel()
        await watch.wait_closed()

    assert flaky.failures == 0
    assert [item.id for item in batch] == [f"{feed.id}-item-1"]


class BrokenFeedList:
    def __init__(self, db):
        self.db = db

    async def execute(self, operation, **params):
        if operation == 'list_feeds':
            raise PersistenceError("disk I/O error")
        return await self.db.execute(operation, **params)


@pytest.mark.asyncio
async def test_failed_startup_run_keeps_the_schedule_going(db, fake_fetcher):
    scheduler = UpdateScheduler(BrokenFeedList(db), IngestGate(db, fake_fetcher))
    scheduler.schedule_entries, scheduler.schedule_timezone, scheduler.schedule_timezone_name = parse_schedule(
        ["08:00"]
    )
    sleeps = []

    async def stop_at_first_sleep(next_time, sleep_time):
        sleeps.append(next_time)
        raise asyncio.CancelledError()

    scheduler._sleep_until = stop_at_first_sleep

    await asyncio.wait_for(scheduler.run_schedule(run_now=True), 2)

    assert len(sleeps) == 1


def test_schedule_entry_next_occurrence():
    entry = ScheduleEntry("08:00")
    before = datetime(2025, 11, 3, 7, 30, tzinfo=timezone.utc)
    after = datetime(2025, 11, 3, 8, 0, tzinfo=timezone.utc)

    assert entry.next_occurrence(before) == datetime(2025, 11, 3, 8, 0, tzinfo=timezone.utc)
    assert entry.next_occurrence(after) == datetime(2025, 11, 4, 8, 0, tzinfo=timezone.utc)


@pytest.mark.parametrize("value", ["8", "24:00", "12:60", "noon"])
def test_schedule_entry_rejects_bad_times(value):
    with pytest.raises(ValueError):
        ScheduleEntry(value)


def test_parse_schedule_with_timezone():
    entries, tz, name = parse_schedule({"timezone": "Europe/Lisbon", "times": ["07:00", {"time": "19:30"}, "bad"]})

    assert [entry.time_str for entry in entries] == ["07:00", "19:30"]
    assert name == "Europe/Lisbon"
    # Lisbon is on WET (UTC+0) in November
    nov = datetime(2025, 11, 3, 6, 0, tzinfo=timezone.utc)
    assert entries[0].next_occurrence(nov, tz) == datetime(2025, 11, 3, 7, 0, tzinfo=timezone.utc)


def test_parse_schedule_falls_back_to_utc():
    entries, tz, name = parse_schedule(["08:00"], "Mars/Olympus")

    assert name == "UTC"
    assert tz is timezone.utc
    assert len(entries) == 1


@pytest.mark.asyncio
async def test_next_run_time_picks_earliest_slot(db, fake_fetcher):
    scheduler = UpdateScheduler(db, IngestGate(db, fake_fetcher))
    scheduler.schedule_entries, scheduler.schedule_timezone, scheduler.schedule_timezone_name = parse_schedule(
        ["20:00", "06:00"]
    )

    next_run = scheduler.get_next_run_time(datetime(2025, 11, 3, 12, 0, tzinfo=timezone.utc))

    assert next_run == datetime(2025, 11, 3, 20, 0, tzinfo=timezone.utc)
    status = scheduler.get_schedule_status()
    assert status["schedule_times"] == ["20:00", "06:00"]
    assert status["schedule_timezone"] == "UTC"
