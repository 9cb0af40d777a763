import os

# Must be set before the application modules are imported
os.environ.setdefault("DISABLE_TELEMETRY", "true")
os.environ["FEED_RELAYS"] = ""

import pytest
import pytest_asyncio

from errors import FeedError
from identity import resolve_id
from models import DatabaseQueue, FeedItem, FetchResult, RawItem
from sanitizer import sanitize_html_to_text
from utils import utc_now_iso


class FakeFetcher:
    """Serves canned entries per feed URL instead of going to the network.

    A URL mapped to a FeedError fails with that error; unknown URLs are empty feeds.
    """

    def __init__(self):
        self.documents = {}
        self.calls = []

    def set_items(self, url, raw_items):
        self.documents[url] = list(raw_items)

    def add_items(self, url, raw_items):
        self.documents.setdefault(url, []).extend(raw_items)

    def fail(self, url, error):
        self.documents[url] = error

    async def fetch_and_parse(self, feed_url, integration_name, integration_alias=None, scope_id=None):
        self.calls.append(feed_url)
        entry = self.documents.get(feed_url, [])
        if isinstance(entry, FeedError):
            return FetchResult(error=entry)
        now = utc_now_iso()
        return FetchResult(items=[
            FeedItem(
                id=resolve_id(raw, feed_url, scope_id),
                title=sanitize_html_to_text(raw.title) or "Untitled",
                link=raw.link,
                content=sanitize_html_to_text(raw.content or raw.description),
                content_snippet=sanitize_html_to_text(raw.description or raw.content),
                pub_date=raw.published,
                integration_name=integration_name,
                integration_alias=integration_alias,
                created_at=now,
            )
            for raw in entry
        ])


def make_raw(n, prefix="item", day=1):
    return RawItem(
        title=f"{prefix.title()} {n}",
        link=f"https://example.com/{prefix}/{n}",
        description=f"<p>{prefix} <b>{n}</b></p>",
        content="",
        published=f"2025-11-{day:02d}T{n % 24:02d}:00:00+00:00",
        guid=f"{prefix}-{n}",
    )


@pytest.fixture
def fake_fetcher():
    return FakeFetcher()


@pytest.fixture
def raw_items():
    """Factory: raw_items(count, prefix="item", start=1) -> list of RawItem."""
    def _make(count, prefix="item", start=1):
        return [make_raw(n, prefix) for n in range(start, start + count)]
    return _make


@pytest_asyncio.fixture
async def db(tmp_path):
    queue = DatabaseQueue(str(tmp_path / "test.db"))
    await queue.start()
    try:
        yield queue
    finally:
        await queue.stop()
