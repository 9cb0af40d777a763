#!/usr/bin/env python3
"""
Feed fetching and normalization.

Resolves a feed URL to its document through the configured relay chain (relays in
order, then a direct request), parses it, and turns every entry into a
normalized ``FeedItem``: sanitized text fields, a stable scope-discriminated id
and the integration labels of the subscription. ``fetch_and_parse`` never
raises; failures come back as ``FetchResult.error``.
"""

from asyncio import get_running_loop
from concurrent.futures import ThreadPoolExecutor
from functools import partial
from typing import Any, Dict, List, Optional, Union
from urllib.parse import quote

from aiohttp import ClientError, ClientSession, ClientTimeout

from config import config, get_logger
from errors import FeedError, NetworkError, ValidationError
from feed_document import parse_feed_document
from identity import resolve_id
from models import FeedItem, FetchResult, RawItem
from sanitizer import sanitize_html_to_text
from telemetry import init_telemetry, trace_span
from utils import RetryHelper, summarize_url, utc_now_iso, validate_url

logger = get_logger("fetcher")
init_telemetry("changelog-aggregator-fetcher")

UNTITLED = "Untitled"
RELAY_FORMAT_TEXT = "text"
RELAY_FORMAT_JSON = "json"
JSON_CONTENTS_KEY = "contents"


def relay_request_url(relay: Dict[str, str], target_url: str) -> str:
    """Relay prefix followed by the percent-encoded target URL."""
    return f"{relay['url']}{quote(target_url, safe='')}"


def _describe_error(e: BaseException) -> str:
    text = str(e)
    return f"{type(e).__name__}: {text}" if text else type(e).__name__


class FeedFetcher:
    """Fetches feed documents and produces normalized items.

    A ``ClientSession`` may be injected (tests, shared pools); otherwise one is
    created lazily and closed by ``close()``.
    """

    def __init__(
        self,
        session: Optional[ClientSession] = None,
        relays: Optional[List[Dict[str, str]]] = None,
        timeout: Optional[float] = None,
        retry_helper: Optional[RetryHelper] = None,
    ) -> None:
        self.executor = ThreadPoolExecutor(max_workers=4)
        self._session = session
        self._owns_session = session is None
        self.relays = list(config.RELAYS if relays is None else relays)
        self.timeout = timeout or config.HTTP_TIMEOUT
        self.retry_helper = retry_helper or RetryHelper(
            max_retries=len(self.relays), base_delay=config.RETRY_DELAY_BASE
        )
        self.headers = {
            'User-Agent': config.USER_AGENT,
            'Accept': 'application/rss+xml, application/atom+xml, application/xml;q=0.9, text/xml;q=0.8, */*;q=0.5',
        }

    async def __aenter__(self) -> "FeedFetcher":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def _get_session(self) -> ClientSession:
        if self._session is None or self._session.closed:
            self._session = ClientSession(headers=self.headers)
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        """Close the owned HTTP session and the parser thread pool."""
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
        self.executor.shutdown(wait=False)
        logger.debug("FeedFetcher closed")

    async def run_in_executor(self, func, *args) -> Any:
        """Run a blocking function in the thread pool."""
        loop = get_running_loop()
        return await loop.run_in_executor(self.executor, partial(func, *args))

    async def _get(self, url: str, as_json: bool = False) -> Any:
        session = self._get_session()
        async with session.get(
            url,
            headers=self.headers,
            timeout=ClientTimeout(total=self.timeout),
        ) as response:
            if not 200 <= response.status < 300:
                raise NetworkError(
                    f"HTTP {response.status}: {response.reason or ''}".strip(),
                    details={"url": url, "status": response.status},
                )
            if as_json:
                return await response.json(content_type=None)
            # Raw bytes: the parser decodes them per the BOM or XML declaration
            return await response.read()

    async def _fetch_via_relay(self, relay: Dict[str, str], url: str) -> Union[str, bytes]:
        request_url = relay_request_url(relay, url)
        if relay.get('format') == RELAY_FORMAT_JSON:
            payload = await self._get(request_url, as_json=True)
            contents = payload.get(JSON_CONTENTS_KEY) if isinstance(payload, dict) else None
            if not contents:
                raise NetworkError(
                    f"Relay answered without '{JSON_CONTENTS_KEY}'",
                    details={"relay": summarize_url(relay['url'])},
                )
            return contents
        return await self._get(request_url)

    @trace_span(
        "fetch_text",
        tracer_name="fetcher",
        attr_from_args=lambda self, url, *a, **k: {
            "feed.url": url or "",
            "fetch.relay_count": len(self.relays),
        },
    )
    async def fetch_text(self, url: str) -> Union[str, bytes]:
        """Fetch a document: each relay in order, then directly.

        Returns the undecoded body, or text when a JSON relay already decoded it.

        Raises:
            NetworkError: when every strategy failed; ``details['attempts']``
                lists each failure and ``details['cause']`` holds the last one.
        """
        attempts: List[str] = []
        last_error: Optional[BaseException] = None

        for index, relay in enumerate(self.relays):
            label = summarize_url(relay['url'])
            try:
                text = await self._fetch_via_relay(relay, url)
                logger.debug("Fetched %s via relay %s", url, label)
                return text
            except (ClientError, TimeoutError, NetworkError, ValueError) as e:
                detail = _describe_error(e)
                logger.warning("Relay %d/%d (%s) failed for %s: %s", index + 1, len(self.relays), label, url, detail)
                attempts.append(f"relay {label}: {detail}")
                last_error = e
                if index < len(self.relays) - 1:
                    await self.retry_helper.sleep_for_attempt(index)

        try:
            text = await self._get(url)
            if self.relays:
                logger.info("Fetched %s directly after %d relay failure(s)", url, len(self.relays))
            return text
        except (ClientError, TimeoutError, NetworkError, ValueError) as e:
            detail = _describe_error(e)
            if isinstance(e, TimeoutError):
                detail = f"timed out after {self.timeout}s"
            logger.warning("Direct fetch failed for %s: %s", url, detail)
            attempts.append(f"direct: {detail}")
            last_error = e

        raise NetworkError(
            f"All fetch strategies failed for {url}: " + "; ".join(attempts),
            details={"url": url, "attempts": attempts, "cause": last_error},
        )

    def normalize_items(
        self,
        raw_items: List[RawItem],
        feed_url: str,
        integration_name: str,
        integration_alias: Optional[str] = None,
        scope_id: Optional[str] = None,
    ) -> List[FeedItem]:
        """Sanitize text fields and assign identifiers, keeping document order."""
        created_at = utc_now_iso()
        items = []
        for raw in raw_items:
            items.append(FeedItem(
                id=resolve_id(raw, feed_url, scope_id),
                title=sanitize_html_to_text(raw.title) or UNTITLED,
                link=(raw.link or "").strip(),
                content=sanitize_html_to_text(raw.content or raw.description),
                content_snippet=sanitize_html_to_text(raw.description or raw.content),
                pub_date=raw.published or created_at,
                integration_name=integration_name,
                integration_alias=integration_alias,
                created_at=created_at,
            ))
        return items

    @trace_span(
        "fetch_and_parse",
        tracer_name="fetcher",
        attr_from_args=lambda self, feed_url=None, integration_name=None, *a, **k: {
            "feed.url": feed_url or "",
            "feed.integration": integration_name or "",
        },
    )
    async def fetch_and_parse(
        self,
        feed_url: str,
        integration_name: str,
        integration_alias: Optional[str] = None,
        scope_id: Optional[str] = None,
    ) -> FetchResult:
        """Fetch, parse and normalize one feed.

        ``scope_id`` (the owning feed's id) is prefixed to every item id when given.
        """
        try:
            if not feed_url or not str(feed_url).strip():
                raise ValidationError("Feed URL is required")
            feed_url = feed_url.strip()
            if not validate_url(feed_url):
                raise ValidationError(f"Invalid feed URL: {feed_url}", details={"url": feed_url})
            if not integration_name or not integration_name.strip():
                raise ValidationError("Integration name is required", details={"url": feed_url})

            document: Union[str, bytes] = await self.fetch_text(feed_url)
            raw_items = await self.run_in_executor(parse_feed_document, document)
            items = self.normalize_items(
                raw_items, feed_url, integration_name.strip(),
                integration_alias.strip() if integration_alias else None,
                scope_id,
            )
            logger.info("Parsed %d items from %s", len(items), feed_url)
            return FetchResult(items=items)
        except FeedError as e:
            logger.warning("Fetch failed for %s [%s]: %s", feed_url, e.code, e.message)
            return FetchResult(error=e)
        except Exception as e:
            logger.error("Unexpected error fetching %s: %s", feed_url, e)
            return FetchResult(error=FeedError(f"Unexpected error: {e}", details={"url": feed_url, "cause": e}))
