# ABOUTME: Source adapters that fetch raw items from RSS feeds, keyword search and JSON APIs.
# ABOUTME: Normalize upstream entries into RawItem and translate httpx failures into AdapterError.

import asyncio
import contextlib
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import Any
from urllib.parse import urljoin, urlparse

import feedparser
import httpx
import structlog
from bs4 import BeautifulSoup

from content_pulse.config import Settings, get_settings
from content_pulse.db.models import Source
from content_pulse.errors import (
    AdapterError,
    FetchTimeout,
    HTTPStatusError,
    ParseError,
    QuotaExceeded,
)
from content_pulse.models import RawItem, SourceKind

log = structlog.get_logger()

SUMMARY_MAX_CHARS = 500
SEARCH_QUOTA_REASONS = {"quotaExceeded", "dailyLimitExceeded", "rateLimitExceeded"}
API_QUOTA_CODES = {"rateLimited", "apiKeyExhausted", "quotaExceeded"}
WATCH_URL_TEMPLATE = "https://www.youtube.com/watch?v={video_id}"


def html_to_text(value: str | None, limit: int = SUMMARY_MAX_CHARS) -> str:
    """Strip markup and collapse whitespace, truncating to ``limit`` characters."""
    if not value:
        return ""
    text = BeautifulSoup(value, "html.parser").get_text(" ", strip=True)
    return " ".join(text.split())[:limit]


def parse_timestamp(value: Any) -> datetime | None:
    """Best-effort parse of ISO 8601, RFC 822 or epoch-seconds timestamps."""
    if value is None or value == "":
        return None
    if isinstance(value, int | float):
        return datetime.fromtimestamp(value, tz=UTC)
    text = str(value).strip()
    parsed = None
    with contextlib.suppress(ValueError):
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    if parsed is None:
        with contextlib.suppress(TypeError, ValueError, IndexError):
            parsed = parsedate_to_datetime(text)
    if parsed is None:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def _first_str(entry: dict, *keys: str) -> str | None:
    """First non-empty string value among ``keys``; nested objects are ignored."""
    for key in keys:
        value = entry.get(key)
        if isinstance(value, str) and value.strip():
            return value
    return None


class SourceAdapter:
    """Base adapter: one bounded HTTP GET per call, typed errors, no self-throttling."""

    kind: SourceKind

    def __init__(
        self,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.settings = settings or get_settings()
        self.transport = transport

    async def fetch(self, source: Source) -> list[RawItem]:
        raise NotImplementedError

    async def _get(
        self,
        source: Source,
        url: str,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        timeout = self.settings.http_timeout
        try:
            async with asyncio.timeout(timeout):
                async with httpx.AsyncClient(
                    timeout=timeout,
                    headers={"User-Agent": self.settings.http_user_agent, **(headers or {})},
                    follow_redirects=True,
                    transport=self.transport,
                ) as client:
                    response = await client.get(url, params=params)
        except (TimeoutError, httpx.TimeoutException) as e:
            raise FetchTimeout(source.id, f"no response from {url} within {timeout}s") from e
        except httpx.HTTPError as e:
            raise AdapterError(source.id, f"request to {url} failed: {e}") from e

        if self._is_quota_response(response):
            raise QuotaExceeded(source.id, f"quota exhausted at {url} (HTTP {response.status_code})")
        if response.status_code >= 400:
            raise HTTPStatusError(source.id, response.status_code)
        return response

    def _is_quota_response(self, response: httpx.Response) -> bool:
        return response.status_code == 429

    @staticmethod
    def _json_body(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            return None


class RssAdapter(SourceAdapter):
    """RSS/Atom feeds. A broken feed fails the source; a broken entry is skipped."""

    kind = SourceKind.RSS

    async def fetch(self, source: Source) -> list[RawItem]:
        log.info("fetching_feed", source_id=source.id, name=source.name, url=source.endpoint)
        response = await self._get(source, source.endpoint)

        feed = await asyncio.to_thread(feedparser.parse, response.content)
        if feed.bozo and not feed.entries:
            raise ParseError(source.id, f"unparseable feed: {feed.get('bozo_exception')}")

        parsed = urlparse(str(response.url) or source.endpoint)
        origin = f"{parsed.scheme}://{parsed.netloc}/"
        fetched_at = datetime.now(UTC)

        items: list[RawItem] = []
        for entry in feed.entries[: self.settings.max_items_per_fetch]:
            try:
                item = self._entry_to_item(source, entry, origin, fetched_at)
            except (AttributeError, KeyError, TypeError, ValueError) as e:
                log.warning("feed_entry_skipped", source_id=source.id, error=str(e))
                continue
            if item is not None:
                items.append(item)
        return items

    def _entry_to_item(
        self, source: Source, entry: Any, origin: str, fetched_at: datetime
    ) -> RawItem | None:
        url = (entry.get("link") or "").strip()
        title = (entry.get("title") or "").strip()
        if not url or not title:
            log.debug("feed_entry_incomplete", source_id=source.id, url=url, title=title)
            return None

        body_html = entry.get("summary") or ""
        if not body_html and entry.get("content"):
            body_html = entry.content[0].get("value", "")

        published_at = fetched_at
        for field in ("published_parsed", "updated_parsed"):
            struct = entry.get(field)
            if struct:
                with contextlib.suppress(ValueError, TypeError):
                    published_at = datetime(*struct[:6], tzinfo=UTC)
                    break

        media_url = self._media_url(entry, body_html)
        if media_url:
            media_url = urljoin(origin, media_url)

        return RawItem(
            title=title,
            body_summary=html_to_text(body_html),
            canonical_url=url,
            published_at=published_at,
            source_id=source.id,
            media_url=media_url,
            author_name=entry.get("author") or None,
        )

    @staticmethod
    def _media_url(entry: Any, body_html: str) -> str | None:
        """Media/thumbnail field, then an image enclosure, then the first inline <img>."""
        for field in ("media_content", "media_thumbnail"):
            for media in entry.get(field) or []:
                if media.get("url"):
                    return media["url"]

        for enclosure in entry.get("enclosures") or []:
            href = enclosure.get("href") or enclosure.get("url")
            if href and (enclosure.get("type") or "").startswith("image/"):
                return href

        if body_html:
            img = BeautifulSoup(body_html, "html.parser").find("img", src=True)
            if img is not None:
                return img["src"]
        return None


class SearchApiAdapter(SourceAdapter):
    """Keyword-driven video search. Each keyword is queried independently."""

    kind = SourceKind.SEARCH_API

    def _is_quota_response(self, response: httpx.Response) -> bool:
        if response.status_code == 429:
            return True
        if response.status_code != 403:
            return False
        body = self._json_body(response)
        error = body.get("error") if isinstance(body, dict) else None
        errors = error.get("errors") if isinstance(error, dict) else None
        if not isinstance(errors, list):
            return False
        return any(
            isinstance(err, dict) and err.get("reason") in SEARCH_QUOTA_REASONS for err in errors
        )

    async def fetch(self, source: Source) -> list[RawItem]:
        keywords = source.keywords or self.settings.search_keywords
        if not keywords:
            log.warning("search_source_without_keywords", source_id=source.id, name=source.name)
            return []

        api_key = source.api_key
        if api_key is None and self.settings.search_api_key is not None:
            api_key = self.settings.search_api_key.get_secret_value()

        items: list[RawItem] = []
        last_error: AdapterError | None = None
        failures = 0
        for keyword in keywords:
            try:
                items.extend(await self._search(source, keyword, api_key))
            except QuotaExceeded as e:
                # Remaining keywords would burn the same exhausted quota.
                raise QuotaExceeded(source.id, e.message, items=items) from e
            except AdapterError as e:
                failures += 1
                last_error = e
                log.error(
                    "keyword_search_failed",
                    source_id=source.id,
                    keyword=keyword,
                    error_kind=e.kind,
                    error=e.message,
                )

        if last_error is not None and failures == len(keywords):
            raise last_error
        return items[: self.settings.max_items_per_fetch]

    async def _search(self, source: Source, keyword: str, api_key: str | None) -> list[RawItem]:
        params: dict[str, Any] = {
            "part": "snippet",
            "q": keyword,
            "type": "video",
            "order": "relevance",
            "safeSearch": "strict",
            "maxResults": self.settings.search_results_per_keyword,
        }
        if api_key:
            params["key"] = api_key

        response = await self._get(source, source.endpoint, params=params)
        body = self._json_body(response)
        if not isinstance(body, dict):
            raise ParseError(source.id, f"search response for {keyword!r} is not a JSON object")

        fetched_at = datetime.now(UTC)
        items = []
        for entry in body.get("items") or []:
            item_id = entry.get("id")
            video_id = item_id.get("videoId") if isinstance(item_id, dict) else item_id
            snippet = entry.get("snippet") or {}
            if not video_id or not snippet.get("title"):
                continue
            thumbnails = snippet.get("thumbnails") or {}
            thumbnail = next(
                (thumbnails[size]["url"] for size in ("high", "medium", "default") if size in thumbnails),
                None,
            )
            items.append(
                RawItem(
                    title=snippet["title"],
                    body_summary=html_to_text(snippet.get("description")),
                    canonical_url=WATCH_URL_TEMPLATE.format(video_id=video_id),
                    published_at=parse_timestamp(snippet.get("publishedAt")) or fetched_at,
                    source_id=source.id,
                    media_url=thumbnail,
                    author_name=snippet.get("channelTitle"),
                )
            )
        log.info("keyword_search_done", source_id=source.id, keyword=keyword, count=len(items))
        return items


class GenericApiAdapter(SourceAdapter):
    """Single JSON GET against a news or review API."""

    kind = SourceKind.GENERIC_API

    ITEM_KEYS = ("articles", "items", "results", "data", "reviews")

    def _is_quota_response(self, response: httpx.Response) -> bool:
        if response.status_code == 429:
            return True
        body = self._json_body(response)
        return isinstance(body, dict) and body.get("code") in API_QUOTA_CODES

    async def fetch(self, source: Source) -> list[RawItem]:
        headers = {"X-Api-Key": source.api_key} if source.api_key else None
        response = await self._get(source, source.endpoint, headers=headers)
        body = self._json_body(response)
        if body is None:
            raise ParseError(source.id, "response is not JSON")

        entries = self._find_entries(body)
        if entries is None:
            raise ParseError(source.id, "no item list in response")

        fetched_at = datetime.now(UTC)
        items = []
        for entry in entries[: self.settings.max_items_per_fetch]:
            if not isinstance(entry, dict):
                continue
            try:
                item = self._entry_to_item(source, entry, fetched_at)
            except (TypeError, ValueError) as e:
                log.warning("feed_entry_skipped", source_id=source.id, error=str(e))
                continue
            if item is not None:
                items.append(item)
        return items

    def _find_entries(self, body: Any) -> list | None:
        if isinstance(body, list):
            return body
        if isinstance(body, dict):
            for key in self.ITEM_KEYS:
                if isinstance(body.get(key), list):
                    return body[key]
        return None

    @staticmethod
    def _entry_to_item(source: Source, entry: dict, fetched_at: datetime) -> RawItem | None:
        url = _first_str(entry, "url", "link")
        summary = html_to_text(_first_str(entry, "description", "summary", "content", "text"))
        title = _first_str(entry, "title", "name") or summary[:80]
        if not url or not title:
            return None

        published = None
        for field in ("publishedAt", "published_at", "pubDate", "created_at", "time"):
            published = parse_timestamp(entry.get(field))
            if published is not None:
                break

        author = entry.get("author") or entry.get("author_name")
        if isinstance(author, dict):
            author = author.get("name")
        if not isinstance(author, str):
            author = None

        return RawItem(
            title=title.strip(),
            body_summary=summary,
            canonical_url=url.strip(),
            published_at=published or fetched_at,
            source_id=source.id,
            media_url=_first_str(entry, "urlToImage", "image", "thumbnail"),
            author_name=author or None,
        )


def build_adapters(
    settings: Settings | None = None, transport: httpx.AsyncBaseTransport | None = None
) -> dict[SourceKind, SourceAdapter]:
    """One adapter instance per source kind."""
    return {
        SourceKind.RSS: RssAdapter(settings, transport),
        SourceKind.SEARCH_API: SearchApiAdapter(settings, transport),
        SourceKind.GENERIC_API: GenericApiAdapter(settings, transport),
    }
