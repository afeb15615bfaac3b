# ABOUTME: Exception taxonomy for adapters, the content store and runtime settings.
# ABOUTME: Library exceptions are translated into these at the adapter and store boundaries.

from typing import Any


class ContentPulseError(Exception):
    """Base class for all content-pulse errors."""


class AdapterError(ContentPulseError):
    """An upstream fetch failed. Retried on the next scheduled cycle only."""

    kind = "network"

    def __init__(self, source_id: int | None, message: str):
        super().__init__(message)
        self.source_id = source_id
        self.message = message


class FetchTimeout(AdapterError):
    kind = "timeout"


class HTTPStatusError(AdapterError):
    kind = "http_status"

    def __init__(self, source_id: int | None, status_code: int, message: str | None = None):
        super().__init__(source_id, message or f"upstream returned HTTP {status_code}")
        self.status_code = status_code


class ParseError(AdapterError):
    kind = "parse"


class QuotaExceeded(AdapterError):
    """The upstream signalled an exhausted quota.

    ``items`` holds anything fetched before the signal (e.g. earlier keyword
    queries of a search source); callers may still process them.
    """

    kind = "quota"

    def __init__(self, source_id: int | None, message: str, items: list[Any] | None = None):
        super().__init__(source_id, message)
        self.items = items or []


class StoreError(ContentPulseError):
    """A content store read or write failed for a single operation."""


class DuplicateRecordError(StoreError):
    """The store rejected a write because the canonical URL already exists."""


class StoreUnavailableError(StoreError):
    """The store cannot be read at all. Scheduling of new ticks halts."""


class ConfigError(ContentPulseError):
    """Runtime settings for a content type are malformed."""

    def __init__(self, content_type: str, message: str):
        super().__init__(f"{content_type}: {message}")
        self.content_type = content_type
