# ABOUTME: Duplicate detection by canonical URL and normalized title.
# ABOUTME: Builds an index from a fresh store snapshot and grows it as a batch is accepted.

import re
from collections.abc import Iterable

from content_pulse.db.models import ContentRecord
from content_pulse.models import RawItem

_PUNCTUATION = re.compile(r"[^\w\s]", re.UNICODE)
_WHITESPACE = re.compile(r"\s+")


def normalize_title(title: str) -> str:
    """Lower-case, turn punctuation into spaces and collapse whitespace.

    No stemming or fuzzy matching: "Breaking: Storm Hits Pattaya!!" and
    "breaking storm hits pattaya" share a key, "Storm hits Pattaya again" does not.
    """
    text = _PUNCTUATION.sub(" ", title.lower())
    return _WHITESPACE.sub(" ", text).strip()


def normalize_url(url: str) -> str:
    """Case-sensitive URL key with trailing slashes removed."""
    stripped = url.strip()
    return stripped.rstrip("/") or stripped


class DedupIndex:
    """URL and title keys of everything already stored or accepted this batch."""

    def __init__(self, records: Iterable[ContentRecord] = ()):
        self._urls: set[str] = set()
        self._titles: set[str] = set()
        for record in records:
            self._add(record.canonical_url, record.normalized_title)

    def _add(self, url: str, normalized: str | None) -> None:
        self._urls.add(normalize_url(url))
        if normalized:
            self._titles.add(normalized)

    def match(self, item: RawItem) -> str | None:
        """Return ``"url"`` or ``"title"`` for a duplicate, None for a new item."""
        if normalize_url(item.canonical_url) in self._urls:
            return "url"
        normalized = normalize_title(item.title)
        if normalized and normalized in self._titles:
            return "title"
        return None

    def add(self, item: RawItem) -> None:
        self._add(item.canonical_url, normalize_title(item.title))


def is_duplicate(item: RawItem, existing: Iterable[ContentRecord]) -> bool:
    """True when ``item`` matches an existing record by URL or normalized title."""
    return DedupIndex(existing).match(item) is not None
