# ABOUTME: Keyword denylist filter and breaking-news phrase detection for fetched items.
# ABOUTME: Both checks are case-insensitive substring matches over title and summary.

from content_pulse.models import RawItem

BREAKING_PHRASES = [
    "breaking news",
    "breaking:",
    "urgent:",
    "alert:",
    "emergency",
    "developing story",
    "just in:",
    "live update",
    "major announcement",
]


def _haystack(item: RawItem) -> str:
    return f"{item.title} {item.body_summary}".lower()


def matched_keyword(item: RawItem, denylist: list[str]) -> str | None:
    """Return the first denylisted keyword found in the item, if any."""
    content = _haystack(item)
    for keyword in denylist:
        needle = keyword.strip().lower()
        if needle and needle in content:
            return keyword
    return None


def is_allowed(item: RawItem, denylist: list[str]) -> bool:
    """An empty denylist allows everything."""
    return matched_keyword(item, denylist) is None


def is_breaking(item: RawItem) -> bool:
    content = _haystack(item)
    return any(phrase in content for phrase in BREAKING_PHRASES)
