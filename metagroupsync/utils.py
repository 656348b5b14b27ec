"""Utility functions for metagroupsync.

This module provides common helper functions for timestamp handling,
id-list parsing and group-name manipulation.
"""

import re
from datetime import UTC, datetime

LINKED_SUFFIXES = (" (linked)", " (связ.)")
"""Suffixes that mark a group name as created for a link (English and Russian)."""

_COUNTER_SUFFIX = re.compile(r" \(\d+\)$")


def utc_now() -> datetime:
    """Get current UTC timestamp as timezone-aware datetime."""
    return datetime.now(UTC)


def now_timestamp() -> int:
    """Get the current Unix time in whole seconds.

    Example:
        >>> now_timestamp() > 1_700_000_000
        True
    """
    return int(utc_now().timestamp())


def format_timestamp(value: int | None) -> str:
    """Format a Unix timestamp for display.

    Args:
        value: Unix time in seconds; 0 or None means unbounded

    Returns:
        ISO8601 string with 'Z' suffix, or "-" for unbounded values

    Example:
        >>> format_timestamp(0)
        '-'
        >>> format_timestamp(86400)
        '1970-01-02T00:00:00Z'
    """
    if not value:
        return "-"
    return datetime.fromtimestamp(value, UTC).isoformat().replace("+00:00", "Z")


def parse_id_list(value: str | None) -> list[int]:
    """Parse a comma-separated list of ids.

    Args:
        value: String such as "10, 20,30" (None or empty yields [])

    Returns:
        List of ids in input order, duplicates removed

    Raises:
        ValueError: If an element is not an integer

    Example:
        >>> parse_id_list("10, 20,10")
        [10, 20]
    """
    if not value:
        return []
    ids: list[int] = []
    for part in value.split(","):
        part = part.strip()
        if not part:
            continue
        item = int(part)
        if item not in ids:
            ids.append(item)
    return ids


def dedupe(values: list[int]) -> list[int]:
    """Remove duplicates while keeping first-seen order."""
    return list(dict.fromkeys(values))


def strip_counter_suffix(name: str) -> str:
    """Remove a trailing " (N)" counter from a group name.

    Example:
        >>> strip_counter_suffix("Group A (linked) (3)")
        'Group A (linked)'
    """
    return _COUNTER_SUFFIX.sub("", name)


def has_linked_suffix(name: str) -> bool:
    """Check whether a group name already carries a linked-group suffix.

    A counter after the suffix (" (linked) (2)") still counts.
    """
    for suffix in LINKED_SUFFIXES:
        if name.endswith(suffix):
            return True
        if re.search(re.escape(suffix) + r" \(\d+\)$", name):
            return True
    return False


def linked_group_name(name: str, increment: int | None = None) -> str:
    """Build "<name> (linked)" with an optional "(N)" counter."""
    label = f"{name} (linked)"
    if increment:
        label = f"{label} ({increment})"
    return label.strip()
