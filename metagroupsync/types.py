"""Type definitions for metagroupsync.

This module provides TypedDict definitions for the dictionary-shaped results
returned by administrative operations, so callers (the CLI, scripts) get
autocomplete and type checking without another model layer.

Example:
    >>> from metagroupsync.types import CleanupResult
    >>> result: CleanupResult = {"deleted": [], "skipped": [], "total_deleted": 0}
"""

from typing import NotRequired, Required, TypedDict


class SkippedGroup(TypedDict):
    """A group the orphaned-group cleanup could not delete.

    Attributes:
        group_id: Group id
        reason: Why the group was left in place
    """

    group_id: int
    reason: str


class DeletedGroup(TypedDict):
    """A group removed (or, on a dry run, due to be removed) by the cleanup."""

    group_id: int
    course_id: int
    name: str


class CleanupResult(TypedDict):
    """Result of ``cleanup_orphaned_groups``.

    Attributes:
        deleted: Groups deleted (or that would be deleted on a dry run)
        skipped: Groups left in place, with the reason
        total_deleted: Number of groups deleted (would be deleted on a dry run)
    """

    deleted: list[DeletedGroup]
    skipped: list[SkippedGroup]
    total_deleted: int


class LinkSummary(TypedDict, total=False):
    """Flattened link row for tabular display.

    Attributes:
        id: Link id
        target: "course/group" of the target
        source: "course/group" of the logical source
        root: "course/group" of the root source (when resolved)
        status: Lifecycle status value
        sync_mode: Mirror or snapshot
        members: Number of derived enrolments
        last_synced: First successful sync of a snapshot link ("-" when none)
    """

    id: Required[int]
    target: Required[str]
    source: Required[str]
    root: NotRequired[str | None]
    status: Required[str]
    sync_mode: Required[str]
    members: NotRequired[int]
    last_synced: NotRequired[str]


__all__ = ["CleanupResult", "DeletedGroup", "SkippedGroup", "LinkSummary"]
