"""Incremental Sync Handler.

Event-triggered reconciliation of a single user against every link sourcing
the affected course (or group). It goes through the same per-user
primitives as the batch engine; moves between target groups are left to the
next full run.

A change applied to a target course can make that course a source for
further links, so the handler cascades into each target course it touched.
A :class:`SyncGuard` carried through the cascade holds the courses being
synchronised and stops a course from being re-entered while it is in flight.
"""

from collections.abc import Iterator
from contextlib import contextmanager
from typing import Optional

from metagroupsync.actions import LinkActions
from metagroupsync.config import Settings, settings as default_settings
from metagroupsync.interfaces import ILinkStore
from metagroupsync.logging import logger, set_sync_context
from metagroupsync.metrics import incremental_syncs_total
from metagroupsync.models import Link, ReconcileReport


class SyncGuard:
    """Courses currently being synchronised on this call path.

    Example:
        >>> guard = SyncGuard()
        >>> with guard.enter(10):
        ...     10 in guard
        True
        >>> 10 in guard
        False
    """

    def __init__(self) -> None:
        self._in_flight: set[int] = set()

    def __contains__(self, course_id: int) -> bool:
        return course_id in self._in_flight

    @contextmanager
    def enter(self, course_id: int) -> Iterator[None]:
        self._in_flight.add(course_id)
        try:
            yield
        finally:
            self._in_flight.discard(course_id)


class IncrementalSyncHandler:
    """Single-user reconciliation driven by host events.

    Errors propagate to the caller.

    Args:
        store: Link store
        actions: Shared per-user primitives
        settings: Settings instance (defaults to the global settings)
    """

    def __init__(
        self,
        store: ILinkStore,
        actions: LinkActions,
        settings: Optional[Settings] = None,
    ):
        self.store = store
        self.actions = actions
        self.settings = settings or default_settings

    def sync_single(
        self,
        course_id: int,
        user_id: int,
        guard: Optional[SyncGuard] = None,
        report: Optional[ReconcileReport] = None,
    ) -> ReconcileReport:
        """Synchronise one user for every enabled link sourcing a course.

        Args:
            course_id: Course where the triggering change happened
            user_id: Affected user
            guard: In-flight courses of the current call path
            report: Report to add to (a new one is created when omitted)

        Returns:
            Operations performed, cascade included
        """
        report = report or ReconcileReport(course_id=course_id)
        if not self.settings.sync_enabled:
            incremental_syncs_total.labels(outcome="disabled").inc()
            return report
        return self._sync(course_id, None, user_id, guard or SyncGuard(), report)

    def sync_group_member(
        self,
        course_id: int,
        group_id: int,
        user_id: int,
        guard: Optional[SyncGuard] = None,
        report: Optional[ReconcileReport] = None,
    ) -> ReconcileReport:
        """Synchronise one user for every enabled link sourcing a group."""
        report = report or ReconcileReport(course_id=course_id)
        if not self.settings.sync_enabled:
            incremental_syncs_total.labels(outcome="disabled").inc()
            return report
        return self._sync(course_id, group_id, user_id, guard or SyncGuard(), report)

    def sync_link_user(self, link: Link, user_id: int, report: ReconcileReport) -> None:
        """Reconcile one user against one link."""
        set_sync_context(link_id=link.id, course_id=link.target_course_id)
        self.actions.sync_user(link, user_id, report)

    def _sync(
        self,
        course_id: int,
        group_id: Optional[int],
        user_id: int,
        guard: SyncGuard,
        report: ReconcileReport,
    ) -> ReconcileReport:
        if course_id in guard:
            logger.debug(f"Course {course_id} is already being synchronised, not re-entering")
            incremental_syncs_total.labels(outcome="skipped_reentrant").inc()
            return report

        links = [
            link
            for link in self.store.links_from(course_id, group_id)
            if not link.is_frozen
        ]
        if not links:
            return report

        set_sync_context(operation="incremental")
        with guard.enter(course_id):
            try:
                for link in links:
                    self.sync_link_user(link, user_id, report)
            except Exception:
                incremental_syncs_total.labels(outcome="error").inc()
                raise
            incremental_syncs_total.labels(outcome="synced").inc()
            logger.debug(
                f"Synchronised user {user_id} from course {course_id} over {len(links)} link(s)"
            )

            for target_course_id in sorted({link.target_course_id for link in links}):
                self._sync(target_course_id, None, user_id, guard, report)

        return report


__all__ = ["SyncGuard", "IncrementalSyncHandler"]
