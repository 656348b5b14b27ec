"""SyncService: the wired-up application.

Builds every component over one database session and exposes the
administrative operations, event handling and the reconciliation entry
point in one place. The CLI and tests go through this class.

Example:
    >>> service = SyncService()
    >>> service.initialize()
    >>> link = service.create_link(20, 10, 5, target_group_id=50)
    >>> service.run_reconciliation(course_id=20)
    0
    >>> service.close()
"""

from collections.abc import Iterable
from typing import Optional

from metagroupsync.actions import LinkActions
from metagroupsync.config import Settings, settings as default_settings
from metagroupsync.database import DatabaseManager
from metagroupsync.directories import build_directories
from metagroupsync.engine import ReconciliationEngine
from metagroupsync.events import Event, EventObserver
from metagroupsync.groups import GroupManager
from metagroupsync.incremental import IncrementalSyncHandler
from metagroupsync.links import LinkService
from metagroupsync.logging import logger
from metagroupsync.lost_links import LostLinkHandler
from metagroupsync.metrics import set_link_counts
from metagroupsync.models import (
    PLUGIN_COMPONENT,
    ChainStep,
    Link,
    LinkOptions,
    LinkStatus,
    ReconcileReport,
    SyncMode,
)
from metagroupsync.resolver import ChainResolver
from metagroupsync.store import LinkStore
from metagroupsync.types import CleanupResult


class SyncService:
    """Facade over the link store, the engine and the admin operations.

    Args:
        db: Database manager (defaults to one at ``settings.database_path``)
        settings: Settings instance (defaults to the global settings)
    """

    def __init__(self, db: Optional[DatabaseManager] = None, settings: Optional[Settings] = None):
        self.settings = settings or default_settings
        self.db = db or DatabaseManager(self.settings.database_path)
        self._ready = False

    def initialize(self) -> None:
        """Open the database and build every component."""
        if self.db.session is None:
            self.db.initialize()
        session = self.db.session

        self.courses, self.groups, self.enrolments, self.roles = build_directories(session)
        self.store = LinkStore(session)
        self.resolver = ChainResolver(
            self.store, self.courses, self.groups, self.enrolments, self.settings
        )
        self.group_manager = GroupManager(self.groups, self.store, self.settings)
        self.actions = LinkActions(
            self.store,
            self.groups,
            self.enrolments,
            self.roles,
            self.resolver,
            self.group_manager,
            self.settings,
        )
        self.lost_links = LostLinkHandler(
            self.store,
            self.courses,
            self.groups,
            self.enrolments,
            self.actions,
            self.group_manager,
            self.settings,
        )
        self.engine = ReconciliationEngine(
            self.store,
            self.enrolments,
            self.roles,
            self.resolver,
            self.actions,
            self.lost_links,
            self.settings,
        )
        self.incremental = IncrementalSyncHandler(self.store, self.actions, self.settings)
        self.links = LinkService(
            self.store,
            self.courses,
            self.groups,
            self.enrolments,
            self.resolver,
            self.actions,
            self.group_manager,
            self.engine,
            self.settings,
        )
        self.observer = EventObserver(
            self.store,
            self.resolver,
            self.incremental,
            self.lost_links,
            self.engine,
            self.settings,
        )
        self._ready = True
        logger.debug("✅ Sync service initialized")

    def close(self) -> None:
        self.db.close()
        self._ready = False

    def _require_ready(self) -> None:
        if not self._ready:
            raise RuntimeError("Sync service not initialized")

    # ----- admin operations ----------------------------------------------

    def create_link(
        self,
        target_course_id: int,
        source_course_id: int,
        source_group_id: int,
        target_group_id: Optional[int] = None,
        options: Optional[LinkOptions] = None,
    ) -> Link:
        self._require_ready()
        return self.links.create_link(
            target_course_id, source_course_id, source_group_id, target_group_id, options
        )

    def create_links(
        self,
        target_course_id: int,
        source_course_id: int,
        source_group_ids: Iterable[int],
        target_group_id: Optional[int] = None,
        options: Optional[LinkOptions] = None,
    ) -> list[Link]:
        self._require_ready()
        return self.links.create_links(
            target_course_id, source_course_id, source_group_ids, target_group_id, options
        )

    def update_link(
        self,
        link_id: int,
        source_course_id: Optional[int] = None,
        source_group_id: Optional[int] = None,
        target_group_id: Optional[int] = None,
        status: Optional[LinkStatus] = None,
        sync_mode: Optional[SyncMode] = None,
    ) -> Link:
        self._require_ready()
        return self.links.update_link(
            link_id, source_course_id, source_group_id, target_group_id, status, sync_mode
        )

    def set_link_status(self, link_id: int, status: LinkStatus) -> Link:
        self._require_ready()
        return self.links.set_link_status(link_id, status)

    def find_link(self, **filters: int) -> Link | None:
        self._require_ready()
        return self.links.find_link(**filters)

    def delete_link(self, link_id: int) -> bool:
        self._require_ready()
        return self.links.delete_link(link_id)

    def list_links(
        self,
        target_course_id: Optional[int] = None,
        source_course_id: Optional[int] = None,
        status: Optional[LinkStatus] = None,
    ) -> list[Link]:
        self._require_ready()
        return self.links.list_links(target_course_id, source_course_id, status)

    def describe_chain(self, link_id: int) -> list[list[ChainStep]]:
        self._require_ready()
        return self.links.describe_chain(link_id)

    def recalculate_source_courses(
        self, link_id: Optional[int] = None, course_id: Optional[int] = None
    ) -> int:
        self._require_ready()
        return self.links.recalculate_source_courses(link_id, course_id)

    def cleanup_orphaned_groups(
        self, course_ids: Optional[Iterable[int]] = None, dry_run: bool = False
    ) -> CleanupResult:
        self._require_ready()
        return self.links.cleanup_orphaned_groups(course_ids, dry_run)

    # ----- synchronisation -----------------------------------------------

    def run_reconciliation(self, course_id: Optional[int] = None, verbose: bool = False) -> int:
        """Run a reconciliation; returns 0 (ok), 1 (error) or 2 (disabled)."""
        self._require_ready()
        status = self.engine.run_reconciliation(course_id, verbose=verbose)
        set_link_counts(self.link_counts())
        return status

    def reconcile(self, course_id: Optional[int] = None, verbose: bool = False) -> ReconcileReport:
        self._require_ready()
        return self.engine.reconcile(course_id, verbose=verbose)

    def sync_single(self, course_id: int, user_id: int) -> ReconcileReport:
        self._require_ready()
        return self.incremental.sync_single(course_id, user_id)

    def handle_event(self, event: Event) -> ReconcileReport:
        self._require_ready()
        return self.observer.handle(event)

    def purge(self) -> int:
        """Delete every link (unwinding it) and revoke every role granted by links.

        Returns:
            Number of links deleted
        """
        self._require_ready()
        deleted = 0
        for link in self.store.list_links():
            if self.links.delete_link(link.id):
                deleted += 1
        self.roles.unassign_all(origin_component=PLUGIN_COMPONENT)
        logger.info(f"🗑️ Purged {deleted} link(s)")
        return deleted

    def link_counts(self) -> dict[str, int]:
        """Number of links per lifecycle status."""
        self._require_ready()
        counts = dict.fromkeys((status.value for status in LinkStatus), 0)
        for link in self.store.list_links():
            counts[link.status.value] += 1
        return counts

    def get_statistics(self) -> dict[str, int]:
        return self.db.get_statistics()


__all__ = ["SyncService"]
