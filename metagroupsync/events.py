"""Host events and their routing.

The host platform reports changes as small pydantic events; the
:class:`EventObserver` routes each one to the incremental handler, the
Lost-Link Handler, the engine or the resolver. Handlers run inline and let
exceptions propagate so the host can retry. With synchronisation disabled
every event is ignored.

Example:
    >>> observer.handle(UserEnrolmentEvent(kind="created", course_id=10, user_id=7))
"""

from typing import Literal, Optional, Union

from pydantic import BaseModel, ConfigDict

from metagroupsync.config import Settings, settings as default_settings
from metagroupsync.engine import ReconciliationEngine
from metagroupsync.incremental import IncrementalSyncHandler
from metagroupsync.interfaces import ILinkStore
from metagroupsync.logging import logger
from metagroupsync.lost_links import LostLinkHandler
from metagroupsync.models import LINK_METHOD, ReconcileReport
from metagroupsync.resolver import ChainResolver


class HostEvent(BaseModel):
    """Base class of host events."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    course_id: int


class UserEnrolmentEvent(HostEvent):
    """A user enrolment was created, updated or deleted in a course."""

    kind: Literal["created", "updated", "deleted"]
    user_id: int


class RoleAssignmentEvent(HostEvent):
    """A role was assigned or unassigned in a course context."""

    kind: Literal["assigned", "unassigned"]
    user_id: int
    role_id: int


class GroupMemberEvent(HostEvent):
    """A user was added to or removed from a group."""

    kind: Literal["added", "removed"]
    group_id: int
    user_id: int


class GroupDeletedEvent(HostEvent):
    group_id: int


class CourseDeletedEvent(HostEvent):
    pass


class EnrolInstanceEvent(HostEvent):
    """An enrolment method instance was updated (e.g. enabled/disabled) or deleted."""

    kind: Literal["updated", "deleted"]
    enrol_id: int
    method: Optional[str] = None


Event = Union[
    UserEnrolmentEvent,
    RoleAssignmentEvent,
    GroupMemberEvent,
    GroupDeletedEvent,
    CourseDeletedEvent,
    EnrolInstanceEvent,
]


class EventObserver:
    """Routes host events to the component that reconciles them.

    Args:
        store: Link store
        resolver: Chain resolver
        incremental: Incremental Sync Handler
        lost_links: Lost-Link Handler
        engine: Reconciliation Engine
        settings: Settings instance (defaults to the global settings)
    """

    def __init__(
        self,
        store: ILinkStore,
        resolver: ChainResolver,
        incremental: IncrementalSyncHandler,
        lost_links: LostLinkHandler,
        engine: ReconciliationEngine,
        settings: Optional[Settings] = None,
    ):
        self.store = store
        self.resolver = resolver
        self.incremental = incremental
        self.lost_links = lost_links
        self.engine = engine
        self.settings = settings or default_settings
        self._handlers = {
            UserEnrolmentEvent: self._on_user_enrolment,
            RoleAssignmentEvent: self._on_role_assignment,
            GroupMemberEvent: self._on_group_member,
            GroupDeletedEvent: self._on_source_removed,
            CourseDeletedEvent: self._on_source_removed,
            EnrolInstanceEvent: self._on_enrol_instance,
        }

    def handle(self, event: Event) -> ReconcileReport:
        """Route one event.

        Returns:
            Operations performed while handling the event

        Raises:
            TypeError: If the event type is unknown
        """
        report = ReconcileReport(course_id=event.course_id)
        if not self.settings.sync_enabled:
            logger.debug(f"Synchronisation disabled, ignoring {type(event).__name__}")
            return report

        handler = self._handlers.get(type(event))
        if handler is None:
            raise TypeError(f"Unsupported event: {type(event).__name__}")
        logger.debug(f"Handling {type(event).__name__} for course {event.course_id}")
        handler(event, report)
        return report

    def _on_user_enrolment(self, event: UserEnrolmentEvent, report: ReconcileReport) -> None:
        self.incremental.sync_single(event.course_id, event.user_id, report=report)

    def _on_role_assignment(self, event: RoleAssignmentEvent, report: ReconcileReport) -> None:
        self.incremental.sync_single(event.course_id, event.user_id, report=report)

    def _on_group_member(self, event: GroupMemberEvent, report: ReconcileReport) -> None:
        self.incremental.sync_group_member(
            event.course_id, event.group_id, event.user_id, report=report
        )

    def _on_source_removed(
        self, event: GroupDeletedEvent | CourseDeletedEvent, report: ReconcileReport
    ) -> None:
        group_id = event.group_id if isinstance(event, GroupDeletedEvent) else None
        links = self.store.links_from(event.course_id, group_id)
        handled = self.lost_links.process_links(links, report)
        if handled:
            logger.info(f"⚠️ Source removal in course {event.course_id} made {len(handled)} link(s) lost")

    def _on_enrol_instance(self, event: EnrolInstanceEvent, report: ReconcileReport) -> None:
        links = self.store.links_from(event.course_id)
        if event.kind == "updated":
            for target_course_id in sorted({link.target_course_id for link in links}):
                course_report = self.engine.reconcile(target_course_id)
                for operation, count in course_report.operations.items():
                    report.record(operation, count)
                report.errors += course_report.errors
            return

        if event.method == LINK_METHOD:
            return
        for link in links:
            self.resolver.refresh_root(link)
            self.resolver.refresh_source_courses(link)
            self.store.save(link)


__all__ = [
    "HostEvent",
    "UserEnrolmentEvent",
    "RoleAssignmentEvent",
    "GroupMemberEvent",
    "GroupDeletedEvent",
    "CourseDeletedEvent",
    "EnrolInstanceEvent",
    "Event",
    "EventObserver",
]
