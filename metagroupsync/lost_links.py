"""Lost-Link Handler.

A link is *lost* when its logical or root source course no longer exists,
or when its logical or resolved source group is gone. Lost links are not an
error: the configured ``lost_link_action`` decides what happens to the
users they brought in, and the engine skips them for the rest of the run.
"""

from typing import Optional

from metagroupsync.actions import LinkActions
from metagroupsync.config import LostLinkAction, Settings, settings as default_settings
from metagroupsync.groups import GroupManager
from metagroupsync.interfaces import (
    ICourseDirectory,
    IEnrolmentDirectory,
    IGroupDirectory,
    ILinkStore,
)
from metagroupsync.logging import logger, set_sync_context
from metagroupsync.metrics import lost_links_handled_total, reconcile_errors_total
from metagroupsync.models import EnrolmentStatus, Link, LinkStatus, ReconcileReport


class LostLinkHandler:
    """Find links whose source disappeared and apply the configured disposition.

    Args:
        store: Link store
        courses: Course directory
        groups: Group directory
        enrolments: Enrolment directory
        actions: Shared per-user primitives
        group_manager: Empty-group deletion
        settings: Settings instance (defaults to the global settings)
    """

    def __init__(
        self,
        store: ILinkStore,
        courses: ICourseDirectory,
        groups: IGroupDirectory,
        enrolments: IEnrolmentDirectory,
        actions: LinkActions,
        group_manager: GroupManager,
        settings: Optional[Settings] = None,
    ):
        self.store = store
        self.courses = courses
        self.groups = groups
        self.enrolments = enrolments
        self.actions = actions
        self.group_manager = group_manager
        self.settings = settings or default_settings

    def is_lost(self, link: Link) -> bool:
        """Check whether a link's source course or group has disappeared."""
        course_ids = {link.logical_source_course_id, link.parent_course_id}
        if any(not self.courses.course_exists(course_id) for course_id in course_ids):
            return True
        group_ids = {link.logical_source_group_id, link.parent_group_id}
        return any(
            group_id > 0 and self.groups.get_group(group_id) is None for group_id in group_ids
        )

    def find_lost_links(self, course_id: Optional[int] = None) -> list[Link]:
        """Enabled, non-frozen links whose source is gone.

        Args:
            course_id: Only consider links targeting this course (None: all)
        """
        links = self.store.list_links(target_course_id=course_id, status=LinkStatus.ENABLED)
        return [link for link in links if not link.is_frozen and self.is_lost(link)]

    def handle(self, link: Link, report: ReconcileReport) -> None:
        """Apply the lost-link disposition to one link; safe to repeat."""
        action = self.settings.lost_link_action
        set_sync_context(link_id=link.id, operation="lost_links")
        lost_links_handled_total.labels(action=action.value).inc()

        if action == LostLinkAction.KEEP:
            logger.info(f"⚠️ Link {link.id} lost its source, keeping its users as they are")
            return

        if action == LostLinkAction.SUSPEND_NOROLES:
            logger.info(f"⚠️ Link {link.id} lost its source, suspending its users")
            for enrolment in self.enrolments.list_enrolments(link.id):
                if enrolment.status == EnrolmentStatus.SUSPENDED:
                    continue
                if self.enrolments.update_enrol(
                    link.id, enrolment.user_id, status=EnrolmentStatus.SUSPENDED
                ):
                    report.record("suspended")
            self.actions.revoke_link_roles(link, report)
            return

        logger.warning(
            f"⚠️ Link {link.id} lost its source, disabling it and unenrolling its users "
            "(destructive: course data of those users is purged)"
        )
        if link.status != LinkStatus.DISABLED:
            link = self.store.set_status(link.id, LinkStatus.DISABLED)
        for enrolment in self.enrolments.list_enrolments(link.id):
            self.actions.unenrol_user(link, enrolment.user_id, report)
        if self.group_manager.delete_empty_group_as_configured(link.target_group_id, link.id):
            report.record("groups_deleted")

    def process(self, course_id: Optional[int], report: ReconcileReport) -> set[int]:
        """Handle every lost link (optionally of one target course).

        Each link is handled independently; a failure is logged, counted and
        the next link is handled.

        Returns:
            Ids of the links handled, for the engine to skip
        """
        handled: set[int] = set()
        for link in self.find_lost_links(course_id):
            try:
                self.handle(link, report)
            except Exception as e:
                report.errors += 1
                reconcile_errors_total.labels(stage="lost_links").inc()
                logger.error(f"❌ Failed to handle lost link {link.id} (course {link.target_course_id}): {e}")
            handled.add(link.id)

        if handled:
            logger.info(f"⚠️ Handled {len(handled)} lost link(s): {sorted(handled)}")
        report.lost_link_ids = sorted(set(report.lost_link_ids) | handled)
        return handled

    def process_links(self, links: list[Link], report: ReconcileReport) -> set[int]:
        """Handle the lost ones among specific links; failures propagate."""
        handled: set[int] = set()
        for link in links:
            if link.is_enabled and not link.is_frozen and self.is_lost(link):
                self.handle(link, report)
                handled.add(link.id)
        return handled


__all__ = ["LostLinkHandler"]
