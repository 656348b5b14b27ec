"""Administrative link operations.

Creating, editing, listing and deleting links, plus the maintenance
operations (source-course recalculation, orphaned-group cleanup) exposed to
administrators. Structural problems (self-links, cycles, unknown courses or
groups) are rejected before anything is written, so a failed creation never
leaves a partial link behind.

Example:
    >>> links = LinkService(...)
    >>> link = links.create_link(target_course_id=20, source_course_id=10,
    ...                          source_group_id=5, target_group_id=50)
    >>> links.create_link(10, 10, 5)
    Traceback (most recent call last):
        ...
    metagroupsync.links.SelfLinkError: Course 10 cannot be linked to itself
"""

from collections.abc import Iterable
from typing import Optional

from metagroupsync.actions import LinkActions
from metagroupsync.config import Settings, settings as default_settings
from metagroupsync.engine import ReconciliationEngine
from metagroupsync.groups import GroupManager
from metagroupsync.interfaces import (
    ICourseDirectory,
    IEnrolmentDirectory,
    IGroupDirectory,
    ILinkStore,
)
from metagroupsync.logging import logger
from metagroupsync.models import (
    CREATE_GROUP,
    CREATE_SHARED_GROUP,
    ChainStep,
    Link,
    LinkOptions,
    LinkStatus,
    ReconcileReport,
    SyncMode,
)
from metagroupsync.resolver import ChainResolver
from metagroupsync.types import CleanupResult, LinkSummary
from metagroupsync.utils import format_timestamp


class LinkError(Exception):
    """Base class for link administration errors."""


class LinkValidationError(LinkError):
    """Missing or invalid ids, unknown courses or groups."""


class SelfLinkError(LinkValidationError):
    """A link whose target course is its own source course."""


class LinkCycleError(LinkValidationError):
    """A link whose target course already feeds its source."""


class LinkService:
    """Create, edit, find, list and delete links.

    Args:
        store: Link store
        courses: Course directory
        groups: Group directory
        enrolments: Enrolment directory
        resolver: Chain resolver
        actions: Shared per-user primitives (used to unwind deleted links)
        group_manager: Target-group creation and cleanup
        engine: Reconciliation engine (sync after create/update)
        settings: Settings instance (defaults to the global settings)
    """

    def __init__(
        self,
        store: ILinkStore,
        courses: ICourseDirectory,
        groups: IGroupDirectory,
        enrolments: IEnrolmentDirectory,
        resolver: ChainResolver,
        actions: LinkActions,
        group_manager: GroupManager,
        engine: ReconciliationEngine,
        settings: Optional[Settings] = None,
    ):
        self.store = store
        self.courses = courses
        self.groups = groups
        self.enrolments = enrolments
        self.resolver = resolver
        self.actions = actions
        self.group_manager = group_manager
        self.engine = engine
        self.settings = settings or default_settings

    # =========================================================================
    # Validation
    # =========================================================================

    def validate_source(self, target_course_id: int, source_course_id: int, source_group_id: int) -> None:
        """Check that (source course, source group) may feed the target course.

        Raises:
            LinkValidationError: Invalid ids, unknown course, or group not in course
            SelfLinkError: Target course equals source course
            LinkCycleError: Target course already feeds the source
        """
        if target_course_id <= 0 or source_course_id <= 0 or source_group_id <= 0:
            raise LinkValidationError(
                f"Invalid ids: target={target_course_id}, source={source_course_id}, "
                f"group={source_group_id}"
            )
        if target_course_id == source_course_id:
            raise SelfLinkError(f"Course {target_course_id} cannot be linked to itself")
        for course_id in (target_course_id, source_course_id):
            if not self.courses.course_exists(course_id):
                raise LinkValidationError(f"Course {course_id} does not exist")

        group = self.groups.get_group(source_group_id)
        if group is None or group.course_id != source_course_id:
            raise LinkValidationError(
                f"Group {source_group_id} does not exist in course {source_course_id}"
            )

        upstream = set(self.resolver.compute_source_courses(source_course_id, source_group_id))
        upstream.update(self.resolver.chain_courses(source_course_id, source_group_id))
        if target_course_id in upstream:
            raise LinkCycleError(
                f"Course {target_course_id} already feeds group {source_group_id} "
                f"of course {source_course_id}"
            )

    def validate_target_group(self, target_course_id: int, target_group_id: int) -> None:
        group = self.groups.get_group(target_group_id)
        if group is None or group.course_id != target_course_id:
            raise LinkValidationError(
                f"Group {target_group_id} does not exist in course {target_course_id}"
            )

    # =========================================================================
    # Creation
    # =========================================================================

    def create_link(
        self,
        target_course_id: int,
        source_course_id: int,
        source_group_id: int,
        target_group_id: Optional[int] = None,
        options: Optional[LinkOptions] = None,
    ) -> Link:
        """Create a link, or update the existing link for the same source.

        Args:
            target_course_id: Course receiving the members
            source_course_id: Logical source course
            source_group_id: Logical source group
            target_group_id: Existing group in the target course; None or
                ``CREATE_GROUP`` creates a group named after the source group
            options: Creation options

        Returns:
            The created (or updated) link

        Raises:
            LinkValidationError: When validation fails (nothing is written)
        """
        options = options or LinkOptions()
        self.validate_source(target_course_id, source_course_id, source_group_id)
        if target_group_id is not None and target_group_id > 0:
            self.validate_target_group(target_course_id, target_group_id)
        elif target_group_id not in (None, CREATE_GROUP, CREATE_SHARED_GROUP):
            raise LinkValidationError(f"Invalid target group id {target_group_id}")

        existing = self.store.find(
            target_course_id=target_course_id,
            logical_source_course_id=source_course_id,
            logical_source_group_id=source_group_id,
        )
        if existing is not None:
            return self._update_existing(existing, target_group_id, options)

        created_group_id = None
        if target_group_id is None or target_group_id <= 0:
            target_group_id = created_group_id = self.group_manager.create_new_group(
                target_course_id,
                linked_group_id=source_group_id,
                explicit_name=options.target_group_name,
            )

        sync_now = self._sync_on_create(options)
        status = self._initial_status(options, sync_now)

        link = Link(
            target_course_id=target_course_id,
            target_group_id=target_group_id,
            logical_source_course_id=source_course_id,
            logical_source_group_id=source_group_id,
            status=status,
            sync_mode=options.sync_mode,
        )
        self.resolver.refresh_root(link)
        self.resolver.refresh_source_courses(link)
        try:
            link = self.store.add(link)
        except Exception:
            if created_group_id is not None:
                self.groups.delete_group(created_group_id)
                logger.warning(f"⚠️ Removed group {created_group_id} created for the failed link")
            raise
        logger.info(
            f"✅ Created link {link.id}: {source_course_id}/{source_group_id} -> "
            f"{target_course_id}/{target_group_id} ({link.status.value})"
        )

        if link.is_enabled and sync_now:
            self.engine.reconcile(target_course_id)
        return self.store.get(link.id) or link

    def create_links(
        self,
        target_course_id: int,
        source_course_id: int,
        source_group_ids: Iterable[int],
        target_group_id: Optional[int] = None,
        options: Optional[LinkOptions] = None,
    ) -> list[Link]:
        """Create one link per source group.

        Source groups already linked into the target course are skipped.
        With ``options.shared_target_group`` (or ``CREATE_SHARED_GROUP``) a
        single new group receives every source group.

        Raises:
            LinkValidationError: When any source group fails validation
                (nothing is written)
        """
        options = options or LinkOptions()
        group_ids = list(dict.fromkeys(source_group_ids))
        for group_id in group_ids:
            self.validate_source(target_course_id, source_course_id, group_id)
        if target_group_id is not None and target_group_id > 0:
            self.validate_target_group(target_course_id, target_group_id)

        linked = {
            link.logical_source_group_id
            for link in self.store.list_links(
                target_course_id=target_course_id, source_course_id=source_course_id
            )
        }
        pending = [group_id for group_id in group_ids if group_id not in linked]
        for group_id in sorted(set(group_ids) - set(pending)):
            logger.info(f"⏭️ Group {group_id} is already linked into course {target_course_id}, skipping")
        if not pending:
            return []

        shared = options.shared_target_group or target_group_id == CREATE_SHARED_GROUP
        if shared:
            target_group_id = self.group_manager.create_new_group(
                target_course_id,
                linked_group_id=pending[0],
                explicit_name=options.target_group_name,
            )

        sync_now = self._sync_on_create(options)
        per_link = options.model_copy(update={"sync_on_create": False, "shared_target_group": False})
        created: list[Link] = []
        for group_id in pending:
            link = self.create_link(
                target_course_id,
                source_course_id,
                group_id,
                target_group_id=target_group_id,
                options=per_link,
            )
            if sync_now and link.status == LinkStatus.PENDING and options.status == LinkStatus.ENABLED:
                link = self.store.set_status(link.id, LinkStatus.ENABLED)
            created.append(link)

        if sync_now and any(link.is_enabled for link in created):
            self.engine.reconcile(target_course_id)
        return [self.store.get(link.id) or link for link in created]

    def _update_existing(
        self, link: Link, target_group_id: Optional[int], options: LinkOptions
    ) -> Link:
        if target_group_id is not None and target_group_id > 0:
            link.target_group_id = target_group_id
        elif link.target_group_id <= 0 or self.groups.get_group(link.target_group_id) is None:
            link.target_group_id = self.group_manager.create_new_group(
                link.target_course_id,
                linked_group_id=link.logical_source_group_id,
                explicit_name=options.target_group_name,
            )
        sync_now = self._sync_on_create(options)
        link.status = self._initial_status(options, sync_now)
        link.sync_mode = options.sync_mode
        self.resolver.refresh_root(link)
        self.resolver.refresh_source_courses(link)
        link = self.store.save(link)
        logger.info(f"✅ Updated existing link {link.id}")

        if link.is_enabled and sync_now:
            self.engine.reconcile(link.target_course_id)
        return self.store.get(link.id) or link

    def _sync_on_create(self, options: LinkOptions) -> bool:
        if options.sync_on_create is None:
            return self.settings.sync_on_create
        return options.sync_on_create

    @staticmethod
    def _initial_status(options: LinkOptions, sync_now: bool) -> LinkStatus:
        """Enabled links that will not sync right away wait for the next run."""
        if options.status == LinkStatus.ENABLED and not sync_now:
            return LinkStatus.PENDING
        return options.status

    # =========================================================================
    # Editing
    # =========================================================================

    def update_link(
        self,
        link_id: int,
        source_course_id: Optional[int] = None,
        source_group_id: Optional[int] = None,
        target_group_id: Optional[int] = None,
        status: Optional[LinkStatus] = None,
        sync_mode: Optional[SyncMode] = None,
    ) -> Link:
        """Edit a link.

        A source change recomputes the root and the source courses; a target
        group change is carried out by the next reconciliation, which moves
        the members.

        Raises:
            LinkError: If the link does not exist
            LinkValidationError: If the new source or target group is invalid
        """
        link = self._require(link_id)

        new_course = source_course_id or link.logical_source_course_id
        new_group = source_group_id or link.logical_source_group_id
        if (new_course, new_group) != (link.logical_source_course_id, link.logical_source_group_id):
            self.validate_source(link.target_course_id, new_course, new_group)
            link.logical_source_course_id = new_course
            link.logical_source_group_id = new_group
            self.resolver.refresh_root(link)
            self.resolver.refresh_source_courses(link)

        if target_group_id is not None and target_group_id != link.target_group_id:
            self.validate_target_group(link.target_course_id, target_group_id)
            link.target_group_id = target_group_id
        if status is not None:
            link.status = status
        if sync_mode is not None:
            link.sync_mode = sync_mode

        link = self.store.save(link)
        logger.info(f"✅ Updated link {link.id}")
        return link

    def set_link_status(self, link_id: int, status: LinkStatus) -> Link:
        """Enable or disable a link; roles of disabled links go on the next run."""
        self._require(link_id)
        link = self.store.set_status(link_id, status)
        logger.info(f"✅ Link {link_id} is now {status.value}")
        return link

    # =========================================================================
    # Lookup
    # =========================================================================

    def find_link(
        self,
        target_course_id: Optional[int] = None,
        source_course_id: Optional[int] = None,
        source_group_id: Optional[int] = None,
        target_group_id: Optional[int] = None,
        link_id: Optional[int] = None,
    ) -> Link | None:
        """Find the lowest-id link matching every given field."""
        filters = {
            key: value
            for key, value in {
                "id": link_id,
                "target_course_id": target_course_id,
                "logical_source_course_id": source_course_id,
                "logical_source_group_id": source_group_id,
                "target_group_id": target_group_id,
            }.items()
            if value is not None
        }
        if not filters:
            return None
        return self.store.find(**filters)

    def list_links(
        self,
        target_course_id: Optional[int] = None,
        source_course_id: Optional[int] = None,
        status: Optional[LinkStatus] = None,
    ) -> list[Link]:
        return self.store.list_links(target_course_id, source_course_id, status)

    def summarize(self, link: Link) -> LinkSummary:
        """Flatten a link for display."""
        root = None
        if link.root_source_course_id:
            root = f"{link.root_source_course_id}/{link.root_source_group_id or '-'}"
        return {
            "id": link.id,
            "target": f"{link.target_course_id}/{link.target_group_id}",
            "source": f"{link.logical_source_course_id}/{link.logical_source_group_id}",
            "root": root,
            "status": link.status.value,
            "sync_mode": link.sync_mode.value,
            "members": len(self.enrolments.list_enrolments(link.id)),
            "last_synced": format_timestamp(link.last_synced_at),
        }

    def describe_chain(self, link_id: int) -> list[list[ChainStep]]:
        return self.resolver.describe_chain(self._require(link_id))

    # =========================================================================
    # Deletion
    # =========================================================================

    def delete_link(self, link_id: int) -> bool:
        """Delete a link after unwinding everything it brought into its target.

        Links that used this link's target group as their source get their
        root recomputed.

        Returns:
            False when the link did not exist
        """
        link = self.store.get(link_id)
        if link is None:
            return False

        report = ReconcileReport(course_id=link.target_course_id)
        for enrolment in self.enrolments.list_enrolments(link.id):
            self.actions.unenrol_user(link, enrolment.user_id, report)
        self.actions.revoke_link_roles(link, report)
        self.store.delete(link.id)
        self.group_manager.delete_empty_group_as_configured(link.target_group_id)
        logger.info(
            f"🗑️ Deleted link {link_id} ({report.operations['unenrolled']} user(s) unenrolled)"
        )

        dependants = self.store.links_from(link.target_course_id, link.target_group_id, enabled_only=False)
        for dependant in dependants:
            self.resolver.refresh_root(dependant)
            self.store.save(dependant)
        return True

    # =========================================================================
    # Maintenance
    # =========================================================================

    def recalculate_source_courses(
        self, link_id: Optional[int] = None, course_id: Optional[int] = None
    ) -> int:
        """Recompute root and source courses for one link, a course, or every link.

        Returns:
            Number of links recomputed

        Raises:
            LinkError: If ``link_id`` names no link
        """
        if link_id is not None:
            links = [self._require(link_id)]
        else:
            links = self.store.list_links(target_course_id=course_id)

        updated = 0
        for link in links:
            try:
                self.resolver.refresh_root(link)
                self.resolver.refresh_source_courses(link)
                self.store.save(link)
            except Exception as e:
                if link_id is not None:
                    raise
                logger.error(f"❌ Failed to recalculate link {link.id}: {e}")
                continue
            updated += 1
            logger.debug(f"Link {link.id} source courses: {link.computed_source_courses}")

        logger.info(f"✅ Recalculated source courses of {updated} link(s)")
        return updated

    def cleanup_orphaned_groups(
        self, course_ids: Optional[Iterable[int]] = None, dry_run: bool = False
    ) -> CleanupResult:
        """Delete empty groups no link targets (default: every course with links)."""
        courses = list(course_ids) if course_ids else self.store.course_ids_with_links()
        return self.group_manager.cleanup_empty_groups(courses, dry_run=dry_run)

    def _require(self, link_id: int) -> Link:
        link = self.store.get(link_id)
        if link is None:
            raise LinkError(f"Link {link_id} does not exist")
        return link


__all__ = [
    "LinkError",
    "LinkValidationError",
    "SelfLinkError",
    "LinkCycleError",
    "LinkService",
]
