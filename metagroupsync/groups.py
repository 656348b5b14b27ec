"""Target-group naming, creation and cleanup.

Groups created for links are named after their source group with a
``" (linked)"`` suffix; a name clash gets a counter (``" (2)"``, ``" (3)"``).
Empty target groups can be removed as they empty out, or swept up later by
:meth:`GroupManager.cleanup_empty_groups`.
"""

from collections.abc import Iterable
from typing import Optional

from metagroupsync.config import Settings, settings as default_settings
from metagroupsync.interfaces import IGroupDirectory, ILinkStore
from metagroupsync.logging import logger
from metagroupsync.types import CleanupResult
from metagroupsync.utils import has_linked_suffix, linked_group_name, strip_counter_suffix


class GroupManager:
    """Creates and removes the groups links write into.

    Args:
        groups: Group directory
        store: Link store (used to keep groups that some link targets)
        settings: Settings instance (defaults to the global settings)
    """

    def __init__(
        self,
        groups: IGroupDirectory,
        store: ILinkStore,
        settings: Optional[Settings] = None,
    ):
        self.groups = groups
        self.store = store
        self.settings = settings or default_settings

    def group_name_for(self, name: str) -> str:
        """Name a new group after ``name``, adding the linked suffix when configured."""
        base = strip_counter_suffix(name.strip())
        if self.settings.add_group_suffix and not has_linked_suffix(base):
            return linked_group_name(base)
        return base

    def create_new_group(
        self,
        course_id: int,
        linked_group_id: Optional[int] = None,
        explicit_name: Optional[str] = None,
        always_create_new: bool = True,
    ) -> int:
        """Create a target group in a course.

        Args:
            course_id: Course receiving the group
            linked_group_id: Source group the new group is named after
            explicit_name: Name to use verbatim (no suffix applied)
            always_create_new: When False, an existing group with the same
                name is reused instead of creating "<name> (2)"

        Returns:
            Id of the created (or reused) group

        Raises:
            ValueError: If neither a usable source group nor a name is given
        """
        if explicit_name and explicit_name.strip():
            name = explicit_name.strip()
        else:
            source = self.groups.get_group(linked_group_id) if linked_group_id else None
            if source is None:
                raise ValueError(
                    f"Cannot name a new group in course {course_id}: "
                    f"source group {linked_group_id} does not exist"
                )
            name = self.group_name_for(source.name)

        existing = self.groups.find_group_by_name(course_id, name)
        if existing is not None and not always_create_new:
            logger.debug(f"Reusing group {existing.id} '{name}' in course {course_id}")
            return existing.id

        candidate, counter = name, 1
        while existing is not None:
            counter += 1
            candidate = f"{name} ({counter})"
            existing = self.groups.find_group_by_name(course_id, candidate)

        group_id = self.groups.create_group(course_id, candidate)
        logger.info(f"➕ Created group {group_id} '{candidate}' in course {course_id}")
        return group_id

    def is_targeted(self, group_id: int, exclude_link_id: Optional[int] = None) -> bool:
        """Check whether any link (in any status) other than ``exclude_link_id`` writes into a group."""
        if exclude_link_id is None:
            return group_id in self.store.target_group_ids()
        return any(
            link.target_group_id == group_id and link.id != exclude_link_id
            for link in self.store.list_links()
        )

    def delete_empty_group_as_configured(
        self, group_id: int, exclude_link_id: Optional[int] = None
    ) -> bool:
        """Delete a group if it is empty, untargeted and deletion is enabled.

        Returns:
            True when the group was deleted
        """
        if not self.settings.delete_empty_groups or group_id <= 0:
            return False
        if self.groups.get_group(group_id) is None:
            return False
        if self.groups.count_members(group_id) > 0 or self.is_targeted(group_id, exclude_link_id):
            return False
        deleted = self.groups.delete_group(group_id)
        if deleted:
            logger.info(f"🗑️ Deleted empty group {group_id}")
        return deleted

    def cleanup_empty_groups(
        self, course_ids: Iterable[int], dry_run: bool = False
    ) -> CleanupResult:
        """Delete every empty group no link targets in the given courses.

        Args:
            course_ids: Courses to sweep
            dry_run: Report the groups without deleting them

        Returns:
            Deleted groups, skipped groups with reasons, and the number of
            groups deleted (or that would be deleted on a dry run)
        """
        result: CleanupResult = {"deleted": [], "skipped": [], "total_deleted": 0}
        targeted = self.store.target_group_ids()

        for course_id in course_ids:
            for group in self.groups.list_groups(course_id):
                if self.groups.count_members(group.id) > 0:
                    continue
                if group.id in targeted:
                    result["skipped"].append({"group_id": group.id, "reason": "targeted by a link"})
                    continue
                entry = {"group_id": group.id, "course_id": course_id, "name": group.name}
                if dry_run:
                    result["deleted"].append(entry)
                    continue
                try:
                    deleted = self.groups.delete_group(group.id)
                except Exception as e:
                    logger.error(f"❌ Failed to delete group {group.id} in course {course_id}: {e}")
                    result["skipped"].append({"group_id": group.id, "reason": str(e)})
                    continue
                if deleted:
                    result["deleted"].append(entry)
                    result["total_deleted"] += 1
                else:
                    result["skipped"].append({"group_id": group.id, "reason": "already deleted"})

        if dry_run:
            result["total_deleted"] = len(result["deleted"])

        verb = "Would delete" if dry_run else "Deleted"
        logger.info(f"🗑️ {verb} {len(result['deleted'])} orphaned group(s)")
        return result


__all__ = ["GroupManager"]
