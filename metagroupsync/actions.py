"""Per-user primitives shared by the batch engine and the incremental handler.

Both paths decide and apply changes for one (link, user) pair through the
methods below, so a full reconciliation and a stream of events end in the
same state. Every method reads current state before writing and writes
nothing when the state already matches, which keeps repeated runs free of
operations.
"""

from collections import defaultdict
from collections.abc import Iterable
from typing import Optional

from metagroupsync.aggregation import aggregate_parent_state, needs_update
from metagroupsync.config import Settings, UnenrolAction, settings as default_settings
from metagroupsync.directories import method_component
from metagroupsync.groups import GroupManager
from metagroupsync.interfaces import (
    IEnrolmentDirectory,
    IGroupDirectory,
    ILinkStore,
    IRoleDirectory,
)
from metagroupsync.logging import logger
from metagroupsync.models import (
    LINK_METHOD,
    MANUAL_COMPONENT,
    META_METHOD,
    PLUGIN_COMPONENT,
    AggregatedState,
    EnrolmentStatus,
    Link,
    ParentEnrolment,
    ReconcileReport,
    UserEnrolmentRow,
)
from metagroupsync.resolver import ChainResolver


class LinkActions:
    """Decide and apply per-user changes for one link.

    Args:
        store: Link store
        groups: Group directory
        enrolments: Enrolment directory
        roles: Role directory
        resolver: Chain resolver (aggregated-group lookups)
        group_manager: Target-group creation and cleanup
        settings: Settings instance (defaults to the global settings)
    """

    def __init__(
        self,
        store: ILinkStore,
        groups: IGroupDirectory,
        enrolments: IEnrolmentDirectory,
        roles: IRoleDirectory,
        resolver: ChainResolver,
        group_manager: GroupManager,
        settings: Optional[Settings] = None,
    ):
        self.store = store
        self.groups = groups
        self.enrolments = enrolments
        self.roles = roles
        self.resolver = resolver
        self.group_manager = group_manager
        self.settings = settings or default_settings

    # =========================================================================
    # Source state
    # =========================================================================

    def collect_parent_enrolments(
        self, link: Link, user_ids: Optional[Iterable[int]] = None
    ) -> dict[int, list[ParentEnrolment]]:
        """Qualifying source enrolments per user for a link.

        Qualifying enrolments are the enrolments, through an enabled method,
        of the members of the link's resolved source group in the resolved
        source course. Enrolments that feed back from the link's own target
        course are ignored. When the logical source differs from the root,
        members added to the logical group by hand count too, through their
        enrolments in the logical course.

        Args:
            link: Link to collect for
            user_ids: Restrict to these users (None: every member)

        Returns:
            Mapping of user id to that user's qualifying enrolments, in user order
        """
        wanted = set(user_ids) if user_ids is not None else None
        collected: dict[int, list[ParentEnrolment]] = defaultdict(list)

        members = self._source_members(link.parent_group_id, wanted)
        if members:
            rows = self.enrolments.list_active_enrolments(
                link.parent_course_id, self.settings.enabled_methods, members
            )
            for row in rows:
                if not self._feeds_back(link, row):
                    collected[row.user_id].append(row)

        logical = (link.logical_source_course_id, link.logical_source_group_id)
        if logical != (link.parent_course_id, link.parent_group_id):
            manual_members = [
                member.user_id
                for member in self.groups.list_members(link.logical_source_group_id)
                if member.component == MANUAL_COMPONENT
                and (wanted is None or member.user_id in wanted)
            ]
            if manual_members:
                rows = self.enrolments.list_active_enrolments(
                    link.logical_source_course_id, self.settings.enabled_methods, manual_members
                )
                for row in rows:
                    if row.method != LINK_METHOD and not self._feeds_back(link, row):
                        collected[row.user_id].append(row)

        return {user_id: collected[user_id] for user_id in sorted(collected)}

    def _source_members(self, group_id: int, wanted: Optional[set[int]]) -> list[int]:
        if not group_id or group_id <= 0:
            logger.warning(f"⚠️ Source group id {group_id} is not a real group, skipping")
            return []
        members = [member.user_id for member in self.groups.list_members(group_id)]
        if wanted is not None:
            members = [user_id for user_id in members if user_id in wanted]
        return members

    @staticmethod
    def _feeds_back(link: Link, row: ParentEnrolment) -> bool:
        return (
            row.method in (LINK_METHOD, META_METHOD)
            and row.parent_course_id == link.target_course_id
        )

    def synced_role_ids(self, link: Link, user_id: int) -> set[int]:
        """Roles of a user in the source contexts that are mirrored into the target."""
        components = {MANUAL_COMPONENT, PLUGIN_COMPONENT} | {
            method_component(method) for method in self.settings.enabled_methods
        }
        nosync = set(self.settings.nosync_role_ids)
        contexts = {link.parent_course_id, link.logical_source_course_id}

        role_ids: set[int] = set()
        for context_id in sorted(contexts):
            for assignment in self.roles.list_assignments(context_id=context_id, user_id=user_id):
                if assignment.component in components and assignment.role_id not in nosync:
                    role_ids.add(assignment.role_id)
        return role_ids

    def qualifies(self, link: Link, user_id: int) -> bool:
        """Check the role filter; everyone qualifies when all members are synced."""
        return self.settings.sync_all or bool(self.synced_role_ids(link, user_id))

    # =========================================================================
    # Enrolments
    # =========================================================================

    def create_or_restore(
        self, link: Link, user_id: int, state: AggregatedState, report: ReconcileReport
    ) -> None:
        """Create whichever of the derived enrolment and membership is missing."""
        if not self.qualifies(link, user_id):
            logger.debug(f"User {user_id} holds no synced role for link {link.id}, not enrolling")
            return

        if self.enrolments.get_enrolment(link.id, user_id) is None:
            self.enrolments.enrol(
                link.id,
                user_id,
                timestart=state.timestart,
                timeend=state.timeend,
                status=state.status,
            )
            report.record("enrolled")
            logger.debug(f"➕ Enrolled user {user_id} in course {link.target_course_id} (link {link.id})")

        self.ensure_membership(link, user_id, report)

    def update_status(
        self,
        link: Link,
        enrolment: UserEnrolmentRow,
        state: AggregatedState,
        report: ReconcileReport,
    ) -> bool:
        """Bring a derived enrolment's status and window in line with its sources."""
        if not needs_update(enrolment, state):
            return False
        if state.is_active and not self.qualifies(link, enrolment.user_id):
            return False

        window = (state.timestart, state.timeend) if state.is_active else (None, None)
        changed = self.enrolments.update_enrol(
            link.id, enrolment.user_id, status=state.status, timestart=window[0], timeend=window[1]
        )
        if changed:
            report.record("status_updated")
            logger.debug(
                f"Updated user {enrolment.user_id} on link {link.id} to "
                f"{state.status.name.lower()} ({state.timestart}-{state.timeend})"
            )
        return changed

    def unenrol_user(self, link: Link, user_id: int, report: ReconcileReport) -> None:
        """Fully unenrol a user from a link, keeping fan-in memberships alive."""
        self.release_memberships(link, user_id)
        if self.enrolments.unenrol(link.id, user_id):
            report.record("unenrolled")
            logger.debug(f"🗑️ Unenrolled user {user_id} from course {link.target_course_id} (link {link.id})")

    def apply_unenrol_action(
        self, link: Link, enrolment: UserEnrolmentRow, report: ReconcileReport
    ) -> None:
        """Apply the configured unenrol action to a user who no longer qualifies.

        ``unenrol`` removes the enrolment; ``suspend`` and ``suspendnoroles``
        suspend it and take the user out of the link's groups, the latter also
        revoking the roles granted through the link.
        """
        user_id = enrolment.user_id
        action = self.settings.unenrol_action

        if action == UnenrolAction.UNENROL:
            self.unenrol_user(link, user_id, report)
            return

        if enrolment.status != EnrolmentStatus.SUSPENDED:
            if self.enrolments.update_enrol(link.id, user_id, status=EnrolmentStatus.SUSPENDED):
                report.record("suspended")
                logger.debug(f"Suspended user {user_id} on link {link.id}")
        self.release_memberships(link, user_id)

        if action == UnenrolAction.SUSPEND_NOROLES:
            removed = self.roles.unassign_all(
                user_id=user_id,
                context_id=link.target_course_id,
                origin_component=PLUGIN_COMPONENT,
                origin_item=link.id,
            )
            report.record("roles_unassigned", removed)

    # =========================================================================
    # Group memberships
    # =========================================================================

    def target_group(self, link: Link, report: ReconcileReport) -> Optional[int]:
        """The link's target group, recreating it when it was deleted.

        Returns None (with a warning) when the link holds a placeholder
        instead of a group id.
        """
        if link.target_group_id <= 0:
            logger.warning(
                f"⚠️ Link {link.id} has no target group ({link.target_group_id}), "
                "skipping group membership"
            )
            return None
        if self.groups.get_group(link.target_group_id) is not None:
            return link.target_group_id

        stored = self.store.get(link.id)
        if (
            stored is not None
            and stored.target_group_id != link.target_group_id
            and self.groups.get_group(stored.target_group_id) is not None
        ):
            link.target_group_id = stored.target_group_id
            return link.target_group_id

        if self.groups.get_group(link.logical_source_group_id) is not None:
            group_id = self.group_manager.create_new_group(
                link.target_course_id, linked_group_id=link.logical_source_group_id
            )
        else:
            group_id = self.group_manager.create_new_group(
                link.target_course_id,
                explicit_name=self.group_manager.group_name_for(
                    link.cached_source_group_name or f"Link {link.id}"
                ),
            )
        logger.warning(
            f"⚠️ Target group {link.target_group_id} of link {link.id} is gone, "
            f"replaced with group {group_id}"
        )
        retargeted = self.store.retarget_group(link.target_group_id, group_id)
        if len(retargeted) > 1:
            logger.info(f"🔁 Links {retargeted} now share recreated group {group_id}")
        link.target_group_id = group_id
        self.store.save(link)
        report.record("groups_created")
        return group_id

    def ensure_membership(self, link: Link, user_id: int, report: ReconcileReport) -> bool:
        """Put a user in the link's target group unless already a member (of any origin)."""
        group_id = self.target_group(link, report)
        if group_id is None or self.groups.is_member(group_id, user_id):
            return False
        self.groups.add_member(group_id, user_id, PLUGIN_COMPONENT, link.id)
        report.record("joined_group")
        return True

    def stale_memberships(self, link: Link) -> dict[int, list[int]]:
        """Groups other than the current target holding members made by the link, per user."""
        stale: dict[int, list[int]] = defaultdict(list)
        for membership in self.groups.list_memberships_by_origin(PLUGIN_COMPONENT, link.id):
            if membership.group_id != link.target_group_id:
                stale[membership.user_id].append(membership.group_id)
        return dict(stale)

    def move_member(
        self, link: Link, user_id: int, old_group_id: int, report: ReconcileReport
    ) -> None:
        """Move a user from a former target group into the current one."""
        self.ensure_membership(link, user_id, report)
        self.release_membership(link, user_id, old_group_id)
        report.record("moved")
        logger.debug(f"Moved user {user_id} from group {old_group_id} to {link.target_group_id}")
        if self.group_manager.delete_empty_group_as_configured(old_group_id):
            report.record("groups_deleted")

    def release_memberships(self, link: Link, user_id: int) -> None:
        """Release every membership the link made for a user."""
        group_ids = {
            membership.group_id
            for membership in self.groups.list_memberships_by_origin(PLUGIN_COMPONENT, link.id)
            if membership.user_id == user_id
        }
        for group_id in sorted(group_ids):
            self.release_membership(link, user_id, group_id)

    def release_membership(self, link: Link, user_id: int, group_id: int) -> bool:
        """Take a user out of a group the link put them in.

        When another enabled link still feeds the same group and still has a
        qualifying source for the user, the membership is handed over to
        that link instead of being removed.

        Returns:
            True when the membership was removed or handed over
        """
        membership = self.groups.get_membership(group_id, user_id)
        if membership is None:
            return False
        if membership.component != PLUGIN_COMPONENT or membership.item_id != link.id:
            return False

        for sibling in self.resolver.find_aggregated_links(link.target_course_id, group_id):
            if sibling.id == link.id:
                continue
            if self.collect_parent_enrolments(sibling, [user_id]) and self.qualifies(
                sibling, user_id
            ):
                self.groups.remove_member(group_id, user_id)
                self.groups.add_member(group_id, user_id, PLUGIN_COMPONENT, sibling.id)
                logger.debug(
                    f"Membership of user {user_id} in group {group_id} handed from "
                    f"link {link.id} to link {sibling.id}"
                )
                return True

        self.groups.remove_member(group_id, user_id)
        return True

    # =========================================================================
    # Roles
    # =========================================================================

    def sync_roles_for_user(
        self,
        link: Link,
        user_id: int,
        enrolment_active: bool,
        report: ReconcileReport,
        assign: bool = True,
        unassign: bool = True,
    ) -> None:
        """Assign and revoke the roles a link grants one user.

        Only assignments made for this link (component ``enrol_metagroup``,
        item = link id) are touched. Removal is skipped entirely when the
        unenrol action keeps roles.
        """
        current = {
            assignment.role_id
            for assignment in self.roles.list_assignments(
                context_id=link.target_course_id,
                user_id=user_id,
                origin_component=PLUGIN_COMPONENT,
                origin_item=link.id,
            )
        }
        wanted = (
            self.synced_role_ids(link, user_id)
            if link.is_enabled and enrolment_active
            else set()
        )

        if assign:
            for role_id in sorted(wanted - current):
                if self.roles.assign(role_id, user_id, link.target_course_id, PLUGIN_COMPONENT, link.id):
                    report.record("roles_assigned")

        if unassign and not self.settings.keeps_roles_on_unenrol:
            for role_id in sorted(current - wanted):
                if self.roles.unassign(role_id, user_id, link.target_course_id, PLUGIN_COMPONENT, link.id):
                    report.record("roles_unassigned")

    def revoke_link_roles(self, link: Link, report: ReconcileReport) -> int:
        """Revoke every role granted through a link."""
        removed = self.roles.unassign_all(
            context_id=link.target_course_id,
            origin_component=PLUGIN_COMPONENT,
            origin_item=link.id,
        )
        report.record("roles_unassigned", removed)
        return removed

    # =========================================================================
    # One user, one link
    # =========================================================================

    def sync_user(self, link: Link, user_id: int, report: ReconcileReport) -> None:
        """Reconcile one user against one link.

        Creates or restores the enrolment and membership, applies the unenrol
        action when the user no longer qualifies, updates status and window,
        then syncs roles. Target-group moves are left to full reconciliation.
        """
        rows = self.collect_parent_enrolments(link, [user_id]).get(user_id, [])
        enrolment = self.enrolments.get_enrolment(link.id, user_id)

        if not rows or not self.qualifies(link, user_id):
            if enrolment is not None:
                self.apply_unenrol_action(link, enrolment, report)
                enrolment = self.enrolments.get_enrolment(link.id, user_id)
                if enrolment is not None:
                    self.sync_roles_for_user(link, user_id, False, report)
            return

        state = aggregate_parent_state(rows)
        self.create_or_restore(link, user_id, state, report)
        enrolment = self.enrolments.get_enrolment(link.id, user_id)
        if enrolment is None:
            return
        self.update_status(link, enrolment, state, report)
        enrolment = self.enrolments.get_enrolment(link.id, user_id)
        self.sync_roles_for_user(
            link, user_id, enrolment.status == EnrolmentStatus.ACTIVE, report
        )


__all__ = ["LinkActions"]
