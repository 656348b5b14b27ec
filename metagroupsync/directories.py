"""SQL-backed host directories.

These classes implement the directory protocols from
:mod:`metagroupsync.interfaces` on top of the SQLModel host tables. Every
write commits immediately (per-record atomicity) and is retried when SQLite
reports a transient lock.

Example:
    >>> from metagroupsync.directories import build_directories
    >>> courses, groups, enrolments, roles = build_directories(db.session)
    >>> course = courses.create_course("MATH101", "Mathematics 101")
    >>> group_id = groups.create_group(course.id, "Group A")
    >>> manual = enrolments.create_instance(course.id, "manual")
    >>> enrolments.enrol(manual.id, user_id=7)
    >>> groups.add_member(group_id, 7)
    True
"""

from collections.abc import Iterable
from typing import Any, Optional

from sqlmodel import Session, col, select

from metagroupsync.logging import logger
from metagroupsync.models import (
    CourseRow,
    EnrolInstanceRow,
    EnrolmentStatus,
    GroupMemberRow,
    GroupRow,
    InstanceStatus,
    ParentEnrolment,
    RoleAssignmentRow,
    UserEnrolmentRow,
)
from metagroupsync.repository import Repository, sqlite_retry
from metagroupsync.utils import now_timestamp


def _present(**filters: Any) -> dict[str, Any]:
    """Drop filters left as None."""
    return {key: value for key, value in filters.items() if value is not None}


def method_component(method: str) -> str:
    """Origin component used by an enrolment method ("enrol_<method>")."""
    return f"enrol_{method}"


# =============================================================================
# Courses
# =============================================================================


class CourseDirectory:
    """Course lookups plus host-side course deletion."""

    def __init__(self, session: Session):
        self.session = session
        self.courses = Repository[CourseRow](session, CourseRow)

    def course_exists(self, course_id: int) -> bool:
        return course_id > 0 and self.courses.exists(course_id)

    def get_course(self, course_id: int) -> CourseRow | None:
        if course_id <= 0:
            return None
        return self.courses.get(course_id)

    @sqlite_retry
    def create_course(self, shortname: str, fullname: str = "") -> CourseRow:
        return self.courses.create(CourseRow(shortname=shortname, fullname=fullname or shortname))

    def list_course_ids(self) -> list[int]:
        return [course.id for course in self.courses.find_by() if course.id is not None]

    @sqlite_retry
    def delete_course(self, course_id: int) -> bool:
        """Delete a course with its groups, enrolment methods and role assignments.

        Derived data in *other* courses (links whose source was this course)
        is left alone; it is the lost-link handler's job.
        """
        course = self.courses.get(course_id)
        if course is None:
            return False

        groups = Repository[GroupRow](self.session, GroupRow)
        members = Repository[GroupMemberRow](self.session, GroupMemberRow)
        instances = Repository[EnrolInstanceRow](self.session, EnrolInstanceRow)
        enrolments = Repository[UserEnrolmentRow](self.session, UserEnrolmentRow)
        roles = Repository[RoleAssignmentRow](self.session, RoleAssignmentRow)

        group_ids = [group.id for group in groups.find_by(course_id=course_id)]
        instance_ids = [instance.id for instance in instances.find_by(course_id=course_id)]
        if group_ids:
            members.delete_where(group_id=group_ids)
            groups.delete_where(course_id=course_id)
        if instance_ids:
            enrolments.delete_where(enrol_id=instance_ids)
            instances.delete_where(course_id=course_id)
        roles.delete_where(course_id=course_id)
        self.courses.delete(course_id)
        logger.info(f"🗑️ Deleted course {course_id} ({course.shortname})")
        return True


# =============================================================================
# Groups
# =============================================================================


class GroupDirectory:
    """Groups and memberships; a user is a member of a group at most once."""

    def __init__(self, session: Session):
        self.session = session
        self.groups = Repository[GroupRow](session, GroupRow)
        self.members = Repository[GroupMemberRow](session, GroupMemberRow)

    @sqlite_retry
    def create_group(self, course_id: int, name: str) -> int:
        group = self.groups.create(GroupRow(course_id=course_id, name=name))
        logger.debug(f"➕ Created group {group.id} '{name}' in course {course_id}")
        return group.id

    def get_group(self, group_id: int) -> GroupRow | None:
        if group_id is None or group_id <= 0:
            return None
        return self.groups.get(group_id)

    def find_group_by_name(self, course_id: int, name: str) -> GroupRow | None:
        return self.groups.first_by(course_id=course_id, name=name)

    def list_groups(self, course_id: int) -> list[GroupRow]:
        return list(self.groups.find_by(course_id=course_id))

    @sqlite_retry
    def delete_group(self, group_id: int) -> bool:
        group = self.get_group(group_id)
        if group is None:
            return False
        self.members.delete_where(group_id=group_id)
        self.groups.delete(group_id)
        logger.debug(f"🗑️ Deleted group {group_id} '{group.name}'")
        return True

    @sqlite_retry
    def add_member(
        self,
        group_id: int,
        user_id: int,
        origin_component: str = "",
        origin_item: int = 0,
    ) -> bool:
        if self.get_membership(group_id, user_id) is not None:
            return False
        self.members.create(
            GroupMemberRow(
                group_id=group_id,
                user_id=user_id,
                component=origin_component,
                item_id=origin_item,
                time_added=now_timestamp(),
            )
        )
        return True

    @sqlite_retry
    def remove_member(self, group_id: int, user_id: int) -> bool:
        return self.members.delete_where(group_id=group_id, user_id=user_id) > 0

    def is_member(self, group_id: int, user_id: int) -> bool:
        return self.get_membership(group_id, user_id) is not None

    def get_membership(self, group_id: int, user_id: int) -> GroupMemberRow | None:
        return self.members.first_by(group_id=group_id, user_id=user_id)

    def count_members(self, group_id: int) -> int:
        return self.members.count(group_id=group_id)

    def list_members(self, group_id: int) -> list[GroupMemberRow]:
        return list(self.members.find_by(group_id=group_id))

    def list_memberships_by_origin(
        self, origin_component: str, origin_item: int
    ) -> list[GroupMemberRow]:
        return list(self.members.find_by(component=origin_component, item_id=origin_item))


# =============================================================================
# Enrolments
# =============================================================================


class EnrolmentDirectory:
    """Enrolment method instances and the user enrolments made through them."""

    def __init__(self, session: Session):
        self.session = session
        self.instances = Repository[EnrolInstanceRow](session, EnrolInstanceRow)
        self.enrolments = Repository[UserEnrolmentRow](session, UserEnrolmentRow)
        self.members = Repository[GroupMemberRow](session, GroupMemberRow)
        self.groups = Repository[GroupRow](session, GroupRow)
        self.roles = Repository[RoleAssignmentRow](session, RoleAssignmentRow)

    # ----- instances -----------------------------------------------------

    @sqlite_retry
    def create_instance(
        self,
        course_id: int,
        method: str,
        enabled: bool = True,
        parent_course_id: Optional[int] = None,
        name: Optional[str] = None,
    ) -> EnrolInstanceRow:
        return self.instances.create(
            EnrolInstanceRow(
                course_id=course_id,
                method=method,
                status=InstanceStatus.ENABLED if enabled else InstanceStatus.DISABLED,
                parent_course_id=parent_course_id,
                name=name,
            )
        )

    def get_instance(self, enrol_id: int) -> EnrolInstanceRow | None:
        return self.instances.get(enrol_id)

    @sqlite_retry
    def update_instance(
        self,
        enrol_id: int,
        enabled: Optional[bool] = None,
        parent_course_id: Optional[int] = None,
    ) -> EnrolInstanceRow:
        instance = self.instances.get(enrol_id)
        if instance is None:
            raise LookupError(f"Enrolment instance {enrol_id} does not exist")
        if enabled is not None:
            instance.status = InstanceStatus.ENABLED if enabled else InstanceStatus.DISABLED
        if parent_course_id is not None:
            instance.parent_course_id = parent_course_id
        return self.instances.update(instance)

    @sqlite_retry
    def delete_instance(self, enrol_id: int) -> bool:
        if not self.instances.exists(enrol_id):
            return False
        self.enrolments.delete_where(enrol_id=enrol_id)
        return self.instances.delete(enrol_id)

    # ----- user enrolments -----------------------------------------------

    @sqlite_retry
    def enrol(
        self,
        enrol_id: int,
        user_id: int,
        role_id: Optional[int] = None,
        timestart: int = 0,
        timeend: int = 0,
        status: EnrolmentStatus = EnrolmentStatus.ACTIVE,
    ) -> UserEnrolmentRow:
        """Enrol a user, or update the existing enrolment in place."""
        instance = self.instances.get(enrol_id)
        if instance is None:
            raise LookupError(f"Enrolment instance {enrol_id} does not exist")

        enrolment = self.get_enrolment(enrol_id, user_id)
        if enrolment is None:
            enrolment = UserEnrolmentRow(enrol_id=enrol_id, user_id=user_id)
        enrolment.status = int(status)
        enrolment.timestart = timestart
        enrolment.timeend = timeend
        enrolment.time_modified = now_timestamp()
        enrolment = self.enrolments.update(enrolment)

        if role_id is not None:
            exists = self.roles.first_by(
                role_id=role_id,
                user_id=user_id,
                course_id=instance.course_id,
                component=method_component(instance.method),
                item_id=enrol_id,
            )
            if exists is None:
                self.roles.create(
                    RoleAssignmentRow(
                        role_id=role_id,
                        user_id=user_id,
                        course_id=instance.course_id,
                        component=method_component(instance.method),
                        item_id=enrol_id,
                    )
                )
        return enrolment

    @sqlite_retry
    def update_enrol(
        self,
        enrol_id: int,
        user_id: int,
        status: Optional[EnrolmentStatus] = None,
        timestart: Optional[int] = None,
        timeend: Optional[int] = None,
    ) -> bool:
        enrolment = self.get_enrolment(enrol_id, user_id)
        if enrolment is None:
            return False

        changed = False
        if status is not None and enrolment.status != status:
            enrolment.status = int(status)
            changed = True
        if timestart is not None and enrolment.timestart != timestart:
            enrolment.timestart = timestart
            changed = True
        if timeend is not None and enrolment.timeend != timeend:
            enrolment.timeend = timeend
            changed = True

        if changed:
            enrolment.time_modified = now_timestamp()
            self.enrolments.update(enrolment)
        return changed

    @sqlite_retry
    def unenrol(self, enrol_id: int, user_id: int) -> bool:
        """Remove an enrolment with everything it brought into the course.

        The method's own memberships and role assignments go with it. When
        this was the user's last enrolment in the course, every remaining
        membership and role assignment in that course is purged as well.
        """
        instance = self.instances.get(enrol_id)
        enrolment = self.get_enrolment(enrol_id, user_id)
        if instance is None or enrolment is None:
            return False

        component = method_component(instance.method)
        course_group_ids = [group.id for group in self.groups.find_by(course_id=instance.course_id)]

        self.session.delete(enrolment)
        self.enrolments.commit()

        if course_group_ids:
            self.members.delete_where(
                group_id=course_group_ids, user_id=user_id, component=component, item_id=enrol_id
            )
        self.roles.delete_where(
            user_id=user_id, course_id=instance.course_id, component=component, item_id=enrol_id
        )

        if not self._has_course_enrolment(instance.course_id, user_id):
            if course_group_ids:
                self.members.delete_where(group_id=course_group_ids, user_id=user_id)
            self.roles.delete_where(user_id=user_id, course_id=instance.course_id)
        return True

    def get_enrolment(self, enrol_id: int, user_id: int) -> UserEnrolmentRow | None:
        return self.enrolments.first_by(enrol_id=enrol_id, user_id=user_id)

    def list_enrolments(self, enrol_id: int) -> list[UserEnrolmentRow]:
        return list(self.enrolments.find_by(enrol_id=enrol_id))

    def list_active_enrolments(
        self,
        course_id: int,
        enabled_methods: Iterable[str],
        user_ids: Optional[Iterable[int]] = None,
    ) -> list[ParentEnrolment]:
        stmt = (
            select(UserEnrolmentRow, EnrolInstanceRow)
            .join(EnrolInstanceRow, col(EnrolInstanceRow.id) == col(UserEnrolmentRow.enrol_id))
            .where(EnrolInstanceRow.course_id == course_id)
            .where(col(EnrolInstanceRow.method).in_(list(enabled_methods)))
        )
        if user_ids is not None:
            stmt = stmt.where(col(UserEnrolmentRow.user_id).in_(list(user_ids)))
        stmt = stmt.order_by(col(UserEnrolmentRow.id))

        return [
            ParentEnrolment(
                user_id=enrolment.user_id,
                enrol_id=instance.id,
                method=instance.method,
                status=EnrolmentStatus(enrolment.status),
                instance_enabled=instance.status == InstanceStatus.ENABLED,
                timestart=enrolment.timestart,
                timeend=enrolment.timeend,
                parent_course_id=instance.parent_course_id,
            )
            for enrolment, instance in self.session.exec(stmt).all()
        ]

    def list_group_enrol_methods(
        self, course_id: int, group_id: int, enabled_methods: Iterable[str]
    ) -> list[EnrolInstanceRow]:
        stmt = (
            select(EnrolInstanceRow)
            .join(UserEnrolmentRow, col(UserEnrolmentRow.enrol_id) == col(EnrolInstanceRow.id))
            .join(GroupMemberRow, col(GroupMemberRow.user_id) == col(UserEnrolmentRow.user_id))
            .where(EnrolInstanceRow.course_id == course_id)
            .where(col(EnrolInstanceRow.method).in_(list(enabled_methods)))
            .where(GroupMemberRow.group_id == group_id)
            .distinct()
            .order_by(col(EnrolInstanceRow.id))
        )
        return list(self.session.exec(stmt).all())

    def _has_course_enrolment(self, course_id: int, user_id: int) -> bool:
        stmt = (
            select(UserEnrolmentRow.id)
            .join(EnrolInstanceRow, col(EnrolInstanceRow.id) == col(UserEnrolmentRow.enrol_id))
            .where(EnrolInstanceRow.course_id == course_id)
            .where(UserEnrolmentRow.user_id == user_id)
        )
        return self.session.exec(stmt).first() is not None


# =============================================================================
# Roles
# =============================================================================


class RoleDirectory:
    """Role assignments in course contexts, tagged with their origin."""

    def __init__(self, session: Session):
        self.session = session
        self.assignments = Repository[RoleAssignmentRow](session, RoleAssignmentRow)

    @sqlite_retry
    def assign(
        self,
        role_id: int,
        user_id: int,
        context_id: int,
        origin_component: str = "",
        origin_item: int = 0,
    ) -> bool:
        existing = self.assignments.first_by(
            role_id=role_id,
            user_id=user_id,
            course_id=context_id,
            component=origin_component,
            item_id=origin_item,
        )
        if existing is not None:
            return False
        self.assignments.create(
            RoleAssignmentRow(
                role_id=role_id,
                user_id=user_id,
                course_id=context_id,
                component=origin_component,
                item_id=origin_item,
            )
        )
        return True

    @sqlite_retry
    def unassign(
        self,
        role_id: int,
        user_id: int,
        context_id: int,
        origin_component: str = "",
        origin_item: int = 0,
    ) -> bool:
        removed = self.assignments.delete_where(
            role_id=role_id,
            user_id=user_id,
            course_id=context_id,
            component=origin_component,
            item_id=origin_item,
        )
        return removed > 0

    @sqlite_retry
    def unassign_all(
        self,
        user_id: Optional[int] = None,
        context_id: Optional[int] = None,
        origin_component: Optional[str] = None,
        origin_item: Optional[int] = None,
    ) -> int:
        filters = _present(
            user_id=user_id,
            course_id=context_id,
            component=origin_component,
            item_id=origin_item,
        )
        if not filters:
            raise ValueError("unassign_all needs at least one filter")
        return self.assignments.delete_where(**filters)

    def list_assignments(
        self,
        context_id: Optional[int] = None,
        user_id: Optional[int] = None,
        origin_component: Optional[str] = None,
        origin_item: Optional[int] = None,
    ) -> list[RoleAssignmentRow]:
        return list(
            self.assignments.find_by(
                **_present(
                    course_id=context_id,
                    user_id=user_id,
                    component=origin_component,
                    item_id=origin_item,
                )
            )
        )


def build_directories(
    session: Session,
) -> tuple[CourseDirectory, GroupDirectory, EnrolmentDirectory, RoleDirectory]:
    """Create the four host directories over one session."""
    return (
        CourseDirectory(session),
        GroupDirectory(session),
        EnrolmentDirectory(session),
        RoleDirectory(session),
    )


__all__ = [
    "CourseDirectory",
    "GroupDirectory",
    "EnrolmentDirectory",
    "RoleDirectory",
    "build_directories",
    "method_component",
]
