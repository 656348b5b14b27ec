"""Protocol interfaces for the host platform and the link store.

The reconciliation engine never touches host tables directly. It talks to
four narrow directories (courses, groups, enrolments, roles) and to the link
store through these @runtime_checkable protocols, so alternative hosts or
test doubles can be swapped in without inheritance.

Example:
    >>> from metagroupsync.interfaces import ICourseDirectory
    >>> class FakeCourses:
    ...     def course_exists(self, course_id): return course_id == 10
    ...     def get_course(self, course_id): return None
    ...     def create_course(self, shortname, fullname=""): ...
    ...     def list_course_ids(self): return [10]
    >>> isinstance(FakeCourses(), ICourseDirectory)
    True
"""

from collections.abc import Iterable
from typing import Optional, Protocol, runtime_checkable

from metagroupsync.models import (
    CourseRow,
    EnrolInstanceRow,
    EnrolmentStatus,
    GroupMemberRow,
    GroupRow,
    Link,
    LinkStatus,
    ParentEnrolment,
    RoleAssignmentRow,
    UserEnrolmentRow,
)


@runtime_checkable
class ICourseDirectory(Protocol):
    """Course lookups."""

    def course_exists(self, course_id: int) -> bool:
        ...

    def get_course(self, course_id: int) -> CourseRow | None:
        ...

    def create_course(self, shortname: str, fullname: str = "") -> CourseRow:
        ...

    def list_course_ids(self) -> list[int]:
        ...


@runtime_checkable
class IGroupDirectory(Protocol):
    """Groups and group memberships.

    Memberships record their origin (component, item) so that memberships
    made for a link can be told apart from manual ones.
    """

    def create_group(self, course_id: int, name: str) -> int:
        ...

    def get_group(self, group_id: int) -> GroupRow | None:
        ...

    def find_group_by_name(self, course_id: int, name: str) -> GroupRow | None:
        ...

    def list_groups(self, course_id: int) -> list[GroupRow]:
        ...

    def delete_group(self, group_id: int) -> bool:
        ...

    def add_member(
        self,
        group_id: int,
        user_id: int,
        origin_component: str = "",
        origin_item: int = 0,
    ) -> bool:
        """Add a member; returns False when the user already was one."""
        ...

    def remove_member(self, group_id: int, user_id: int) -> bool:
        ...

    def is_member(self, group_id: int, user_id: int) -> bool:
        ...

    def get_membership(self, group_id: int, user_id: int) -> GroupMemberRow | None:
        ...

    def count_members(self, group_id: int) -> int:
        ...

    def list_members(self, group_id: int) -> list[GroupMemberRow]:
        ...

    def list_memberships_by_origin(
        self, origin_component: str, origin_item: int
    ) -> list[GroupMemberRow]:
        ...


@runtime_checkable
class IEnrolmentDirectory(Protocol):
    """Enrolment method instances and user enrolments."""

    def create_instance(
        self,
        course_id: int,
        method: str,
        enabled: bool = True,
        parent_course_id: Optional[int] = None,
        name: Optional[str] = None,
    ) -> EnrolInstanceRow:
        ...

    def get_instance(self, enrol_id: int) -> EnrolInstanceRow | None:
        ...

    def update_instance(
        self,
        enrol_id: int,
        enabled: Optional[bool] = None,
        parent_course_id: Optional[int] = None,
    ) -> EnrolInstanceRow:
        ...

    def delete_instance(self, enrol_id: int) -> bool:
        ...

    def enrol(
        self,
        enrol_id: int,
        user_id: int,
        role_id: Optional[int] = None,
        timestart: int = 0,
        timeend: int = 0,
        status: EnrolmentStatus = EnrolmentStatus.ACTIVE,
    ) -> UserEnrolmentRow:
        ...

    def update_enrol(
        self,
        enrol_id: int,
        user_id: int,
        status: Optional[EnrolmentStatus] = None,
        timestart: Optional[int] = None,
        timeend: Optional[int] = None,
    ) -> bool:
        """Update an enrolment; returns True when anything changed."""
        ...

    def unenrol(self, enrol_id: int, user_id: int) -> bool:
        ...

    def get_enrolment(self, enrol_id: int, user_id: int) -> UserEnrolmentRow | None:
        ...

    def list_enrolments(self, enrol_id: int) -> list[UserEnrolmentRow]:
        ...

    def list_active_enrolments(
        self,
        course_id: int,
        enabled_methods: Iterable[str],
        user_ids: Optional[Iterable[int]] = None,
    ) -> list[ParentEnrolment]:
        """Enrolments in a course through enabled methods, with both statuses."""
        ...

    def list_group_enrol_methods(
        self, course_id: int, group_id: int, enabled_methods: Iterable[str]
    ) -> list[EnrolInstanceRow]:
        """Distinct method instances that enrolled the members of a group."""
        ...


@runtime_checkable
class IRoleDirectory(Protocol):
    """Role assignments in course contexts."""

    def assign(
        self,
        role_id: int,
        user_id: int,
        context_id: int,
        origin_component: str = "",
        origin_item: int = 0,
    ) -> bool:
        ...

    def unassign(
        self,
        role_id: int,
        user_id: int,
        context_id: int,
        origin_component: str = "",
        origin_item: int = 0,
    ) -> bool:
        ...

    def unassign_all(
        self,
        user_id: Optional[int] = None,
        context_id: Optional[int] = None,
        origin_component: Optional[str] = None,
        origin_item: Optional[int] = None,
    ) -> int:
        ...

    def list_assignments(
        self,
        context_id: Optional[int] = None,
        user_id: Optional[int] = None,
        origin_component: Optional[str] = None,
        origin_item: Optional[int] = None,
    ) -> list[RoleAssignmentRow]:
        ...


@runtime_checkable
class ILinkStore(Protocol):
    """Persistence of links."""

    def get(self, link_id: int) -> Link | None:
        ...

    def add(self, link: Link) -> Link:
        ...

    def save(self, link: Link) -> Link:
        ...

    def delete(self, link_id: int) -> bool:
        ...

    def set_status(self, link_id: int, status: LinkStatus) -> Link:
        ...

    def find(self, **filters: int) -> Link | None:
        ...

    def list_links(
        self,
        target_course_id: Optional[int] = None,
        source_course_id: Optional[int] = None,
        status: Optional[LinkStatus] = None,
    ) -> list[Link]:
        ...

    def links_into(
        self, course_id: int, group_id: Optional[int] = None, enabled_only: bool = True
    ) -> list[Link]:
        ...

    def links_from(
        self,
        course_id: Optional[int] = None,
        group_id: Optional[int] = None,
        enabled_only: bool = True,
    ) -> list[Link]:
        ...

    def links_without_source_courses(self, limit: int) -> list[Link]:
        ...

    def course_ids_with_links(self) -> list[int]:
        ...

    def target_group_ids(self) -> set[int]:
        ...


__all__ = [
    "ICourseDirectory",
    "IGroupDirectory",
    "IEnrolmentDirectory",
    "IRoleDirectory",
    "ILinkStore",
]
