"""Data models for metagroupsync.

This module defines both Pydantic models (the typed records the engine works
with) and SQLModel ORM models (the host platform tables and the link table).

Models are organized into three sections:
1. Constants and status enums shared by every component
2. Pydantic models for links, aggregation and reporting
3. SQLModel tables for database persistence
"""

from enum import IntEnum, StrEnum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field as PydanticField
from sqlmodel import Field, SQLModel

# =============================================================================
# Section 1: Constants and Enums
# =============================================================================

PLUGIN_COMPONENT = "enrol_metagroup"
"""Origin component stamped on memberships and role assignments made by links."""

MANUAL_COMPONENT = ""
LINK_METHOD = "metagroup"
META_METHOD = "meta"

CREATE_GROUP = -1
"""Target group sentinel: create one new group per source group."""

CREATE_SHARED_GROUP = -2
"""Target group sentinel: create one new group shared by every source group."""

NO_END = 9999999999
"""Stand-in for an unbounded enrolment end (timeend == 0) while aggregating."""


class EnrolmentStatus(IntEnum):
    """User enrolment status."""

    ACTIVE = 0
    SUSPENDED = 1


class InstanceStatus(IntEnum):
    """Enrolment method instance status."""

    ENABLED = 0
    DISABLED = 1


class LinkStatus(StrEnum):
    """Link lifecycle status."""

    ENABLED = "enabled"
    DISABLED = "disabled"
    PENDING = "disabled_pending_initial_sync"


class SyncMode(StrEnum):
    """How a link follows its source.

    Attributes:
        MIRROR: Continuously resynchronised
        SNAPSHOT: Synchronised until the first successful run, then frozen
    """

    MIRROR = "mirror"
    SNAPSHOT = "snapshot"


REPORT_OPERATIONS = (
    "activated",
    "source_courses_initialized",
    "enrolled",
    "joined_group",
    "groups_created",
    "moved",
    "unenrolled",
    "suspended",
    "status_updated",
    "roles_assigned",
    "roles_unassigned",
    "groups_deleted",
)


# =============================================================================
# Section 2: Pydantic Models
# =============================================================================


class Link(BaseModel):
    """A configured rule mirroring one source group into one target group.

    Attributes:
        id: Link id (shared with its enrolment instance)
        target_course_id: Course receiving the derived enrolments
        target_group_id: Group receiving the derived memberships
        logical_source_course_id: Source course as configured
        logical_source_group_id: Source group as configured
        root_source_course_id: Transitively resolved root course (None until resolved)
        root_source_group_id: Transitively resolved root group
        cached_source_group_name: Display cache of the logical source group name
        cached_root_course_name: Display cache of the root course name
        cached_root_group_name: Display cache of the root group name
        computed_source_courses: Courses feeding this link, roots first
        status: Lifecycle status
        sync_mode: Mirror or snapshot
        last_synced_at: Unix time of the first successful reconciliation
    """

    model_config = ConfigDict(extra="ignore")

    id: Optional[int] = None
    target_course_id: int
    target_group_id: int = 0
    logical_source_course_id: int
    logical_source_group_id: int
    root_source_course_id: Optional[int] = None
    root_source_group_id: Optional[int] = None
    cached_source_group_name: Optional[str] = None
    cached_root_course_name: Optional[str] = None
    cached_root_group_name: Optional[str] = None
    computed_source_courses: list[int] = PydanticField(default_factory=list)
    status: LinkStatus = LinkStatus.ENABLED
    sync_mode: SyncMode = SyncMode.MIRROR
    last_synced_at: Optional[int] = None
    created_at: int = 0
    updated_at: int = 0

    @property
    def parent_course_id(self) -> int:
        """Course whose enrolments feed this link (root if resolved, else logical)."""
        return self.root_source_course_id or self.logical_source_course_id

    @property
    def parent_group_id(self) -> int:
        """Group whose members feed this link (root if resolved, else logical)."""
        return self.root_source_group_id or self.logical_source_group_id

    @property
    def is_enabled(self) -> bool:
        return self.status == LinkStatus.ENABLED

    @property
    def is_frozen(self) -> bool:
        """Snapshot links stop following their source after the first sync."""
        return self.sync_mode == SyncMode.SNAPSHOT and self.last_synced_at is not None

    @property
    def has_target_group(self) -> bool:
        return self.target_group_id > 0


class LinkOptions(BaseModel):
    """Options accepted when creating links.

    Attributes:
        target_group_name: Explicit name for a created target group (no suffix applied)
        status: Initial lifecycle status
        sync_mode: Mirror or snapshot
        sync_on_create: Reconcile the target course right away (None: use settings)
        shared_target_group: Create one group shared by all selected source groups
    """

    model_config = ConfigDict(extra="forbid")

    target_group_name: Optional[str] = None
    status: LinkStatus = LinkStatus.ENABLED
    sync_mode: SyncMode = SyncMode.MIRROR
    sync_on_create: Optional[bool] = None
    shared_target_group: bool = False


class RootSource(BaseModel):
    """Result of walking a link chain back to its non-derived origin."""

    course_id: int
    course_name: str
    group_id: Optional[int] = None
    group_name: Optional[str] = None


class ParentEnrolment(BaseModel):
    """One source enrolment of a user, as seen through an enrolment method.

    Attributes:
        user_id: Enrolled user
        enrol_id: Enrolment method instance id
        method: Enrolment method name (manual, meta, metagroup, ...)
        status: User enrolment status
        instance_enabled: Whether the enrolment method instance is enabled
        timestart: Start of the enrolment window (0 = unbounded)
        timeend: End of the enrolment window (0 = unbounded)
        parent_course_id: Parent course for meta/metagroup instances
    """

    model_config = ConfigDict(frozen=True)

    user_id: int
    enrol_id: int
    method: str
    status: EnrolmentStatus
    instance_enabled: bool
    timestart: int = 0
    timeend: int = 0
    parent_course_id: Optional[int] = None

    @property
    def is_active(self) -> bool:
        return self.status == EnrolmentStatus.ACTIVE and self.instance_enabled


class AggregatedState(BaseModel):
    """Status and time window derived from all of a user's source enrolments."""

    model_config = ConfigDict(frozen=True)

    status: EnrolmentStatus
    timestart: int = 0
    timeend: int = 0

    @property
    def is_active(self) -> bool:
        return self.status == EnrolmentStatus.ACTIVE


class ChainStep(BaseModel):
    """One hop of a chain shown to administrators."""

    course_id: int
    course_name: str
    group_id: Optional[int] = None
    group_name: Optional[str] = None


class ReconcileReport(BaseModel):
    """Counts of operations performed by a reconciliation run.

    Attributes:
        course_id: Target course the run was restricted to (None for all)
        operations: Operation name to count
        errors: Per-record failures caught and skipped
        lost_link_ids: Links handled as lost and skipped by the passes
        duration_seconds: Wall-clock duration of the run
    """

    course_id: Optional[int] = None
    operations: dict[str, int] = PydanticField(
        default_factory=lambda: dict.fromkeys(REPORT_OPERATIONS, 0)
    )
    errors: int = 0
    lost_link_ids: list[int] = PydanticField(default_factory=list)
    duration_seconds: float = 0.0

    def record(self, operation: str, count: int = 1) -> None:
        """Add ``count`` to an operation counter."""
        self.operations[operation] = self.operations.get(operation, 0) + count

    @property
    def total_operations(self) -> int:
        return sum(self.operations.values())


# =============================================================================
# Section 3: SQLModel Tables
# =============================================================================


class CourseRow(SQLModel, table=True):
    """Host course.

    Attributes:
        id: Course id (primary key)
        shortname: Short name used for display
        fullname: Full course name
    """

    id: Optional[int] = Field(default=None, primary_key=True)
    shortname: str = Field(index=True)
    fullname: str = ""

    @property
    def display_name(self) -> str:
        return self.shortname or self.fullname


class GroupRow(SQLModel, table=True):
    """Host group inside a course."""

    id: Optional[int] = Field(default=None, primary_key=True)
    course_id: int = Field(index=True)
    name: str


class GroupMemberRow(SQLModel, table=True):
    """Membership of a user in a group.

    Attributes:
        id: Auto-incremented primary key
        group_id: Group (indexed)
        user_id: Member (indexed)
        component: Origin component ("" for manual memberships)
        item_id: Origin item (link id for memberships made by links)
        time_added: Unix time the membership was created
    """

    id: Optional[int] = Field(default=None, primary_key=True)
    group_id: int = Field(index=True)
    user_id: int = Field(index=True)
    component: str = ""
    item_id: int = 0
    time_added: int = 0


class EnrolInstanceRow(SQLModel, table=True):
    """Enrolment method instance attached to a course.

    Attributes:
        id: Instance id (primary key; link ids share this sequence)
        course_id: Course the method enrols into (indexed)
        method: Method name (manual, self, cohort, meta, metagroup)
        status: InstanceStatus value
        parent_course_id: One-level parent for meta, logical source for metagroup
        name: Optional display name
    """

    id: Optional[int] = Field(default=None, primary_key=True)
    course_id: int = Field(index=True)
    method: str = Field(index=True)
    status: int = InstanceStatus.ENABLED
    parent_course_id: Optional[int] = Field(default=None, index=True)
    name: Optional[str] = None


class UserEnrolmentRow(SQLModel, table=True):
    """Enrolment of a user through one enrolment method instance."""

    id: Optional[int] = Field(default=None, primary_key=True)
    enrol_id: int = Field(foreign_key="enrolinstancerow.id", index=True)
    user_id: int = Field(index=True)
    status: int = EnrolmentStatus.ACTIVE
    timestart: int = 0
    timeend: int = 0
    time_modified: int = 0


class RoleAssignmentRow(SQLModel, table=True):
    """Role held by a user in a course context.

    Attributes:
        id: Auto-incremented primary key
        role_id: Assigned role
        user_id: Role holder (indexed)
        course_id: Course context (indexed)
        component: Origin component ("" for manual assignments)
        item_id: Origin item (link id for assignments made by links)
    """

    id: Optional[int] = Field(default=None, primary_key=True)
    role_id: int
    user_id: int = Field(index=True)
    course_id: int = Field(index=True)
    component: str = ""
    item_id: int = 0


class LinkRow(SQLModel, table=True):
    """Persisted link; its id is the id of the link's enrolment instance."""

    id: int = Field(primary_key=True, foreign_key="enrolinstancerow.id")
    target_course_id: int = Field(index=True)
    target_group_id: int = Field(default=0, index=True)
    logical_source_course_id: int = Field(index=True)
    logical_source_group_id: int = Field(index=True)
    root_source_course_id: Optional[int] = Field(default=None, index=True)
    root_source_group_id: Optional[int] = None
    cached_source_group_name: Optional[str] = None
    cached_root_course_name: Optional[str] = None
    cached_root_group_name: Optional[str] = None
    source_courses_json: Optional[str] = None
    status: str = Field(default=LinkStatus.ENABLED, index=True)
    sync_mode: str = SyncMode.MIRROR
    last_synced_at: Optional[int] = None
    created_at: int = 0
    updated_at: int = 0
