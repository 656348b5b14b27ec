"""metagroupsync - group-scoped enrolment link reconciliation.

This package keeps derived course enrolments, group memberships and role
assignments in line with the source course groups they are linked from,
following links through chains of courses back to their root source.

Example:
    >>> from metagroupsync import SyncService
    >>>
    >>> service = SyncService()
    >>> service.initialize()
    >>> service.create_link(target_course_id=20, source_course_id=10, source_group_id=5)
    >>> service.run_reconciliation()
    0
    >>> service.close()
"""

__version__ = "0.1.0"

from metagroupsync.config import LostLinkAction, Settings, UnenrolAction, settings
from metagroupsync.database import DatabaseManager
from metagroupsync.engine import (
    STATUS_DISABLED,
    STATUS_ERROR,
    STATUS_OK,
    ReconciliationEngine,
)
from metagroupsync.events import (
    CourseDeletedEvent,
    EnrolInstanceEvent,
    GroupDeletedEvent,
    GroupMemberEvent,
    RoleAssignmentEvent,
    UserEnrolmentEvent,
)
from metagroupsync.links import LinkCycleError, LinkError, LinkValidationError, SelfLinkError
from metagroupsync.models import Link, LinkOptions, LinkStatus, ReconcileReport, SyncMode
from metagroupsync.service import SyncService

__all__ = [
    # Main components
    "SyncService",
    "ReconciliationEngine",
    "DatabaseManager",
    # Configuration
    "settings",
    "Settings",
    "UnenrolAction",
    "LostLinkAction",
    # Link model
    "Link",
    "LinkOptions",
    "LinkStatus",
    "SyncMode",
    "ReconcileReport",
    # Run status codes
    "STATUS_OK",
    "STATUS_ERROR",
    "STATUS_DISABLED",
    # Host events
    "UserEnrolmentEvent",
    "RoleAssignmentEvent",
    "GroupMemberEvent",
    "GroupDeletedEvent",
    "CourseDeletedEvent",
    "EnrolInstanceEvent",
    # Errors
    "LinkError",
    "LinkValidationError",
    "SelfLinkError",
    "LinkCycleError",
]
