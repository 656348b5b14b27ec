"""Status and time-window aggregation over a user's source enrolments.

A derived enrolment follows the union of every qualifying source enrolment:

- it is active iff at least one source enrolment is active *and* its
  enrolment method instance is enabled;
- ``timestart`` is the earliest start among the active ones;
- ``timeend`` is the latest end among the active ones, where 0 ("no end")
  beats any concrete end.

Without any active source enrolment the derived enrolment is suspended and
its window is left as it is.
"""

from collections.abc import Iterable

from metagroupsync.models import (
    NO_END,
    AggregatedState,
    EnrolmentStatus,
    ParentEnrolment,
    UserEnrolmentRow,
)


def aggregate_parent_state(enrolments: Iterable[ParentEnrolment]) -> AggregatedState:
    """Aggregate a user's source enrolments into one status and window.

    Example:
        >>> rows = [
        ...     ParentEnrolment(user_id=1, enrol_id=1, method="manual",
        ...                     status=EnrolmentStatus.ACTIVE, instance_enabled=True,
        ...                     timestart=100, timeend=0),
        ...     ParentEnrolment(user_id=1, enrol_id=2, method="self",
        ...                     status=EnrolmentStatus.SUSPENDED, instance_enabled=True,
        ...                     timestart=200, timeend=500),
        ... ]
        >>> aggregate_parent_state(rows)
        AggregatedState(status=<EnrolmentStatus.ACTIVE: 0>, timestart=100, timeend=0)
    """
    active = [enrolment for enrolment in enrolments if enrolment.is_active]
    if not active:
        return AggregatedState(status=EnrolmentStatus.SUSPENDED)

    timestart = min(enrolment.timestart for enrolment in active)
    timeend = max(enrolment.timeend or NO_END for enrolment in active)
    return AggregatedState(
        status=EnrolmentStatus.ACTIVE,
        timestart=timestart,
        timeend=0 if timeend == NO_END else timeend,
    )


def needs_update(enrolment: UserEnrolmentRow, state: AggregatedState) -> bool:
    """Check whether a derived enrolment has drifted from its aggregated state.

    The window only matters while the aggregated state is active.
    """
    if enrolment.status != state.status:
        return True
    if state.is_active:
        return (enrolment.timestart, enrolment.timeend) != (state.timestart, state.timeend)
    return False


__all__ = ["aggregate_parent_state", "needs_update"]
