"""Unit tests for status and window aggregation."""

from metagroupsync.aggregation import aggregate_parent_state, needs_update
from metagroupsync.models import AggregatedState, EnrolmentStatus, ParentEnrolment, UserEnrolmentRow


def parent(status=EnrolmentStatus.ACTIVE, enabled=True, timestart=0, timeend=0, enrol_id=1):
    return ParentEnrolment(
        user_id=7,
        enrol_id=enrol_id,
        method="manual",
        status=status,
        instance_enabled=enabled,
        timestart=timestart,
        timeend=timeend,
    )


class TestAggregateParentState:
    """Tests for aggregate_parent_state."""

    def test_active_wins_over_suspended(self):
        """Test an active unbounded enrolment beats a suspended bounded one."""
        state = aggregate_parent_state([
            parent(timestart=100, timeend=0),
            parent(status=EnrolmentStatus.SUSPENDED, timestart=200, timeend=500, enrol_id=2),
        ])

        assert state.status == EnrolmentStatus.ACTIVE
        assert state.timestart == 100
        assert state.timeend == 0

    def test_earliest_start_latest_end(self):
        """Test the window spans every active enrolment."""
        state = aggregate_parent_state([
            parent(timestart=300, timeend=800),
            parent(timestart=100, timeend=600, enrol_id=2),
        ])

        assert (state.timestart, state.timeend) == (100, 800)

    def test_unbounded_end_beats_concrete_end(self):
        state = aggregate_parent_state([
            parent(timestart=100, timeend=900),
            parent(timestart=200, timeend=0, enrol_id=2),
        ])

        assert state.timeend == 0

    def test_disabled_instance_does_not_count(self):
        """Test an active enrolment through a disabled method is not active."""
        state = aggregate_parent_state([parent(enabled=False)])

        assert state.status == EnrolmentStatus.SUSPENDED

    def test_no_enrolments_is_suspended(self):
        assert aggregate_parent_state([]).status == EnrolmentStatus.SUSPENDED


class TestNeedsUpdate:
    """Tests for drift detection."""

    def test_matching_enrolment_needs_nothing(self):
        enrolment = UserEnrolmentRow(enrol_id=1, user_id=7, status=0, timestart=100, timeend=0)
        state = AggregatedState(status=EnrolmentStatus.ACTIVE, timestart=100, timeend=0)

        assert not needs_update(enrolment, state)

    def test_window_drift_while_active(self):
        enrolment = UserEnrolmentRow(enrol_id=1, user_id=7, status=0, timestart=100, timeend=0)
        state = AggregatedState(status=EnrolmentStatus.ACTIVE, timestart=50, timeend=0)

        assert needs_update(enrolment, state)

    def test_window_ignored_while_suspended(self):
        """Test a suspended enrolment keeps whatever window it had."""
        enrolment = UserEnrolmentRow(enrol_id=1, user_id=7, status=1, timestart=100, timeend=200)
        state = AggregatedState(status=EnrolmentStatus.SUSPENDED)

        assert not needs_update(enrolment, state)

    def test_status_drift(self):
        enrolment = UserEnrolmentRow(enrol_id=1, user_id=7, status=0)
        state = AggregatedState(status=EnrolmentStatus.SUSPENDED)

        assert needs_update(enrolment, state)
