"""Tests for event-driven single-user synchronisation."""

import pytest

from metagroupsync.incremental import SyncGuard
from metagroupsync.models import EnrolmentStatus, LinkOptions, SyncMode


@pytest.fixture
def chain(service, host, linked):
    """Extend the standard link with 20/50 -> 30/60."""
    host.course(30, "THIRD")
    host.group(30, 60, "Third group")
    return linked, service.create_link(30, 20, 50, target_group_id=60)


class TestSyncGuard:
    def test_enter_and_leave(self):
        guard = SyncGuard()

        with guard.enter(10):
            assert 10 in guard
        assert 10 not in guard

    def test_leaves_on_error(self):
        guard = SyncGuard()

        with pytest.raises(RuntimeError):
            with guard.enter(10):
                raise RuntimeError("boom")
        assert 10 not in guard


class TestSyncSingle:
    """Tests for IncrementalSyncHandler.sync_single."""

    def test_new_member_is_enrolled(self, service, host, linked):
        host.enrol(10, 3, group_id=5)

        report = service.sync_single(10, 3)

        assert report.operations["enrolled"] == 1
        assert host.enrolment_status(linked.id, 3) == EnrolmentStatus.ACTIVE
        assert 3 in host.member_ids(50)
        assert host.link_roles(linked.id, 3) == {5}

    def test_removed_member_is_suspended(self, service, host, linked):
        service.groups.remove_member(5, 2)

        service.incremental.sync_group_member(10, 5, 2)

        assert host.enrolment_status(linked.id, 2) == EnrolmentStatus.SUSPENDED
        assert 2 not in host.member_ids(50)
        assert host.link_roles(linked.id, 2) == set()

    def test_matches_full_reconciliation(self, service, host, linked):
        """Test an event leaves nothing for the next full run to do."""
        host.enrol(10, 3, group_id=5)
        service.groups.remove_member(5, 2)

        service.sync_single(10, 3)
        service.sync_single(10, 2)

        assert service.reconcile(20).total_operations == 0

    def test_unrelated_course_does_nothing(self, service, host, linked):
        host.course(40)

        assert service.sync_single(40, 1).total_operations == 0

    def test_cascades_down_the_chain(self, service, host, chain):
        """Test a change in the root course reaches the second link's target."""
        first, second = chain
        host.enrol(10, 3, group_id=5)

        service.sync_single(10, 3)

        assert host.is_enrolled(first.id, 3)
        assert host.is_enrolled(second.id, 3)
        assert 3 in host.member_ids(60)

    def test_guard_stops_reentry(self, service, host, linked):
        host.enrol(10, 3, group_id=5)
        guard = SyncGuard()

        with guard.enter(10):
            report = service.incremental.sync_single(10, 3, guard=guard)

        assert report.total_operations == 0
        assert not host.is_enrolled(linked.id, 3)

    def test_disabled_sync_does_nothing(self, service, host, linked):
        host.enrol(10, 3, group_id=5)
        service.settings.sync_enabled = False

        assert service.sync_single(10, 3).total_operations == 0
        assert not host.is_enrolled(linked.id, 3)

    def test_frozen_links_are_skipped(self, service, host):
        host.course(10)
        host.course(20)
        host.group(10, 5)
        host.group(20, 50)
        host.enrol(10, 1, group_id=5)
        link = service.create_link(
            20, 10, 5, target_group_id=50, options=LinkOptions(sync_mode=SyncMode.SNAPSHOT)
        )
        host.enrol(10, 3, group_id=5)

        service.sync_single(10, 3)

        assert not host.is_enrolled(link.id, 3)

    def test_errors_propagate(self, service, host, linked, mocker):
        mocker.patch.object(service.actions, "sync_user", side_effect=RuntimeError("boom"))

        with pytest.raises(RuntimeError):
            service.sync_single(10, 1)
