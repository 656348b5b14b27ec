"""Tests for the administrative link operations."""

import pytest

from metagroupsync.links import LinkCycleError, LinkError, LinkValidationError, SelfLinkError
from metagroupsync.models import CREATE_SHARED_GROUP, LinkOptions, LinkStatus, SyncMode


@pytest.fixture
def courses(host):
    """Source course 10 with groups 5 and 6, target course 20 with group 50."""
    host.course(10, "SRC")
    host.course(20, "TGT")
    host.group(10, 5, "Group A")
    host.group(10, 6, "Group B")
    host.group(20, 50, "Target")
    host.enrol(10, 1, group_id=5)
    host.enrol(10, 2, group_id=6)


class TestCreateLink:
    """Tests for create_link."""

    def test_create_and_sync(self, service, host, courses):
        """Test a new link enrols the source group's members right away."""
        link = service.create_link(20, 10, 5, target_group_id=50)

        assert link.status == LinkStatus.ENABLED
        assert (link.root_source_course_id, link.root_source_group_id) == (10, 5)
        assert link.cached_source_group_name == "Group A"
        assert host.is_enrolled(link.id, 1)
        assert not host.is_enrolled(link.id, 2)
        assert host.member_ids(50) == {1}

    def test_self_link_rejected(self, service, courses):
        with pytest.raises(SelfLinkError):
            service.create_link(10, 10, 5)
        assert service.list_links() == []

    def test_cycle_rejected(self, service, host, courses):
        """Test a link from a course fed by the target is rejected."""
        service.create_link(20, 10, 5, target_group_id=50)

        with pytest.raises(LinkCycleError):
            service.create_link(10, 20, 50)
        assert len(service.list_links()) == 1

    def test_existing_link_without_sync_waits_for_next_run(self, service, host, courses):
        link = service.create_link(20, 10, 5, target_group_id=50)

        updated = service.create_link(
            20, 10, 5, target_group_id=50, options=LinkOptions(sync_on_create=False)
        )

        assert updated.id == link.id
        assert updated.status == LinkStatus.PENDING
        service.reconcile(20)
        assert service.find_link(link_id=link.id).status == LinkStatus.ENABLED

    def test_failed_store_leaves_no_group(self, service, courses, mocker):
        """Test the group made for a link is removed when storing the link fails."""
        before = {group.id for group in service.groups.list_groups(20)}
        mocker.patch.object(service.store, "add", side_effect=RuntimeError("database is locked"))

        with pytest.raises(RuntimeError):
            service.create_link(20, 10, 5)

        assert {group.id for group in service.groups.list_groups(20)} == before

    def test_three_course_cycle_rejected(self, service, host, courses):
        host.course(30)
        host.group(30, 60)
        service.create_link(20, 10, 5, target_group_id=50)
        service.create_link(30, 20, 50, target_group_id=60)

        with pytest.raises(LinkCycleError):
            service.create_link(10, 30, 60)

    @pytest.mark.parametrize(
        "args",
        [
            (20, 99, 5),
            (20, 10, 99),
            (20, 10, 50),
            (0, 10, 5),
        ],
    )
    def test_invalid_references_rejected(self, service, courses, args):
        with pytest.raises(LinkValidationError):
            service.create_link(*args)

    def test_target_group_from_other_course_rejected(self, service, courses):
        with pytest.raises(LinkValidationError):
            service.create_link(20, 10, 5, target_group_id=6)

    def test_creates_named_group_when_missing(self, service, host, courses):
        link = service.create_link(20, 10, 5)

        group = service.groups.get_group(link.target_group_id)
        assert group.course_id == 20
        assert group.name == "Group A (linked)"
        assert host.member_ids(group.id) == {1}

    def test_no_sync_leaves_link_pending(self, service, host, courses):
        """Test a link created without sync waits for the next run."""
        link = service.create_link(
            20, 10, 5, target_group_id=50, options=LinkOptions(sync_on_create=False)
        )

        assert link.status == LinkStatus.PENDING
        assert not host.is_enrolled(link.id, 1)

        report = service.reconcile(20)

        assert report.operations["activated"] == 1
        assert service.find_link(link_id=link.id).status == LinkStatus.ENABLED
        assert host.is_enrolled(link.id, 1)

    def test_same_source_updates_existing(self, service, courses):
        """Test re-creating a link for the same source edits it instead."""
        first = service.create_link(20, 10, 5, target_group_id=50)

        second = service.create_link(
            20, 10, 5, target_group_id=50, options=LinkOptions(sync_mode=SyncMode.SNAPSHOT)
        )

        assert second.id == first.id
        assert second.sync_mode == SyncMode.SNAPSHOT
        assert len(service.list_links()) == 1


class TestCreateLinks:
    """Tests for creating several links at once."""

    def test_shared_target_group(self, service, host, courses):
        links = service.create_links(20, 10, [5, 6], target_group_id=CREATE_SHARED_GROUP)

        assert len(links) == 2
        assert links[0].target_group_id == links[1].target_group_id
        assert host.member_ids(links[0].target_group_id) == {1, 2}
        assert all(link.status == LinkStatus.ENABLED for link in links)

    def test_separate_groups_by_default(self, service, courses):
        links = service.create_links(20, 10, [5, 6])

        assert links[0].target_group_id != links[1].target_group_id

    def test_already_linked_groups_are_skipped(self, service, courses):
        service.create_link(20, 10, 5, target_group_id=50)

        links = service.create_links(20, 10, [5, 6], target_group_id=50)

        assert [link.logical_source_group_id for link in links] == [6]

    def test_invalid_group_writes_nothing(self, service, courses):
        with pytest.raises(LinkValidationError):
            service.create_links(20, 10, [5, 99])
        assert service.list_links() == []


class TestUpdateAndFind:
    def test_update_source_recomputes_root(self, service, host, courses):
        link = service.create_link(20, 10, 5, target_group_id=50)

        updated = service.update_link(link.id, source_group_id=6)

        assert updated.logical_source_group_id == 6
        assert updated.root_source_group_id == 6
        assert updated.cached_source_group_name == "Group B"

    def test_update_unknown_link(self, service, courses):
        with pytest.raises(LinkError):
            service.update_link(999, status=LinkStatus.DISABLED)

    def test_find_link(self, service, courses):
        link = service.create_link(20, 10, 5, target_group_id=50)

        assert service.find_link(target_course_id=20, source_group_id=5).id == link.id
        assert service.find_link(source_group_id=6) is None
        assert service.find_link() is None

    def test_list_links_by_course(self, service, host, courses):
        host.course(30)
        service.create_link(20, 10, 5, target_group_id=50)
        service.create_link(30, 10, 6)

        assert [link.target_course_id for link in service.list_links(target_course_id=30)] == [30]
        assert len(service.list_links(source_course_id=10)) == 2

    def test_summarize(self, service, courses):
        link = service.create_link(20, 10, 5, target_group_id=50)

        summary = service.links.summarize(link)

        assert summary["target"] == "20/50"
        assert summary["source"] == "10/5"
        assert summary["root"] == "10/5"
        assert summary["members"] == 1
        assert summary["last_synced"] == "-"


class TestDeleteLink:
    """Tests for delete_link."""

    def test_delete_unwinds_enrolments_and_roles(self, service, host, courses):
        link = service.create_link(20, 10, 5, target_group_id=50)
        assert host.link_roles(link.id, 1) == {5}

        assert service.delete_link(link.id) is True

        assert service.find_link(link_id=link.id) is None
        assert not host.is_enrolled(link.id, 1)
        assert host.member_ids(50) == set()
        assert service.roles.list_assignments(context_id=20, user_id=1) == []

    def test_delete_unknown_link(self, service):
        assert service.delete_link(999) is False

    def test_delete_refreshes_dependant_roots(self, service, host, courses):
        """Test links fed by the deleted link's target are re-rooted."""
        host.course(30)
        host.group(30, 60)
        first = service.create_link(20, 10, 5, target_group_id=50)
        second = service.create_link(30, 20, 50, target_group_id=60)
        assert service.find_link(link_id=second.id).root_source_course_id == 10

        service.delete_link(first.id)

        assert service.find_link(link_id=second.id).root_source_course_id == 20

    def test_purge_removes_every_link(self, service, courses):
        service.create_link(20, 10, 5, target_group_id=50)
        service.create_link(20, 10, 6, target_group_id=50)

        assert service.purge() == 2
        assert service.list_links() == []
        assert service.roles.list_assignments(origin_component="enrol_metagroup") == []


class TestRecalculateSourceCourses:
    def test_recalculate_all(self, service, host, courses):
        link = service.create_link(20, 10, 5, target_group_id=50)
        stale = service.find_link(link_id=link.id)
        stale.computed_source_courses = []
        service.store.save(stale)

        assert service.recalculate_source_courses() == 1
        assert service.find_link(link_id=link.id).computed_source_courses == [10, 20]

    def test_recalculate_unknown_link_raises(self, service):
        with pytest.raises(LinkError):
            service.recalculate_source_courses(link_id=999)
