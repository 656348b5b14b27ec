"""Tests for the Link Store."""

import pytest

from metagroupsync.models import LINK_METHOD, InstanceStatus, Link, LinkRow, LinkStatus, SyncMode
from metagroupsync.store import LinkStore, row_to_link


@pytest.fixture
def store(db):
    return LinkStore(db.session)


def make_link(**fields) -> Link:
    values = {
        "target_course_id": 20,
        "target_group_id": 50,
        "logical_source_course_id": 10,
        "logical_source_group_id": 5,
    }
    values.update(fields)
    return Link(**values)


class TestLinkStore:
    """Tests for storing and querying links."""

    def test_add_creates_enrolment_instance(self, store):
        """Test a link shares its id with a metagroup enrolment instance."""
        link = store.add(make_link())

        instance = store.instances.get(link.id)
        assert instance is not None
        assert instance.method == LINK_METHOD
        assert instance.course_id == 20
        assert instance.parent_course_id == 10
        assert link.created_at > 0

    def test_round_trip_preserves_source_courses(self, store):
        link = store.add(make_link(computed_source_courses=[1, 10, 20]))

        assert store.get(link.id).computed_source_courses == [1, 10, 20]

    def test_save_syncs_instance_status(self, store):
        """Test disabling a link disables its enrolment instance."""
        link = store.add(make_link())

        store.set_status(link.id, LinkStatus.DISABLED)

        assert store.get(link.id).status == LinkStatus.DISABLED
        assert store.instances.get(link.id).status == InstanceStatus.DISABLED

    def test_failed_add_removes_instance(self, store, mocker):
        mocker.patch.object(store.rows, "create", side_effect=RuntimeError("database is locked"))

        with pytest.raises(RuntimeError):
            store.add(make_link())

        assert list(store.instances.find_by(method=LINK_METHOD)) == []

    def test_save_unknown_link_raises(self, store):
        with pytest.raises(LookupError):
            store.save(make_link(id=999))

    def test_delete_removes_instance(self, store):
        link = store.add(make_link())

        assert store.delete(link.id) is True
        assert store.get(link.id) is None
        assert store.instances.get(link.id) is None

    def test_mark_synced_only_once(self, store):
        """Test the first sync time is kept on later calls."""
        link = store.add(make_link(sync_mode=SyncMode.SNAPSHOT))
        store.mark_synced(link.id)
        first = store.get(link.id).last_synced_at

        store.mark_synced(link.id)

        assert first is not None
        assert store.get(link.id).last_synced_at == first
        assert store.get(link.id).is_frozen

    def test_retarget_group_moves_every_status(self, store):
        enabled = store.add(make_link())
        disabled = store.add(make_link(logical_source_group_id=6, status=LinkStatus.DISABLED))
        other = store.add(make_link(logical_source_group_id=7, target_group_id=51))

        changed = store.retarget_group(50, 70)

        assert changed == [enabled.id, disabled.id]
        assert store.get(disabled.id).target_group_id == 70
        assert store.get(other.id).target_group_id == 51

    def test_links_into_filters_enabled(self, store):
        enabled = store.add(make_link())
        store.add(make_link(logical_source_group_id=6, status=LinkStatus.DISABLED))

        assert [link.id for link in store.links_into(20, 50)] == [enabled.id]
        assert len(store.links_into(20, 50, enabled_only=False)) == 2

    def test_links_from_matches_logical_or_root(self, store):
        """Test links are found through their logical and their root source."""
        direct = store.add(make_link())
        chained = store.add(
            make_link(
                target_course_id=30,
                target_group_id=60,
                logical_source_course_id=20,
                logical_source_group_id=50,
                root_source_course_id=10,
                root_source_group_id=5,
            )
        )

        assert [link.id for link in store.links_from(10, 5)] == [direct.id, chained.id]
        assert [link.id for link in store.links_from(20)] == [chained.id]
        assert store.links_from(10, 99) == []

    def test_links_without_source_courses(self, store):
        missing = store.add(make_link())
        store.add(make_link(logical_source_group_id=6, computed_source_courses=[10, 20]))

        assert [link.id for link in store.links_without_source_courses(10)] == [missing.id]

    def test_course_and_group_queries(self, store):
        store.add(make_link())
        store.add(make_link(target_course_id=30, target_group_id=0))

        assert store.course_ids_with_links() == [20, 30]
        assert store.target_group_ids() == {50}

    def test_find_by_fields(self, store):
        link = store.add(make_link())

        assert store.find(target_course_id=20, logical_source_group_id=5).id == link.id
        assert store.find(target_course_id=99) is None


class TestRowConversion:
    def test_malformed_source_courses_are_ignored(self):
        """Test an unreadable cache decodes to an empty list."""
        row = LinkRow(
            id=1,
            target_course_id=20,
            logical_source_course_id=10,
            logical_source_group_id=5,
            source_courses_json="not json",
        )

        assert row_to_link(row).computed_source_courses == []

    def test_plain_list_cache_is_accepted(self):
        row = LinkRow(
            id=1,
            target_course_id=20,
            logical_source_course_id=10,
            logical_source_group_id=5,
            source_courses_json="[10, 20]",
        )

        assert row_to_link(row).computed_source_courses == [10, 20]
