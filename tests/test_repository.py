"""Tests for the generic repository and the SQLite retry policy."""

import pytest
from sqlalchemy.exc import OperationalError
from sqlmodel import Session, SQLModel, create_engine

from metagroupsync.models import GroupMemberRow, GroupRow
from metagroupsync.repository import Repository, sqlite_retry


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def test_engine():
    """Create in-memory SQLite engine for testing."""
    engine = create_engine("sqlite:///:memory:")
    SQLModel.metadata.create_all(engine)
    return engine


@pytest.fixture
def test_session(test_engine):
    """Create a test session."""
    with Session(test_engine) as session:
        yield session
        session.rollback()


@pytest.fixture
def group_repo(test_session):
    return Repository[GroupRow](test_session, GroupRow)


@pytest.fixture
def member_repo(test_session):
    return Repository[GroupMemberRow](test_session, GroupMemberRow)


# =============================================================================
# Repository Core Tests
# =============================================================================


def test_repository_initialization(test_session):
    """Test repository can be initialized with session and model."""
    repo = Repository[GroupRow](test_session, GroupRow)
    assert repo.session == test_session
    assert repo.model == GroupRow


def test_repository_get_returns_none_when_not_found(group_repo):
    """Test get() returns None for non-existent entity."""
    assert group_repo.get(999) is None


def test_repository_create_assigns_id(group_repo):
    """Test create() returns the entity refreshed with its generated id."""
    created = group_repo.create(GroupRow(course_id=20, name="Group A"))

    assert created.id is not None
    retrieved = group_repo.get(created.id)
    assert retrieved is not None
    assert retrieved.name == "Group A"


def test_repository_get_all_with_limit_and_offset(group_repo):
    """Test get_all() pages in primary-key order."""
    for i in range(10):
        group_repo.create(GroupRow(course_id=20, name=f"Group {i}"))

    page = group_repo.get_all(limit=3, offset=2)

    assert [group.name for group in page] == ["Group 2", "Group 3", "Group 4"]


def test_repository_update_modifies_entity(group_repo):
    """Test update() persists changes."""
    created = group_repo.create(GroupRow(course_id=20, name="Old"))

    created.name = "New"
    group_repo.update(created)

    assert group_repo.get(created.id).name == "New"


def test_repository_delete_removes_entity(group_repo):
    """Test delete() removes entity from database."""
    created = group_repo.create(GroupRow(course_id=20, name="Group A"))

    assert group_repo.delete(created.id) is True
    assert group_repo.get(created.id) is None


def test_repository_delete_returns_false_when_not_found(group_repo):
    assert group_repo.delete(999) is False


# =============================================================================
# Query Helper Tests
# =============================================================================


def test_repository_find_by_multiple_attributes(member_repo):
    """Test find_by() with multiple attribute filters."""
    member_repo.create(GroupMemberRow(group_id=50, user_id=1, component="enrol_metagroup", item_id=3))
    member_repo.create(GroupMemberRow(group_id=50, user_id=2))
    member_repo.create(GroupMemberRow(group_id=51, user_id=1, component="enrol_metagroup", item_id=3))

    results = member_repo.find_by(component="enrol_metagroup", item_id=3)

    assert [(row.group_id, row.user_id) for row in results] == [(50, 1), (51, 1)]


def test_repository_find_by_list_becomes_in_clause(member_repo):
    """Test list values filter with IN."""
    for group_id in (50, 51, 52):
        member_repo.create(GroupMemberRow(group_id=group_id, user_id=1))

    results = member_repo.find_by(group_id=[50, 52])

    assert {row.group_id for row in results} == {50, 52}


def test_repository_find_by_unknown_attribute_raises(member_repo):
    with pytest.raises(AttributeError):
        member_repo.find_by(unknown_field=1)


def test_repository_first_by(member_repo):
    """Test first_by() returns the lowest id match."""
    first = member_repo.create(GroupMemberRow(group_id=50, user_id=1))
    member_repo.create(GroupMemberRow(group_id=50, user_id=2))

    assert member_repo.first_by(group_id=50).id == first.id
    assert member_repo.first_by(group_id=99) is None


def test_repository_delete_where(member_repo):
    """Test delete_where() removes every match and reports the count."""
    member_repo.create(GroupMemberRow(group_id=50, user_id=1))
    member_repo.create(GroupMemberRow(group_id=50, user_id=2))
    member_repo.create(GroupMemberRow(group_id=51, user_id=1))

    assert member_repo.delete_where(group_id=50) == 2
    assert member_repo.count(group_id=50) == 0
    assert member_repo.count() == 1


def test_repository_exists(group_repo):
    created = group_repo.create(GroupRow(course_id=20, name="Group A"))

    assert group_repo.exists(created.id) is True
    assert group_repo.exists(999) is False


# =============================================================================
# Retry Policy Tests
# =============================================================================


def test_sqlite_retry_retries_operational_errors():
    """Test transient lock errors are retried until success."""
    calls = {"count": 0}

    @sqlite_retry
    def flaky_write():
        calls["count"] += 1
        if calls["count"] < 3:
            raise OperationalError("UPDATE", {}, Exception("database is locked"))
        return "ok"

    assert flaky_write() == "ok"
    assert calls["count"] == 3


def test_sqlite_retry_gives_up_and_reraises():
    calls = {"count": 0}

    @sqlite_retry
    def always_locked():
        calls["count"] += 1
        raise OperationalError("UPDATE", {}, Exception("database is locked"))

    with pytest.raises(OperationalError):
        always_locked()
    assert calls["count"] == 3


def test_sqlite_retry_does_not_retry_other_errors():
    calls = {"count": 0}

    @sqlite_retry
    def broken():
        calls["count"] += 1
        raise ValueError("bad input")

    with pytest.raises(ValueError):
        broken()
    assert calls["count"] == 1
