"""Pytest configuration and shared fixtures for metagroupsync tests."""

import os
import sys
import tempfile

os.environ["ENVIRONMENT"] = "testing"
os.environ.setdefault("DATA_DIR", tempfile.mkdtemp(prefix="metagroupsync_test_"))

from collections.abc import Callable, Generator  # noqa: E402
from pathlib import Path  # noqa: E402
from typing import Any, Optional  # noqa: E402

import pytest  # noqa: E402
from loguru import logger  # noqa: E402

from metagroupsync.config import Environment, Settings  # noqa: E402
from metagroupsync.database import DatabaseManager  # noqa: E402
from metagroupsync.metrics import reset_metrics  # noqa: E402
from metagroupsync.models import CourseRow, EnrolmentStatus, GroupRow  # noqa: E402
from metagroupsync.service import SyncService  # noqa: E402


# =============================================================================
# Test Configuration
# =============================================================================


@pytest.fixture(scope="function", autouse=True)
def reset_loguru():
    """Reset loguru handlers before each test to prevent I/O errors."""
    logger.remove()
    logger.add(
        sys.stderr,
        level="ERROR",
        format="{time} {level} {message}",
        catch=True,
    )
    yield
    logger.remove()


@pytest.fixture(autouse=True)
def clean_metrics():
    """Start every test from zeroed Prometheus metrics."""
    reset_metrics()
    yield


@pytest.fixture
def make_settings() -> Callable[..., Settings]:
    """Factory for test settings with overrides."""

    def _make(**overrides: Any) -> Settings:
        return Settings(environment=Environment.TESTING, **overrides)

    return _make


@pytest.fixture
def test_settings(make_settings) -> Settings:
    return make_settings()


@pytest.fixture
def db() -> Generator[DatabaseManager, None, None]:
    """In-memory database manager."""
    manager = DatabaseManager(database_path=Path(":memory:"))
    manager.initialize()
    yield manager
    manager.close()


@pytest.fixture
def temp_db_path(tmp_path: Path) -> Path:
    """Path for a file-backed database inside the test's temp directory."""
    return tmp_path / "metagroupsync.db"


# =============================================================================
# Service Fixtures
# =============================================================================


@pytest.fixture
def make_service(make_settings) -> Generator[Callable[..., SyncService], None, None]:
    """Factory for initialized services over fresh in-memory databases."""
    services: list[SyncService] = []

    def _make(**overrides: Any) -> SyncService:
        service = SyncService(
            db=DatabaseManager(database_path=Path(":memory:")),
            settings=make_settings(**overrides),
        )
        service.initialize()
        services.append(service)
        return service

    yield _make

    for service in services:
        service.close()


@pytest.fixture
def service(make_service) -> SyncService:
    return make_service()


class HostBuilder:
    """Builds courses, groups, enrolments and roles on a service's host tables."""

    def __init__(self, service: SyncService):
        self.service = service
        self._manual: dict[int, int] = {}

    def course(self, course_id: Optional[int] = None, shortname: Optional[str] = None) -> int:
        row = CourseRow(id=course_id, shortname=shortname or f"C{course_id or 'X'}")
        return self.service.courses.courses.create(row).id

    def group(self, course_id: int, group_id: Optional[int] = None, name: Optional[str] = None) -> int:
        row = GroupRow(id=group_id, course_id=course_id, name=name or f"Group {group_id or 'X'}")
        return self.service.groups.groups.create(row).id

    def manual_instance(self, course_id: int) -> int:
        if course_id not in self._manual:
            instance = self.service.enrolments.create_instance(course_id, "manual")
            self._manual[course_id] = instance.id
        return self._manual[course_id]

    def enrol(
        self,
        course_id: int,
        user_id: int,
        group_id: Optional[int] = None,
        role_id: Optional[int] = 5,
        status: EnrolmentStatus = EnrolmentStatus.ACTIVE,
        timestart: int = 0,
        timeend: int = 0,
    ) -> None:
        """Enrol a user manually, optionally with a role and into a group."""
        self.service.enrolments.enrol(
            self.manual_instance(course_id),
            user_id,
            role_id=role_id,
            timestart=timestart,
            timeend=timeend,
            status=status,
        )
        if group_id is not None:
            self.service.groups.add_member(group_id, user_id)

    def is_enrolled(self, link_id: int, user_id: int) -> bool:
        return self.service.enrolments.get_enrolment(link_id, user_id) is not None

    def enrolment_status(self, link_id: int, user_id: int) -> Optional[EnrolmentStatus]:
        enrolment = self.service.enrolments.get_enrolment(link_id, user_id)
        return EnrolmentStatus(enrolment.status) if enrolment else None

    def member_ids(self, group_id: int) -> set[int]:
        return {member.user_id for member in self.service.groups.list_members(group_id)}

    def link_roles(self, link_id: int, user_id: int) -> set[int]:
        link = self.service.store.get(link_id)
        return {
            assignment.role_id
            for assignment in self.service.roles.list_assignments(
                context_id=link.target_course_id,
                user_id=user_id,
                origin_component="enrol_metagroup",
                origin_item=link_id,
            )
        }


@pytest.fixture
def host(service) -> HostBuilder:
    return HostBuilder(service)


@pytest.fixture
def make_host() -> Callable[[SyncService], HostBuilder]:
    return HostBuilder


@pytest.fixture
def linked(service, host):
    """Course 10/group 5 (users 1 and 2) linked into course 20/group 50.

    Returns:
        The link, already synchronised
    """
    host.course(10, "SRC")
    host.course(20, "TGT")
    host.group(10, 5, "Group A")
    host.group(20, 50, "Group A (linked)")
    host.enrol(10, 1, group_id=5)
    host.enrol(10, 2, group_id=5)
    return service.create_link(20, 10, 5, target_group_id=50)
