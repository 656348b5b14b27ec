"""Database management for metagroupsync.

This module provides SQLite database management with:
- Connection management with WAL mode
- Table creation for the host tables and the link table
- Index creation for the reconciliation queries
- Summary statistics for the CLI

Example:
    >>> from metagroupsync.database import DatabaseManager
    >>>
    >>> db = DatabaseManager()
    >>> db.initialize()
    >>> db.get_statistics()["links"]
    0
    >>> db.close()
"""

from pathlib import Path

from sqlalchemy import func, text
from sqlmodel import Session, SQLModel, create_engine, select

from metagroupsync.config import settings
from metagroupsync.logging import logger
from metagroupsync.models import (
    CourseRow,
    GroupMemberRow,
    GroupRow,
    LinkRow,
    RoleAssignmentRow,
    UserEnrolmentRow,
)

_INDEXES = (
    "CREATE INDEX IF NOT EXISTS idx_ue_enrol_user ON userenrolmentrow(enrol_id, user_id)",
    "CREATE INDEX IF NOT EXISTS idx_gm_group_user ON groupmemberrow(group_id, user_id)",
    "CREATE INDEX IF NOT EXISTS idx_gm_origin ON groupmemberrow(component, item_id)",
    "CREATE INDEX IF NOT EXISTS idx_ra_context_user ON roleassignmentrow(course_id, user_id)",
    "CREATE INDEX IF NOT EXISTS idx_ra_origin ON roleassignmentrow(component, item_id)",
    "CREATE INDEX IF NOT EXISTS idx_link_target ON linkrow(target_course_id, target_group_id)",
    "CREATE INDEX IF NOT EXISTS idx_link_source ON linkrow(logical_source_course_id, logical_source_group_id)",
    "CREATE INDEX IF NOT EXISTS idx_instance_course_method ON enrolinstancerow(course_id, method)",
)


class DatabaseManager:
    """Manages the SQLite database shared by the host directories and the link store.

    Args:
        database_path: Path to SQLite database file (defaults to settings.database_path)

    Example:
        >>> db = DatabaseManager(Path("/tmp/sync.db"))
        >>> db.initialize()
        >>> session = db.session
        >>> db.close()
    """

    def __init__(self, database_path: Path | None = None):
        """Initialize database manager.

        Args:
            database_path: Path to SQLite database (defaults to settings.database_path)
        """
        self.database_path = database_path or settings.database_path
        self.engine = None
        self.session: Session | None = None

    @property
    def is_memory(self) -> bool:
        return str(self.database_path) == ":memory:"

    def initialize(self) -> None:
        """Initialize database engine and create tables.

        This method:
        1. Creates database file if it doesn't exist
        2. Creates all tables from SQLModel
        3. Enables WAL mode for better concurrency
        4. Creates indexes for the reconciliation queries
        """
        if not self.is_memory:
            self.database_path.parent.mkdir(parents=True, exist_ok=True)

        self.engine = create_engine(
            f"sqlite:///{self.database_path}",
            echo=False,
            connect_args={"check_same_thread": False},
        )

        SQLModel.metadata.create_all(self.engine)

        if not self.is_memory:
            with self.engine.connect() as conn:
                conn.exec_driver_sql("PRAGMA journal_mode = WAL;")
                conn.exec_driver_sql("PRAGMA synchronous = NORMAL;")
                conn.exec_driver_sql("PRAGMA temp_store = MEMORY;")
                conn.commit()

        self.create_indexes()

        self.session = Session(self.engine)
        logger.info(f"✅ Database initialized at {self.database_path}")

    def create_indexes(self) -> None:
        """Create composite indexes used by the reconciliation passes."""
        if self.engine is None:
            raise RuntimeError("Database not initialized")

        with self.engine.connect() as conn:
            for statement in _INDEXES:
                conn.execute(text(statement))
            conn.commit()

        logger.debug("✅ Database indexes created")

    def close(self) -> None:
        """Close database connection and cleanup resources."""
        if self.session is not None:
            self.session.close()
            self.session = None
        if self.engine is not None:
            self.engine.dispose()
            self.engine = None

    def get_statistics(self) -> dict[str, int]:
        """Count rows in the main tables.

        Returns:
            Mapping of table label to row count, plus per-status link counts
        """
        if self.session is None:
            raise RuntimeError("Database not initialized")

        tables = {
            "courses": CourseRow,
            "groups": GroupRow,
            "memberships": GroupMemberRow,
            "enrolments": UserEnrolmentRow,
            "role_assignments": RoleAssignmentRow,
            "links": LinkRow,
        }
        stats = {
            label: self.session.exec(select(func.count()).select_from(model)).one()
            for label, model in tables.items()
        }

        rows = self.session.exec(
            select(LinkRow.status, func.count()).group_by(LinkRow.status)
        ).all()
        for status, count in rows:
            stats[f"links_{status}"] = count

        return stats


__all__ = ["DatabaseManager"]
