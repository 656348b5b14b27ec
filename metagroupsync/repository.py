"""Generic repository pattern for type-safe database operations.

This module provides a Generic Repository[T] implementation for SQLModel
entities. The host directories and the link store are built on top of it, so
every write goes through the same commit/rollback path.

Example:
    >>> from metagroupsync.repository import Repository
    >>> from metagroupsync.models import GroupRow
    >>>
    >>> group_repo = Repository[GroupRow](session, GroupRow)
    >>> group = group_repo.get(50)
    >>> if group:
    ...     print(group.name)
    >>> groups = group_repo.find_by(course_id=20)
"""

from collections.abc import Sequence
from typing import Any, Generic, TypeVar

from sqlalchemy import func
from sqlalchemy.exc import OperationalError
from sqlmodel import Session, SQLModel, select
from tenacity import (
    RetryCallState,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from metagroupsync.logging import logger

# =============================================================================
# Type Variables
# =============================================================================

T = TypeVar("T", bound=SQLModel)


# =============================================================================
# Retry Policy
# =============================================================================


def _log_retry(retry_state: RetryCallState) -> None:
    """Log a retried write before tenacity sleeps."""
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        f"⚠️ SQLite write failed (attempt {retry_state.attempt_number}), retrying: {exc}"
    )


sqlite_retry = retry(
    reraise=True,
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.05, max=1),
    retry=retry_if_exception_type(OperationalError),
    before_sleep=_log_retry,
)
"""Retry a self-contained write when SQLite reports a transient lock."""


# =============================================================================
# Generic Repository
# =============================================================================


class Repository(Generic[T]):
    """Generic repository implementation for SQLModel entities.

    Type Parameter:
        T: SQLModel entity type (GroupRow, LinkRow, ...)

    Args:
        session: SQLModel Session instance
        model: SQLModel class (e.g., GroupRow, LinkRow)

    Example:
        >>> repo = Repository[GroupRow](session, GroupRow)
        >>> group = repo.create(GroupRow(course_id=20, name="Group A"))
        >>> repo.find_by(course_id=20)
        [GroupRow(id=1, course_id=20, name='Group A')]
        >>> repo.delete(group.id)
        True
    """

    def __init__(self, session: Session, model: type[T]):
        """Initialize repository.

        Args:
            session: SQLModel Session for database operations
            model: SQLModel class
        """
        self.session = session
        self.model = model

    def commit(self) -> None:
        """Commit the session, rolling back on failure."""
        try:
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

    def get(self, entity_id: int) -> T | None:
        """Get entity by primary key."""
        return self.session.get(self.model, entity_id)

    def get_all(self, limit: int = 100, offset: int = 0) -> Sequence[T]:
        """Get entities with pagination, ordered by primary key."""
        stmt = select(self.model).order_by(self._id_column()).limit(limit).offset(offset)
        return self.session.exec(stmt).all()

    def create(self, entity: T) -> T:
        """Create new entity.

        Args:
            entity: Entity instance to create

        Returns:
            Created entity with refreshed state from database
        """
        self.session.add(entity)
        self.commit()
        self.session.refresh(entity)
        return entity

    def update(self, entity: T) -> T:
        """Update existing entity."""
        self.session.add(entity)
        self.commit()
        self.session.refresh(entity)
        return entity

    def delete(self, entity_id: int) -> bool:
        """Delete entity by primary key.

        Returns:
            True if deleted, False if not found
        """
        entity = self.get(entity_id)
        if entity:
            self.session.delete(entity)
            self.commit()
            return True
        return False

    def delete_where(self, **filters: Any) -> int:
        """Delete every entity matching equality filters.

        Returns:
            Number of rows deleted
        """
        entities = self.find_by(**filters)
        for entity in entities:
            self.session.delete(entity)
        if entities:
            self.commit()
        return len(entities)

    def find_by(self, **filters: Any) -> Sequence[T]:
        """Find entities matching equality filters, ordered by primary key.

        Filters whose value is a list/tuple/set become ``IN`` clauses.

        Example:
            >>> repo.find_by(course_id=20)
            >>> repo.find_by(group_id=[50, 51], user_id=7)
        """
        stmt = select(self.model)
        for key, value in filters.items():
            column = getattr(self.model, key)
            if isinstance(value, (list, tuple, set)):
                stmt = stmt.where(column.in_(list(value)))
            else:
                stmt = stmt.where(column == value)
        return self.session.exec(stmt.order_by(self._id_column())).all()

    def first_by(self, **filters: Any) -> T | None:
        """Return the lowest-id entity matching the filters, if any."""
        found = self.find_by(**filters)
        return found[0] if found else None

    def count(self, **filters: Any) -> int:
        """Count entities matching equality filters."""
        stmt = select(func.count()).select_from(self.model)
        for key, value in filters.items():
            stmt = stmt.where(getattr(self.model, key) == value)
        return self.session.exec(stmt).one()

    def exists(self, entity_id: int) -> bool:
        """Check if entity exists by primary key."""
        return self.get(entity_id) is not None

    def _id_column(self) -> Any:
        return getattr(self.model, "id")


__all__ = ["Repository", "sqlite_retry"]
