"""Link Store.

Links are persisted as a ``LinkRow`` plus the ``EnrolInstanceRow`` (method
``metagroup``) that carries their derived enrolments; both share one id.
All row <-> :class:`~metagroupsync.models.Link` conversion happens here so the
rest of the package only ever sees typed ``Link`` records.
"""

import json
from typing import Optional

from sqlmodel import Session, col, or_, select

from metagroupsync.logging import logger
from metagroupsync.models import (
    LINK_METHOD,
    EnrolInstanceRow,
    InstanceStatus,
    Link,
    LinkRow,
    LinkStatus,
    SyncMode,
)
from metagroupsync.repository import Repository, sqlite_retry
from metagroupsync.utils import now_timestamp


def _decode_source_courses(raw: Optional[str]) -> list[int]:
    if not raw:
        return []
    try:
        decoded = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning(f"⚠️ Ignoring malformed source course cache: {raw!r}")
        return []
    if isinstance(decoded, dict):
        decoded = decoded.get("source_courses", [])
    return [int(course_id) for course_id in decoded] if isinstance(decoded, list) else []


def _encode_source_courses(course_ids: list[int]) -> Optional[str]:
    if not course_ids:
        return None
    return json.dumps({"source_courses": course_ids})


def row_to_link(row: LinkRow) -> Link:
    """Convert a persisted row into a ``Link``."""
    return Link(
        id=row.id,
        target_course_id=row.target_course_id,
        target_group_id=row.target_group_id,
        logical_source_course_id=row.logical_source_course_id,
        logical_source_group_id=row.logical_source_group_id,
        root_source_course_id=row.root_source_course_id,
        root_source_group_id=row.root_source_group_id,
        cached_source_group_name=row.cached_source_group_name,
        cached_root_course_name=row.cached_root_course_name,
        cached_root_group_name=row.cached_root_group_name,
        computed_source_courses=_decode_source_courses(row.source_courses_json),
        status=LinkStatus(row.status),
        sync_mode=SyncMode(row.sync_mode),
        last_synced_at=row.last_synced_at,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def apply_link(row: LinkRow, link: Link) -> LinkRow:
    """Copy a ``Link``'s fields onto a row (id excluded)."""
    row.target_course_id = link.target_course_id
    row.target_group_id = link.target_group_id
    row.logical_source_course_id = link.logical_source_course_id
    row.logical_source_group_id = link.logical_source_group_id
    row.root_source_course_id = link.root_source_course_id
    row.root_source_group_id = link.root_source_group_id
    row.cached_source_group_name = link.cached_source_group_name
    row.cached_root_course_name = link.cached_root_course_name
    row.cached_root_group_name = link.cached_root_group_name
    row.source_courses_json = _encode_source_courses(link.computed_source_courses)
    row.status = link.status.value
    row.sync_mode = link.sync_mode.value
    row.last_synced_at = link.last_synced_at
    return row


class LinkStore:
    """Persisted table of links.

    Args:
        session: SQLModel Session shared with the host directories

    Example:
        >>> store = LinkStore(db.session)
        >>> link = store.add(Link(target_course_id=20, target_group_id=50,
        ...                       logical_source_course_id=10, logical_source_group_id=5))
        >>> store.links_into(20, 50)[0].id == link.id
        True
    """

    def __init__(self, session: Session):
        self.session = session
        self.rows = Repository[LinkRow](session, LinkRow)
        self.instances = Repository[EnrolInstanceRow](session, EnrolInstanceRow)

    # ----- single links --------------------------------------------------

    def get(self, link_id: int) -> Link | None:
        row = self.rows.get(link_id)
        return row_to_link(row) if row else None

    def add(self, link: Link) -> Link:
        """Persist a new link together with its enrolment instance."""
        instance = self.instances.create(
            EnrolInstanceRow(
                course_id=link.target_course_id,
                method=LINK_METHOD,
                status=self._instance_status(link.status),
                parent_course_id=link.logical_source_course_id,
            )
        )
        now = now_timestamp()
        row = apply_link(LinkRow(id=instance.id, target_course_id=0,
                                 logical_source_course_id=0, logical_source_group_id=0), link)
        row.created_at = now
        row.updated_at = now
        try:
            row = self.rows.create(row)
        except Exception:
            self.instances.delete(instance.id)
            raise
        logger.debug(f"➕ Stored link {row.id}: {row.logical_source_course_id}/"
                     f"{row.logical_source_group_id} -> {row.target_course_id}/{row.target_group_id}")
        return row_to_link(row)

    @sqlite_retry
    def save(self, link: Link) -> Link:
        """Write back every field of an existing link."""
        if link.id is None:
            raise ValueError("Cannot save a link without an id")
        row = self.rows.get(link.id)
        if row is None:
            raise LookupError(f"Link {link.id} does not exist")

        apply_link(row, link)
        row.updated_at = now_timestamp()
        instance = self.instances.get(link.id)
        if instance is not None:
            instance.course_id = link.target_course_id
            instance.parent_course_id = link.logical_source_course_id
            instance.status = self._instance_status(link.status)
            self.session.add(instance)
        return row_to_link(self.rows.update(row))

    @sqlite_retry
    def delete(self, link_id: int) -> bool:
        """Delete the link row and its enrolment instance.

        Derived enrolments must have been unwound by the caller.
        """
        deleted = self.rows.delete(link_id)
        if self.instances.exists(link_id):
            self.instances.delete(link_id)
        return deleted

    def set_status(self, link_id: int, status: LinkStatus) -> Link:
        link = self.get(link_id)
        if link is None:
            raise LookupError(f"Link {link_id} does not exist")
        if link.status == status:
            return link
        link.status = status
        return self.save(link)

    @sqlite_retry
    def retarget_group(self, old_group_id: int, new_group_id: int) -> list[int]:
        """Point every link targeting a group, in any status, at another group.

        Returns:
            Ids of the links changed
        """
        now = now_timestamp()
        changed = []
        for row in self.rows.find_by(target_group_id=old_group_id):
            row.target_group_id = new_group_id
            row.updated_at = now
            self.rows.update(row)
            changed.append(row.id)
        return changed

    def mark_synced(self, link_id: int) -> None:
        """Record the first successful synchronisation of a link."""
        row = self.rows.get(link_id)
        if row is not None and row.last_synced_at is None:
            row.last_synced_at = now_timestamp()
            self.rows.update(row)

    # ----- queries -------------------------------------------------------

    def find(self, **filters: int) -> Link | None:
        """Return the lowest-id link matching equality filters on link fields."""
        row = self.rows.first_by(**filters)
        return row_to_link(row) if row else None

    def list_links(
        self,
        target_course_id: Optional[int] = None,
        source_course_id: Optional[int] = None,
        status: Optional[LinkStatus] = None,
    ) -> list[Link]:
        filters: dict[str, object] = {}
        if target_course_id is not None:
            filters["target_course_id"] = target_course_id
        if source_course_id is not None:
            filters["logical_source_course_id"] = source_course_id
        if status is not None:
            filters["status"] = status.value
        return [row_to_link(row) for row in self.rows.find_by(**filters)]

    def links_into(
        self, course_id: int, group_id: Optional[int] = None, enabled_only: bool = True
    ) -> list[Link]:
        """Links whose target is (course, group), or the course alone when group is unset."""
        filters: dict[str, object] = {"target_course_id": course_id}
        if group_id:
            filters["target_group_id"] = group_id
        if enabled_only:
            filters["status"] = LinkStatus.ENABLED.value
        return [row_to_link(row) for row in self.rows.find_by(**filters)]

    def links_from(
        self,
        course_id: Optional[int] = None,
        group_id: Optional[int] = None,
        enabled_only: bool = True,
    ) -> list[Link]:
        """Links whose logical or root source is the given course and/or group."""
        stmt = select(LinkRow)
        if course_id is not None:
            stmt = stmt.where(
                or_(
                    LinkRow.logical_source_course_id == course_id,
                    LinkRow.root_source_course_id == course_id,
                )
            )
        if group_id is not None:
            stmt = stmt.where(
                or_(
                    LinkRow.logical_source_group_id == group_id,
                    LinkRow.root_source_group_id == group_id,
                )
            )
        if enabled_only:
            stmt = stmt.where(LinkRow.status == LinkStatus.ENABLED.value)
        rows = self.session.exec(stmt.order_by(col(LinkRow.id))).all()
        return [row_to_link(row) for row in rows]

    def links_without_source_courses(self, limit: int) -> list[Link]:
        stmt = (
            select(LinkRow)
            .where(or_(col(LinkRow.source_courses_json).is_(None), LinkRow.source_courses_json == ""))
            .order_by(col(LinkRow.id))
            .limit(limit)
        )
        return [row_to_link(row) for row in self.session.exec(stmt).all()]

    def course_ids_with_links(self) -> list[int]:
        stmt = select(LinkRow.target_course_id).distinct().order_by(col(LinkRow.target_course_id))
        return list(self.session.exec(stmt).all())

    def target_group_ids(self) -> set[int]:
        stmt = select(LinkRow.target_group_id).where(LinkRow.target_group_id > 0).distinct()
        return set(self.session.exec(stmt).all())

    @staticmethod
    def _instance_status(status: LinkStatus) -> int:
        return InstanceStatus.ENABLED if status == LinkStatus.ENABLED else InstanceStatus.DISABLED


__all__ = ["LinkStore", "row_to_link", "apply_link"]
