"""Root resolution and source-course computation for link chains.

A link's *logical* source may itself be the target of another link. The
resolver walks those chains back to the *root*: the first course/group that
is not fed by any enabled link. Every walk carries a visited set of courses,
so it ends after at most one step per distinct course even when links form
a cycle.

Example:
    >>> resolver = ChainResolver(store, courses, groups, enrolments)
    >>> root = resolver.resolve_root(course_id=20, group_id=50)
    >>> root.course_id if root else "cycle or missing reference"
    10
    >>> resolver.compute_source_courses(20, 50)
    [10, 20]
"""

from collections.abc import Iterable
from typing import Optional

from metagroupsync.config import Settings, settings as default_settings
from metagroupsync.interfaces import (
    ICourseDirectory,
    IEnrolmentDirectory,
    IGroupDirectory,
    ILinkStore,
)
from metagroupsync.logging import logger
from metagroupsync.models import LINK_METHOD, META_METHOD, ChainStep, Link, RootSource
from metagroupsync.utils import dedupe


class ChainResolver:
    """Walks link chains: roots, source-course sets and display paths.

    Args:
        store: Link store
        courses: Course directory
        groups: Group directory
        enrolments: Enrolment directory
        settings: Settings instance (defaults to the global settings)
    """

    def __init__(
        self,
        store: ILinkStore,
        courses: ICourseDirectory,
        groups: IGroupDirectory,
        enrolments: IEnrolmentDirectory,
        settings: Optional[Settings] = None,
    ):
        self.store      = store
        self.courses    = courses
        self.groups     = groups
        self.enrolments = enrolments
        self.settings   = settings or default_settings

    # =========================================================================
    # Root resolution
    # =========================================================================

    def resolve_root(
        self,
        course_id: int,
        group_id: Optional[int] = None,
        visited: Optional[Iterable[int]] = None,
    ) -> RootSource | None:
        """Find the non-derived origin of (course, group).

        Follows the lowest-id enabled link feeding the current course/group,
        using that link's cached root when present and its logical source
        otherwise.

        Args:
            course_id: Course to start from
            group_id: Group to start from (None: any link into the course counts)
            visited: Courses already on the walk

        Returns:
            The root, or None when the walk revisits a course (cycle) or ends
            at a course that no longer exists. Callers then fall back to the
            logical source.
        """
        seen = set(visited or ())
        parent_group_ids: list[Optional[int]] = []
        current_course, current_group = course_id, group_id

        while True:
            if current_course in seen:
                logger.warning(
                    f"⚠️ Cycle detected resolving root of course {course_id}: "
                    f"course {current_course} reached twice"
                )
                return None
            seen.add(current_course)

            parents = self.store.links_into(current_course, current_group or None)
            if not parents:
                break
            parent = parents[0]
            current_course, current_group = parent.parent_course_id, parent.parent_group_id
            parent_group_ids.append(current_group)

        course = self.courses.get_course(current_course)
        if course is None:
            logger.warning(f"⚠️ Root course {current_course} of course {course_id} does not exist")
            return None

        root = RootSource(course_id=current_course, course_name=course.display_name)
        if current_group:
            group = self.groups.get_group(current_group)
            if group is not None:
                root.group_id = group.id
                root.group_name = group.name

        for parent_group_id in reversed(parent_group_ids):
            if root.group_id is not None:
                break
            if parent_group_id:
                group = self.groups.get_group(parent_group_id)
                if group is not None:
                    root.group_id = group.id
                    root.group_name = group.name

        return root

    def refresh_root(self, link: Link) -> Link:
        """Recompute a link's root fields and display caches in place.

        When the root cannot be resolved, the logical source is used as root
        and a warning is logged.
        """
        source_group = self.groups.get_group(link.logical_source_group_id)
        link.cached_source_group_name = source_group.name if source_group else None

        root = self.resolve_root(link.logical_source_course_id, link.logical_source_group_id)
        if root is None:
            logger.warning(
                f"⚠️ Link {link.id}: root unresolved, using logical source "
                f"{link.logical_source_course_id}/{link.logical_source_group_id} as root"
            )
            course = self.courses.get_course(link.logical_source_course_id)
            link.root_source_course_id = link.logical_source_course_id
            link.root_source_group_id = link.logical_source_group_id
            link.cached_root_course_name = course.display_name if course else None
            link.cached_root_group_name = link.cached_source_group_name
            return link

        link.root_source_course_id = root.course_id
        link.root_source_group_id = root.group_id
        link.cached_root_course_name = root.course_name
        link.cached_root_group_name = root.group_name
        return link

    def chain_courses(self, course_id: int, group_id: Optional[int] = None) -> list[int]:
        """Courses on the link chain upstream of (course, group), nearest first.

        Unlike :meth:`compute_source_courses` this follows every enabled link,
        whether or not it has enrolled anybody yet.
        """
        courses: list[int] = []
        seen: set[int] = set()
        current_course, current_group = course_id, group_id
        while current_course not in seen:
            seen.add(current_course)
            courses.append(current_course)
            parents = self.store.links_into(current_course, current_group or None)
            if not parents:
                break
            current_course = parents[0].logical_source_course_id
            current_group = parents[0].logical_source_group_id
        return courses

    # =========================================================================
    # Source-course sets
    # =========================================================================

    def compute_source_courses(
        self,
        course_id: int,
        group_id: Optional[int] = None,
        visited: Optional[Iterable[int]] = None,
    ) -> list[int]:
        """Every course that contributed members to a group, roots first.

        Args:
            course_id: Course holding the group
            group_id: Group to inspect (None: just the course)
            visited: Courses already on the walk

        Returns:
            Deduplicated course ids, roots first, ``course_id`` last
        """
        seen = set(visited or ())
        if course_id in seen:
            return []
        seen.add(course_id)

        if not group_id or self.groups.count_members(group_id) == 0:
            return [course_id]

        collected: list[int] = []
        methods = self.enrolments.list_group_enrol_methods(
            course_id, group_id, self.settings.enabled_methods
        )
        for instance in methods:
            if instance.method == LINK_METHOD:
                parent = self.store.get(instance.id)
                if parent is None:
                    continue
                parent_course, parent_group = parent.parent_course_id, parent.parent_group_id
                if not parent_course or parent_course == course_id:
                    continue
                parent_courses = [
                    parent_course_id
                    for parent_course_id in self.compute_source_courses(parent_course, parent_group, seen)
                    if parent_course_id != course_id
                ]
                collected = dedupe(parent_courses + collected)
                root_course = parent.root_source_course_id
                if root_course and root_course not in collected:
                    collected.insert(0, root_course)
            elif instance.method == META_METHOD and instance.parent_course_id:
                if instance.parent_course_id not in collected:
                    collected.insert(0, instance.parent_course_id)

        return [item for item in dedupe(collected) if item != course_id] + [course_id]

    def refresh_source_courses(self, link: Link) -> Link:
        """Recompute a link's cached source-course list in place.

        The list is the source set of the logical source followed by the
        link's own target course.
        """
        sources = self.compute_source_courses(
            link.logical_source_course_id, link.logical_source_group_id
        )
        link.computed_source_courses = dedupe(sources + [link.target_course_id])
        return link

    # =========================================================================
    # Aggregated targets
    # =========================================================================

    def find_aggregated_links(self, course_id: int, group_id: int) -> list[Link]:
        """Enabled links feeding one target group."""
        if group_id <= 0:
            return []
        return self.store.links_into(course_id, group_id)

    def is_aggregated(self, course_id: int, group_id: int) -> bool:
        """Check if a target group is fed by more than one enabled link."""
        return len(self.find_aggregated_links(course_id, group_id)) > 1

    # =========================================================================
    # Chain display
    # =========================================================================

    def describe_chain(self, link: Link) -> list[list[ChainStep]]:
        """Every path by which members reach a link's target group.

        One path per enrolment method that brought members into the source
        group; each path runs from the root to the source and ends at the
        target.
        """
        source_course = link.logical_source_course_id
        source_group = link.logical_source_group_id
        if not source_group:
            return []

        tail = [
            self._step(source_course, source_group),
            self._step(link.target_course_id, link.target_group_id),
        ]
        if self.groups.count_members(source_group) == 0:
            return [tail]

        paths: list[list[ChainStep]] = []
        methods = self.enrolments.list_group_enrol_methods(
            source_course, source_group, self.settings.enabled_methods
        )
        for instance in methods:
            head: list[ChainStep] = []
            if instance.method == LINK_METHOD:
                parent = self.store.get(instance.id)
                if parent is not None and parent.parent_course_id != source_course:
                    head = self._path_to_root(parent.parent_course_id, parent.parent_group_id)
            elif instance.method == META_METHOD and instance.parent_course_id:
                head = [self._step(instance.parent_course_id, None)]
            paths.append(head + tail)

        return paths or [tail]

    def _path_to_root(self, course_id: int, group_id: Optional[int]) -> list[ChainStep]:
        steps: list[ChainStep] = []
        seen: set[int] = set()
        current_course, current_group = course_id, group_id
        while current_course not in seen:
            seen.add(current_course)
            steps.append(self._step(current_course, current_group))
            parents = self.store.links_into(
                current_course, current_group if current_group and current_group > 0 else None
            )
            if not parents:
                break
            current_course = parents[0].parent_course_id
            current_group = parents[0].parent_group_id
        steps.reverse()
        return steps

    def _step(self, course_id: int, group_id: Optional[int]) -> ChainStep:
        course = self.courses.get_course(course_id)
        group = self.groups.get_group(group_id) if group_id else None
        return ChainStep(
            course_id=course_id,
            course_name=course.display_name if course else str(course_id),
            group_id=group_id or None,
            group_name=group.name if group else None,
        )


__all__ = ["ChainResolver"]
