"""Tests for root resolution and source-course computation."""

from metagroupsync.models import Link, LinkStatus


def add_raw_link(service, source_course, source_group, target_course, target_group, **fields):
    """Store a link without validation or resolution."""
    return service.store.add(
        Link(
            target_course_id=target_course,
            target_group_id=target_group,
            logical_source_course_id=source_course,
            logical_source_group_id=source_group,
            **fields,
        )
    )


class TestResolveRoot:
    """Tests for ChainResolver.resolve_root."""

    def test_unlinked_group_is_its_own_root(self, service, host):
        host.course(10, "SRC")
        host.group(10, 5, "Group A")

        root = service.resolver.resolve_root(10, 5)

        assert root.course_id == 10
        assert root.group_id == 5
        assert root.course_name == "SRC"
        assert root.group_name == "Group A"

    def test_chain_resolves_to_first_course(self, service, host):
        """Test 10/5 -> 20/50 -> 30/60 resolves 30/60 back to 10/5."""
        for course_id, group_id in ((10, 5), (20, 50), (30, 60)):
            host.course(course_id)
            host.group(course_id, group_id)
        add_raw_link(service, 10, 5, 20, 50)
        add_raw_link(service, 20, 50, 30, 60)

        root = service.resolver.resolve_root(30, 60)

        assert (root.course_id, root.group_id) == (10, 5)

    def test_cycle_returns_none(self, service, host):
        """Test A -> B -> C -> A terminates without a root."""
        for course_id, group_id in ((1, 11), (2, 12), (3, 13)):
            host.course(course_id)
            host.group(course_id, group_id)
        add_raw_link(service, 1, 11, 2, 12)
        add_raw_link(service, 2, 12, 3, 13)
        add_raw_link(service, 3, 13, 1, 11)

        assert service.resolver.resolve_root(1, 11) is None

    def test_cycle_falls_back_to_logical_source(self, service, host):
        for course_id, group_id in ((1, 11), (2, 12), (3, 13)):
            host.course(course_id)
            host.group(course_id, group_id)
        add_raw_link(service, 1, 11, 2, 12)
        add_raw_link(service, 2, 12, 3, 13)
        link = add_raw_link(service, 3, 13, 1, 11)

        service.resolver.refresh_root(link)

        assert (link.root_source_course_id, link.root_source_group_id) == (3, 13)
        assert link.cached_root_group_name == "Group 13"

    def test_missing_root_course_returns_none(self, service, host):
        host.course(20)
        host.group(20, 50)
        add_raw_link(service, 10, 5, 20, 50)

        assert service.resolver.resolve_root(20, 50) is None

    def test_disabled_links_are_not_followed(self, service, host):
        host.course(10)
        host.course(20)
        host.group(20, 50)
        add_raw_link(service, 10, 5, 20, 50, status=LinkStatus.DISABLED)

        root = service.resolver.resolve_root(20, 50)

        assert (root.course_id, root.group_id) == (20, 50)


class TestSourceCourses:
    """Tests for compute_source_courses and chain_courses."""

    def test_empty_group_is_just_the_course(self, service, host):
        host.course(10)
        host.group(10, 5)

        assert service.resolver.compute_source_courses(10, 5) == [10]

    def test_chain_lists_roots_first(self, service, host, linked):
        """Test a group fed by a link reports the link's source before itself."""
        assert service.resolver.compute_source_courses(20, 50) == [10, 20]

    def test_link_caches_source_and_target(self, service, linked):
        assert linked.computed_source_courses == [10, 20]

    def test_meta_parent_is_included(self, service, host):
        host.course(10)
        host.course(20)
        host.group(20, 50)
        meta = service.enrolments.create_instance(20, "meta", parent_course_id=10)
        service.enrolments.enrol(meta.id, 7)
        service.groups.add_member(50, 7)

        assert service.resolver.compute_source_courses(20, 50) == [10, 20]

    def test_cycle_terminates_with_each_course_once(self, service, host):
        """Test A -> B -> C -> A with members enrolled through every link."""
        for course_id, group_id in ((1, 11), (2, 12), (3, 13)):
            host.course(course_id)
            host.group(course_id, group_id)
        links = [
            add_raw_link(service, 1, 11, 2, 12),
            add_raw_link(service, 2, 12, 3, 13),
            add_raw_link(service, 3, 13, 1, 11),
        ]
        for link in links:
            service.enrolments.enrol(link.id, 7)
            service.groups.add_member(link.target_group_id, 7)

        courses = service.resolver.compute_source_courses(1, 11)

        assert courses == [2, 3, 1]
        assert len(set(courses)) == len(courses)

    def test_chain_courses_follow_links_nearest_first(self, service, host):
        for course_id, group_id in ((10, 5), (20, 50), (30, 60)):
            host.course(course_id)
            host.group(course_id, group_id)
        add_raw_link(service, 10, 5, 20, 50)
        add_raw_link(service, 20, 50, 30, 60)

        assert service.resolver.chain_courses(30, 60) == [30, 20, 10]


class TestAggregatedTargets:
    def test_is_aggregated(self, service, host):
        host.course(10)
        host.course(20)
        host.group(20, 50)
        add_raw_link(service, 10, 5, 20, 50)
        assert not service.resolver.is_aggregated(20, 50)

        add_raw_link(service, 10, 6, 20, 50)
        assert service.resolver.is_aggregated(20, 50)


class TestDescribeChain:
    def test_path_runs_from_root_to_target(self, service, host, linked):
        """Test a second-level link shows root, source and target."""
        host.course(30, "THIRD")
        host.group(30, 60, "Third group")
        second = service.create_link(30, 20, 50, target_group_id=60)

        paths = service.describe_chain(second.id)

        assert [[step.course_id for step in path] for path in paths] == [[10, 20, 30]]
        assert paths[0][-1].group_name == "Third group"
