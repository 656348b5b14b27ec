"""Reconciliation Engine.

The batch path: brings every derived enrolment, membership and role of the
links of one course (or of the whole site) back into agreement with their
sources. A run goes through these stages in order:

1. promote links pending their initial sync to enabled
2. handle lost links (they are skipped by every later stage)
3. initialise missing source-course lists, a batch at a time
4. create/restore pass: missing enrolments and memberships
5. extra-removal pass: unenrol action for users without a source, group moves
6. status pass: status and window drift
7. role pass: assign, then (unless roles are kept) unassign
8. role-filter cleanup, when only users with a synced role are mirrored

Each record is processed on its own: a failure is logged with its context,
counted in the report and the run carries on. Running twice without any
external change performs no operation the second time.

Example:
    >>> engine = service.engine
    >>> report = engine.reconcile(course_id=20)
    >>> report.operations["enrolled"]
    2
"""

import time
import uuid
from collections.abc import Callable, Iterable
from typing import Any, Optional

from tqdm import tqdm

from metagroupsync.actions import LinkActions
from metagroupsync.aggregation import aggregate_parent_state
from metagroupsync.config import Settings, settings as default_settings
from metagroupsync.interfaces import IEnrolmentDirectory, ILinkStore, IRoleDirectory
from metagroupsync.logging import clear_sync_context, logger, set_sync_context
from metagroupsync.lost_links import LostLinkHandler
from metagroupsync.metrics import reconcile_errors_total, reconcile_runs_total, record_report
from metagroupsync.models import (
    PLUGIN_COMPONENT,
    EnrolmentStatus,
    Link,
    LinkStatus,
    ReconcileReport,
    SyncMode,
)
from metagroupsync.resolver import ChainResolver
from metagroupsync.telemetry import create_span_context, get_tracer, record_exception_in_span

STATUS_OK = 0
STATUS_ERROR = 1
STATUS_DISABLED = 2


class ReconciliationEngine:
    """Four-pass batch reconciliation over the links of a course or the site.

    Args:
        store: Link store
        enrolments: Enrolment directory
        roles: Role directory
        resolver: Chain resolver
        actions: Shared per-user primitives
        lost_links: Lost-Link Handler
        settings: Settings instance (defaults to the global settings)
    """

    def __init__(
        self,
        store: ILinkStore,
        enrolments: IEnrolmentDirectory,
        roles: IRoleDirectory,
        resolver: ChainResolver,
        actions: LinkActions,
        lost_links: LostLinkHandler,
        settings: Optional[Settings] = None,
    ):
        self.store = store
        self.enrolments = enrolments
        self.roles = roles
        self.resolver = resolver
        self.actions = actions
        self.lost_links = lost_links
        self.settings = settings or default_settings
        self.tracer = get_tracer(__name__)

    # =========================================================================
    # Entry points
    # =========================================================================

    def run_reconciliation(self, course_id: Optional[int] = None, verbose: bool = False) -> int:
        """Run a reconciliation and map the outcome to a status code.

        Returns:
            0 on success (per-record failures included), 1 when the run
            itself failed, 2 when synchronisation is disabled
        """
        if not self.settings.sync_enabled:
            removed = self.roles.unassign_all(
                context_id=course_id, origin_component=PLUGIN_COMPONENT
            )
            logger.info(f"⏹️ Synchronisation disabled, revoked {removed} role assignment(s)")
            reconcile_runs_total.labels(status="disabled").inc()
            return STATUS_DISABLED

        try:
            report = self.reconcile(course_id, verbose=verbose)
        except Exception as e:
            logger.exception(f"❌ Reconciliation failed: {e}")
            reconcile_runs_total.labels(status="error").inc()
            return STATUS_ERROR

        record_report(report, status="success")
        return STATUS_OK

    def reconcile(self, course_id: Optional[int] = None, verbose: bool = False) -> ReconcileReport:
        """Reconcile the links of one target course, or of every course.

        Args:
            course_id: Target course to restrict to (None: all links)
            verbose: Show per-pass progress bars

        Returns:
            Counts of the operations performed and of the failures skipped
        """
        started = time.perf_counter()
        report = ReconcileReport(course_id=course_id)
        scope = f"course {course_id}" if course_id is not None else "all courses"
        set_sync_context(run_id=uuid.uuid4().hex[:12], course_id=course_id, operation="reconcile")

        try:
            with create_span_context(self.tracer, "reconcile", {"course_id": course_id}) as span:
                logger.info(f"🚀 Starting reconciliation of {scope}")
                try:
                    self._run_stages(course_id, report, verbose)
                except Exception as e:
                    record_exception_in_span(span, e)
                    raise
                span.set_attribute("operations", report.total_operations)
                span.set_attribute("errors", report.errors)
        finally:
            report.duration_seconds = time.perf_counter() - started
            clear_sync_context()

        logger.info(
            f"✅ Reconciliation of {scope} complete in {report.duration_seconds:.2f}s: "
            f"{report.total_operations} operation(s), {report.errors} error(s)"
        )
        return report

    # =========================================================================
    # Stages
    # =========================================================================

    def _run_stages(self, course_id: Optional[int], report: ReconcileReport, verbose: bool) -> None:
        with self._stage("promote_pending", course_id):
            self._promote_pending(course_id, report)

        with self._stage("lost_links", course_id):
            lost = self.lost_links.process(course_id, report)

        with self._stage("source_courses", course_id):
            self._initialise_source_courses(course_id, report)

        links = self._active_links(course_id, lost)
        logger.debug(f"Reconciling {len(links)} link(s), skipping {len(lost)} lost")

        with self._stage("pass_create", course_id):
            for link in self._progress(links, "Creating", verbose):
                self._guarded(report, "pass_create", link, self._pass_create, link, report)

        with self._stage("pass_remove", course_id):
            for link in self._progress(links, "Removing", verbose):
                self._guarded(report, "pass_remove", link, self._pass_remove, link, report)

        with self._stage("pass_status", course_id):
            for link in self._progress(links, "Updating status", verbose):
                self._guarded(report, "pass_status", link, self._pass_status, link, report)

        with self._stage("pass_roles", course_id):
            for link in self._progress(links, "Assigning roles", verbose):
                self._guarded(report, "pass_roles", link, self._pass_roles, link, report, True, False)
            if not self.settings.keeps_roles_on_unenrol:
                for link in self._progress(links, "Removing roles", verbose):
                    self._guarded(report, "pass_roles", link, self._pass_roles, link, report, False, True)
                for link in self.store.list_links(target_course_id=course_id, status=LinkStatus.DISABLED):
                    self._guarded(report, "pass_roles", link, self.actions.revoke_link_roles, link, report)

        if not self.settings.sync_all:
            with self._stage("role_filter_cleanup", course_id):
                for link in self._progress(links, "Role filter cleanup", verbose):
                    self._guarded(report, "role_filter_cleanup", link, self._role_filter_cleanup, link, report)

        if report.errors == 0:
            for link in links:
                if link.sync_mode == SyncMode.SNAPSHOT:
                    self.store.mark_synced(link.id)

    def _promote_pending(self, course_id: Optional[int], report: ReconcileReport) -> None:
        for link in self.store.list_links(target_course_id=course_id, status=LinkStatus.PENDING):
            if self._guarded(
                report, "promote_pending", link, self.store.set_status, link.id, LinkStatus.ENABLED
            ):
                report.record("activated")
                logger.info(f"✅ Link {link.id} enabled after its initial sync wait")

    def _initialise_source_courses(self, course_id: Optional[int], report: ReconcileReport) -> None:
        batch_size = self.settings.source_courses_batch_size
        if course_id is None:
            candidates = self.store.links_without_source_courses(batch_size)
        else:
            candidates = [
                link
                for link in self.store.list_links(target_course_id=course_id)
                if not link.computed_source_courses
            ][:batch_size]

        for link in candidates:
            if self._guarded(report, "source_courses", link, self._refresh_source_courses, link):
                report.record("source_courses_initialized")

    def _refresh_source_courses(self, link: Link) -> None:
        self.store.save(self.resolver.refresh_source_courses(link))

    def _active_links(self, course_id: Optional[int], lost: set[int]) -> list[Link]:
        links = self.store.list_links(target_course_id=course_id, status=LinkStatus.ENABLED)
        return [link for link in links if link.id not in lost and not link.is_frozen]

    # =========================================================================
    # Passes (one link each)
    # =========================================================================

    def _pass_create(self, link: Link, report: ReconcileReport) -> None:
        for user_id, rows in self.actions.collect_parent_enrolments(link).items():
            self._guarded(
                report, "pass_create", link,
                self.actions.create_or_restore, link, user_id, aggregate_parent_state(rows), report,
                user_id=user_id,
            )

    def _pass_remove(self, link: Link, report: ReconcileReport) -> None:
        qualifying = set(self.actions.collect_parent_enrolments(link))
        stale = self.actions.stale_memberships(link) if link.has_target_group else {}

        for enrolment in self.enrolments.list_enrolments(link.id):
            user_id = enrolment.user_id
            if user_id not in qualifying:
                self._guarded(
                    report, "pass_remove", link,
                    self.actions.apply_unenrol_action, link, enrolment, report,
                    user_id=user_id,
                )
                continue
            for old_group_id in stale.get(user_id, []):
                self._guarded(
                    report, "pass_remove", link,
                    self.actions.move_member, link, user_id, old_group_id, report,
                    user_id=user_id,
                )

    def _pass_status(self, link: Link, report: ReconcileReport) -> None:
        for user_id, rows in self.actions.collect_parent_enrolments(link).items():
            enrolment = self.enrolments.get_enrolment(link.id, user_id)
            if enrolment is None:
                continue
            self._guarded(
                report, "pass_status", link,
                self.actions.update_status, link, enrolment, aggregate_parent_state(rows), report,
                user_id=user_id,
            )

    def _pass_roles(self, link: Link, report: ReconcileReport, assign: bool, unassign: bool) -> None:
        for enrolment in self.enrolments.list_enrolments(link.id):
            self._guarded(
                report, "pass_roles", link,
                self.actions.sync_roles_for_user,
                link, enrolment.user_id, enrolment.status == EnrolmentStatus.ACTIVE, report,
                assign, unassign,
                user_id=enrolment.user_id,
            )

    def _role_filter_cleanup(self, link: Link, report: ReconcileReport) -> None:
        for enrolment in self.enrolments.list_enrolments(link.id):
            if self.actions.qualifies(link, enrolment.user_id):
                continue
            self._guarded(
                report, "role_filter_cleanup", link,
                self.actions.apply_unenrol_action, link, enrolment, report,
                user_id=enrolment.user_id,
            )

    # =========================================================================
    # Helpers
    # =========================================================================

    def _guarded(
        self,
        report: ReconcileReport,
        stage: str,
        link: Link,
        fn: Callable[..., Any],
        *args: Any,
        user_id: Optional[int] = None,
    ) -> bool:
        """Run one record's step, logging and counting a failure instead of raising.

        Returns:
            True when the step succeeded
        """
        set_sync_context(link_id=link.id)
        try:
            fn(*args)
        except Exception as e:
            report.errors += 1
            reconcile_errors_total.labels(stage=stage).inc()
            who = f"user {user_id}, " if user_id is not None else ""
            logger.error(
                f"❌ {stage} failed ({who}link {link.id}, course {link.target_course_id}): {e}"
            )
            return False
        return True

    def _stage(self, name: str, course_id: Optional[int]):
        set_sync_context(operation=name)
        return create_span_context(self.tracer, f"reconcile.{name}", {"course_id": course_id})

    @staticmethod
    def _progress(links: Iterable[Link], desc: str, verbose: bool) -> Iterable[Link]:
        return tqdm(links, desc=desc, unit=" links", disable=not verbose)


__all__ = ["ReconciliationEngine", "STATUS_OK", "STATUS_ERROR", "STATUS_DISABLED"]
