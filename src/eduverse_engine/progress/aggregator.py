"""Per-course progress: aggregation and section start/complete transitions."""

import logging
from dataclasses import dataclass, replace
from typing import Optional

from eduverse_engine.common.exceptions import SectionNotStartedError, UnknownSectionError
from eduverse_engine.common.scheduling import Clock
from eduverse_engine.ledger.operations import LedgerOperation, OperationType, ViewKind
from eduverse_engine.progress.models import CourseProgress, ProgressSnapshot, Section, SectionProgress
from eduverse_engine.reconciliation.coordinator import (
    Listener,
    Mutation,
    Reconciliation,
    ReconciliationCoordinator,
)
from eduverse_engine.reconciliation.views import Tracked, ViewKey

logger = logging.getLogger(__name__)


def _outline_rows(snapshot: ProgressSnapshot) -> list[SectionProgress]:
    known = {s.section_id for s in snapshot.sections}
    return [row for section_id, row in snapshot.rows.items() if section_id in known]


def compute_course_progress(snapshot: ProgressSnapshot) -> CourseProgress:
    """Derive completion counts and a rounded percentage from the snapshot's rows.

    Only rows for sections in the course outline count. With no sections
    the course is 0% and never fully completed.
    """
    total = len(snapshot.sections)
    rows = _outline_rows(snapshot)
    completed = sum(1 for row in rows if row.is_completed)
    if total == 0:
        percentage = 0
    else:
        # round half up
        percentage = min(100, max(0, (completed * 200 + total) // (2 * total)))

    activity = [t for row in rows for t in (row.started_at, row.completed_at) if t is not None]
    return CourseProgress(
        total_sections=total,
        completed_sections=completed,
        percentage=percentage,
        is_fully_completed=total > 0 and completed == total,
        last_activity_at=max(activity) if activity else None,
    )


def next_incomplete_section(snapshot: ProgressSnapshot) -> Optional[Section]:
    """Lowest-ordered section without a completion record; ties go to the lower sequence."""
    for section in sorted(snapshot.sections, key=lambda s: s.sort_key):
        row = snapshot.row(section.section_id)
        if row is None or not row.is_completed:
            return section
    return None


@dataclass(frozen=True)
class ProgressView:
    subject_id: str
    resource_id: str
    progress: CourseProgress
    next_section: Optional[Section]
    snapshot: ProgressSnapshot
    freshness: str
    degraded: bool = False
    unconfirmed: bool = False
    pending_index_lag: bool = False


class ProgressAggregator:
    def __init__(self, coordinator: ReconciliationCoordinator, clock: Optional[Clock] = None):
        self.coordinator = coordinator
        self.clock = clock or Clock()

    def _key(self, subject_id: str, resource_id: str) -> ViewKey:
        return ViewKey(subject_id, resource_id, ViewKind.PROGRESS)

    @staticmethod
    def _check_known(snapshot: ProgressSnapshot, section_id: str) -> None:
        # an empty outline means the index has not told us the sections yet
        if snapshot.sections and not snapshot.has_section(section_id):
            raise UnknownSectionError(
                f"Section {section_id} is not part of course {snapshot.resource_id}"
            )

    async def snapshot(self, subject_id: str, resource_id: str) -> Tracked:
        return await self.coordinator.read(self._key(subject_id, resource_id))

    async def view(self, subject_id: str, resource_id: str) -> ProgressView:
        tracked = await self.snapshot(subject_id, resource_id)
        snapshot: ProgressSnapshot = tracked.value
        return ProgressView(
            subject_id=subject_id,
            resource_id=resource_id,
            progress=compute_course_progress(snapshot),
            next_section=next_incomplete_section(snapshot),
            snapshot=snapshot,
            freshness=tracked.freshness.value,
            degraded=tracked.is_degraded,
            unconfirmed=tracked.unconfirmed,
            pending_index_lag=tracked.pending_index_lag,
        )

    async def course_progress(self, subject_id: str, resource_id: str) -> CourseProgress:
        return compute_course_progress((await self.snapshot(subject_id, resource_id)).value)

    async def next_section(self, subject_id: str, resource_id: str) -> Optional[Section]:
        return next_incomplete_section((await self.snapshot(subject_id, resource_id)).value)

    async def start_section(
        self,
        subject_id: str,
        resource_id: str,
        section_id: str,
        on_update: Optional[Listener] = None,
    ) -> Reconciliation:
        """Record a section start. Already-started sections are left alone."""

        def plan(current: ProgressSnapshot) -> Optional[Mutation]:
            self._check_known(current, section_id)
            if current.row(section_id) is not None:
                return None
            row = SectionProgress(
                subject_id=subject_id,
                resource_id=resource_id,
                section_id=section_id,
                started_at=self.clock.now(),
                view_count=1,
            )
            operation = LedgerOperation.build(
                OperationType.START_SECTION, subject_id, resource_id, section_id=section_id,
            )
            return Mutation(operation, current.with_row(row))

        result = await self.coordinator.perform(
            self._key(subject_id, resource_id), plan, on_update=on_update,
        )
        logger.info("Start section %s/%s/%s: %s", subject_id, resource_id, section_id, result.status.value)
        return result

    async def complete_section(
        self,
        subject_id: str,
        resource_id: str,
        section_id: str,
        on_update: Optional[Listener] = None,
    ) -> Reconciliation:
        """Record a completion. Requires a prior start; re-completion is a no-op."""

        def plan(current: ProgressSnapshot) -> Optional[Mutation]:
            self._check_known(current, section_id)
            row = current.row(section_id)
            if row is None:
                raise SectionNotStartedError(
                    f"Section {section_id} of {resource_id} has not been started"
                )
            if row.is_completed:
                return None
            completed = replace(row, completed_at=max(self.clock.now(), row.started_at))
            operation = LedgerOperation.build(
                OperationType.COMPLETE_SECTION, subject_id, resource_id, section_id=section_id,
            )
            return Mutation(operation, current.with_row(completed))

        result = await self.coordinator.perform(
            self._key(subject_id, resource_id), plan, on_update=on_update,
        )
        logger.info("Complete section %s/%s/%s: %s", subject_id, resource_id, section_id, result.status.value)
        return result
