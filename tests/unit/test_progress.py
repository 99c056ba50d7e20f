"""Tests for progress aggregation and section transitions."""

from datetime import timedelta

import pytest

from eduverse_engine import compute_course_progress, next_incomplete_section
from eduverse_engine.common.exceptions import SectionNotStartedError, UnknownSectionError
from eduverse_engine.ledger.operations import OperationType
from eduverse_engine.progress.models import ProgressSnapshot, Section, SectionProgress
from eduverse_engine.reconciliation.coordinator import ReconciliationStatus
from conftest import COURSE, SUBJECT
from fakes import T0


def outline(n, orders=None):
    orders = orders or list(range(1, n + 1))
    return tuple(Section(f"s{i + 1}", order, i) for i, order in enumerate(orders))


def row(section_id, completed=False):
    return SectionProgress(
        SUBJECT, COURSE, section_id,
        started_at=T0,
        completed_at=T0 + timedelta(minutes=5) if completed else None,
    )


def snapshot(sections, *rows):
    return ProgressSnapshot(SUBJECT, COURSE, sections, {r.section_id: r for r in rows})


class TestComputeCourseProgress:
    def test_empty_outline(self):
        progress = compute_course_progress(ProgressSnapshot(SUBJECT, COURSE))
        assert progress.total_sections == 0
        assert progress.percentage == 0
        assert not progress.is_fully_completed
        assert progress.last_activity_at is None

    @pytest.mark.parametrize("total,completed,expected", [
        (3, 1, 33),
        (3, 2, 67),
        (8, 1, 13),
        (4, 4, 100),
        (4, 0, 0),
    ])
    def test_percentage_rounds_half_up(self, total, completed, expected):
        rows = [row(f"s{i + 1}", completed=True) for i in range(completed)]
        assert compute_course_progress(snapshot(outline(total), *rows)).percentage == expected

    def test_started_only_rows_do_not_count(self):
        progress = compute_course_progress(snapshot(outline(2), row("s1"), row("s2", completed=True)))
        assert progress.completed_sections == 1
        assert progress.last_activity_at == T0 + timedelta(minutes=5)

    def test_rows_outside_outline_are_ignored(self):
        stray = SectionProgress(SUBJECT, COURSE, "old", started_at=T0, completed_at=T0)
        progress = compute_course_progress(snapshot(outline(2), row("s1", completed=True), stray))
        assert progress.completed_sections == 1
        assert progress.percentage == 50

    def test_fully_completed(self):
        rows = [row("s1", True), row("s2", True)]
        assert compute_course_progress(snapshot(outline(2), *rows)).is_fully_completed

    def test_completion_before_start_is_invalid(self):
        with pytest.raises(ValueError):
            SectionProgress(SUBJECT, COURSE, "s1", started_at=T0, completed_at=T0 - timedelta(seconds=1))


class TestNextIncompleteSection:
    def test_first_by_order(self):
        sections = outline(3, orders=[3, 1, 2])
        assert next_incomplete_section(snapshot(sections)).section_id == "s2"

    def test_skips_completed(self):
        sections = outline(3)
        assert next_incomplete_section(snapshot(sections, row("s1", True))).section_id == "s2"

    def test_started_but_incomplete_is_next(self):
        sections = outline(3)
        assert next_incomplete_section(snapshot(sections, row("s1"))).section_id == "s1"

    def test_ties_break_on_sequence(self):
        sections = (Section("b", 1, 1), Section("a", 1, 0))
        assert next_incomplete_section(snapshot(sections)).section_id == "a"

    def test_none_when_done(self):
        sections = outline(1)
        assert next_incomplete_section(snapshot(sections, row("s1", True))) is None


class TestTransitions:
    async def test_start_section(self, engine, ledger):
        result = await engine.progress.start_section(SUBJECT, COURSE, "s1")
        assert result.status is ReconciliationStatus.CONVERGED
        assert ledger.operations[0].op_type is OperationType.START_SECTION
        assert result.view.value.row("s1").is_started

        view = await engine.progress.view(SUBJECT, COURSE)
        assert view.progress.completed_sections == 0
        assert view.next_section.section_id == "s1"

    async def test_start_twice_is_unchanged(self, engine, ledger):
        await engine.progress.start_section(SUBJECT, COURSE, "s1")
        result = await engine.progress.start_section(SUBJECT, COURSE, "s1")
        assert result.status is ReconciliationStatus.UNCHANGED
        assert ledger.broadcasts == 1

    async def test_start_unknown_section(self, engine, ledger):
        with pytest.raises(UnknownSectionError):
            await engine.progress.start_section(SUBJECT, COURSE, "zz")
        assert ledger.broadcasts == 0

    async def test_complete_requires_start(self, engine, ledger):
        with pytest.raises(SectionNotStartedError):
            await engine.progress.complete_section(SUBJECT, COURSE, "s1")
        assert ledger.broadcasts == 0

    async def test_complete_section(self, engine, ledger, clock):
        await engine.progress.start_section(SUBJECT, COURSE, "s1")
        clock.advance(600)
        result = await engine.progress.complete_section(SUBJECT, COURSE, "s1")

        assert result.status is ReconciliationStatus.CONVERGED
        completed = result.view.value.row("s1")
        assert completed.duration_seconds == 600

        progress = await engine.progress.course_progress(SUBJECT, COURSE)
        assert progress.completed_sections == 1
        assert progress.percentage == 25
        assert (await engine.progress.next_section(SUBJECT, COURSE)).section_id == "s2"

    async def test_recompleting_is_unchanged(self, engine, ledger):
        ledger.seed_progress(SUBJECT, COURSE, started=["s1"], completed=["s1"])
        result = await engine.progress.complete_section(SUBJECT, COURSE, "s1")
        assert result.status is ReconciliationStatus.UNCHANGED
        assert ledger.broadcasts == 0

    async def test_completing_every_section(self, engine):
        for section_id in ("s1", "s2", "s3", "s4"):
            await engine.progress.start_section(SUBJECT, COURSE, section_id)
            await engine.progress.complete_section(SUBJECT, COURSE, section_id)
        view = await engine.progress.view(SUBJECT, COURSE)
        assert view.progress.is_fully_completed
        assert view.progress.percentage == 100
        assert view.next_section is None
        assert view.freshness == "confirmed"

    async def test_optimistic_progress_while_index_lags(self, engine, ledger, index):
        ledger.seed_progress(SUBJECT, COURSE, started=["s1"])
        index.lag = 1
        result = await engine.progress.complete_section(SUBJECT, COURSE, "s1")
        assert result.status is ReconciliationStatus.PENDING_INDEX_LAG

        view = await engine.progress.view(SUBJECT, COURSE)
        assert view.pending_index_lag
        assert view.progress.completed_sections == 1
