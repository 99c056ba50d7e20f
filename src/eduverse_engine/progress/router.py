"""Progress API router."""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from eduverse_engine.common.security import require_api_key
from eduverse_engine.deps import get_progress_aggregator
from eduverse_engine.progress.aggregator import ProgressAggregator
from eduverse_engine.progress.models import Section, SectionProgress
from eduverse_engine.progress.schemas import (
    CourseProgressResponse,
    NextSectionResponse,
    SectionChangeResponse,
    SectionProgressResponse,
    SectionRequest,
    SectionResponse,
)
from eduverse_engine.reconciliation.coordinator import Reconciliation
from eduverse_engine.reconciliation.schemas import ReconciliationSummary

router = APIRouter(prefix="/progress")


def _section(section: Optional[Section]) -> Optional[SectionResponse]:
    if section is None:
        return None
    return SectionResponse(
        section_id=section.section_id,
        order=section.order,
        sequence=section.sequence,
        title=section.title,
    )


def _row(row: Optional[SectionProgress]) -> Optional[SectionProgressResponse]:
    if row is None:
        return None
    return SectionProgressResponse(
        section_id=row.section_id,
        started_at=row.started_at,
        completed_at=row.completed_at,
        view_count=row.view_count,
        duration_seconds=row.duration_seconds,
    )


def _change(result: Reconciliation, section_id: str) -> SectionChangeResponse:
    snapshot = result.view.value if result.view is not None else None
    return SectionChangeResponse(
        reconciliation=ReconciliationSummary.of(result),
        section=_row(snapshot.row(section_id)) if snapshot is not None else None,
    )


@router.get("/course", response_model=CourseProgressResponse)
async def course_progress(
    subject_id: str = Query(..., min_length=1),
    resource_id: str = Query(..., min_length=1),
    aggregator: ProgressAggregator = Depends(get_progress_aggregator),
):
    view = await aggregator.view(subject_id, resource_id)
    progress = view.progress
    return CourseProgressResponse(
        subject_id=subject_id,
        resource_id=resource_id,
        total_sections=progress.total_sections,
        completed_sections=progress.completed_sections,
        percentage=progress.percentage,
        is_fully_completed=progress.is_fully_completed,
        last_activity_at=progress.last_activity_at,
        next_section=_section(view.next_section),
        sections=[_row(r) for r in view.snapshot.rows.values()],
        freshness=view.freshness,
        degraded=view.degraded,
        unconfirmed=view.unconfirmed,
        pending_index_lag=view.pending_index_lag,
    )


@router.get("/next", response_model=NextSectionResponse)
async def next_section(
    subject_id: str = Query(..., min_length=1),
    resource_id: str = Query(..., min_length=1),
    aggregator: ProgressAggregator = Depends(get_progress_aggregator),
):
    section = await aggregator.next_section(subject_id, resource_id)
    return NextSectionResponse(subject_id=subject_id, resource_id=resource_id, section=_section(section))


@router.post("/section/start", response_model=SectionChangeResponse)
async def start_section(
    body: SectionRequest,
    aggregator: ProgressAggregator = Depends(get_progress_aggregator),
    _=Depends(require_api_key),
):
    result = await aggregator.start_section(body.subject_id, body.resource_id, body.section_id)
    return _change(result, body.section_id)


@router.post("/section/complete", response_model=SectionChangeResponse)
async def complete_section(
    body: SectionRequest,
    aggregator: ProgressAggregator = Depends(get_progress_aggregator),
    _=Depends(require_api_key),
):
    result = await aggregator.complete_section(body.subject_id, body.resource_id, body.section_id)
    return _change(result, body.section_id)
