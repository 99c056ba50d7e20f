"""Pydantic schemas for progress endpoints."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from eduverse_engine.common.schemas import FreshnessMixin
from eduverse_engine.reconciliation.schemas import ReconciliationSummary


class SectionRequest(BaseModel):
    subject_id: str = Field(..., min_length=1)
    resource_id: str = Field(..., min_length=1)
    section_id: str = Field(..., min_length=1)


class SectionResponse(BaseModel):
    section_id: str
    order: int
    sequence: int
    title: str = ""


class SectionProgressResponse(BaseModel):
    section_id: str
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    view_count: int = 0
    duration_seconds: Optional[float] = None


class CourseProgressResponse(FreshnessMixin):
    subject_id: str
    resource_id: str
    total_sections: int
    completed_sections: int
    percentage: int
    is_fully_completed: bool
    last_activity_at: Optional[datetime] = None
    next_section: Optional[SectionResponse] = None
    sections: list[SectionProgressResponse] = []


class NextSectionResponse(BaseModel):
    subject_id: str
    resource_id: str
    section: Optional[SectionResponse] = None


class SectionChangeResponse(BaseModel):
    reconciliation: ReconciliationSummary
    section: Optional[SectionProgressResponse] = None
