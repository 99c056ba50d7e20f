"""Progress domain model."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional


@dataclass(frozen=True)
class Section:
    """One section of a course outline.

    ``order`` is the display order (may tie); ``sequence`` is the
    section's stable creation index and breaks ties.
    """

    section_id: str
    order: int
    sequence: int
    title: str = ""

    @property
    def sort_key(self) -> tuple[int, int]:
        return (self.order, self.sequence)


@dataclass(frozen=True)
class SectionProgress:
    subject_id: str
    resource_id: str
    section_id: str
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    view_count: int = 0

    def __post_init__(self) -> None:
        if self.completed_at is not None:
            if self.started_at is None:
                raise ValueError("completed_at requires started_at")
            if self.completed_at < self.started_at:
                raise ValueError("completed_at precedes started_at")

    @property
    def is_started(self) -> bool:
        return self.started_at is not None

    @property
    def is_completed(self) -> bool:
        return self.completed_at is not None

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.started_at is None or self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()


@dataclass(frozen=True)
class ProgressSnapshot:
    """Course outline plus the subject's progress rows, keyed by section id."""

    subject_id: str
    resource_id: str
    sections: tuple[Section, ...] = ()
    rows: dict[str, SectionProgress] = field(default_factory=dict)

    def row(self, section_id: str) -> Optional[SectionProgress]:
        return self.rows.get(section_id)

    def has_section(self, section_id: str) -> bool:
        return any(s.section_id == section_id for s in self.sections)

    def with_row(self, row: SectionProgress) -> "ProgressSnapshot":
        rows = dict(self.rows)
        rows[row.section_id] = row
        return ProgressSnapshot(self.subject_id, self.resource_id, self.sections, rows)


@dataclass(frozen=True)
class CourseProgress:
    total_sections: int
    completed_sections: int
    percentage: int
    is_fully_completed: bool
    last_activity_at: Optional[datetime] = None
