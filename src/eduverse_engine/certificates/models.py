"""Credential domain model."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

CREDENTIAL_SCOPE = "*"


@dataclass(frozen=True)
class Credential:
    """Cumulative completion record. ``completed_resource_ids`` only grows."""

    holder_id: str
    completed_resource_ids: frozenset[str] = field(default_factory=frozenset)
    issued_at: Optional[datetime] = None
    last_updated_at: Optional[datetime] = None

    @property
    def total_courses_completed(self) -> int:
        return len(self.completed_resource_ids)

    def contains(self, resource_id: str) -> bool:
        return resource_id in self.completed_resource_ids

    def with_resources(self, resource_ids: list[str], now: datetime) -> "Credential":
        return Credential(
            holder_id=self.holder_id,
            completed_resource_ids=self.completed_resource_ids | frozenset(resource_ids),
            issued_at=self.issued_at or now,
            last_updated_at=now,
        )


@dataclass(frozen=True)
class EligibilityResult:
    resource_id: str
    eligible: bool
    reason: Optional[str] = None
    is_first_certificate: bool = False
    price: Optional[int] = None
