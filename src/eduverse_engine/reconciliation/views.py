"""Three-state value wrapper for views that may be optimistic or degraded."""

from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Generic, Optional, TypeVar

from eduverse_engine.ledger.operations import ViewKind

T = TypeVar("T")


class Freshness(str, Enum):
    OPTIMISTIC = "optimistic"
    CONFIRMED = "confirmed"
    STALE_DEGRADED = "stale_degraded"


@dataclass(frozen=True)
class ViewKey:
    subject_id: str
    resource_id: str
    kind: ViewKind

    @property
    def lock_key(self) -> tuple[str, str]:
        """Mutations for the same subject+resource share one timeline."""
        return (self.subject_id, self.resource_id)

    def affects(self, subject_id: str, resource_id: str) -> bool:
        return self.subject_id == subject_id and self.resource_id == resource_id


@dataclass(frozen=True)
class Tracked(Generic[T]):
    """A view value together with how much it can be trusted.

    ``OPTIMISTIC`` values were applied locally ahead of the ledger; the
    flags say why they are still shown. ``unconfirmed`` means the ledger
    did not confirm within budget. ``pending_index_lag`` means the ledger
    confirmed (at ``version_marker``) but the index has not caught up yet.
    """

    value: T
    freshness: Freshness
    version_marker: Optional[int] = None
    unconfirmed: bool = False
    pending_index_lag: bool = False
    patch_id: Optional[str] = None

    @classmethod
    def optimistic(cls, value: T, patch_id: str) -> "Tracked[T]":
        return cls(value, Freshness.OPTIMISTIC, patch_id=patch_id)

    @classmethod
    def confirmed(cls, value: T, version_marker: Optional[int]) -> "Tracked[T]":
        return cls(value, Freshness.CONFIRMED, version_marker=version_marker)

    @classmethod
    def degraded(cls, value: T, version_marker: Optional[int]) -> "Tracked[T]":
        return cls(value, Freshness.STALE_DEGRADED, version_marker=version_marker)

    @property
    def is_optimistic(self) -> bool:
        return self.freshness is Freshness.OPTIMISTIC

    @property
    def is_confirmed(self) -> bool:
        return self.freshness is Freshness.CONFIRMED

    @property
    def is_degraded(self) -> bool:
        return self.freshness is Freshness.STALE_DEGRADED

    def evolve(self, **changes: Any) -> "Tracked[T]":
        return replace(self, **changes)
