"""Pydantic schemas for reconciliation results."""

from typing import Optional

from pydantic import BaseModel

from eduverse_engine.reconciliation.coordinator import Reconciliation


class ReconciliationSummary(BaseModel):
    status: str
    kind: str
    subject_id: str
    resource_id: str
    operation_id: Optional[str] = None
    version_marker: Optional[int] = None
    reason: Optional[str] = None

    @classmethod
    def of(cls, result: Reconciliation) -> "ReconciliationSummary":
        return cls(
            status=result.status.value,
            kind=result.key.kind.value,
            subject_id=result.key.subject_id,
            resource_id=result.key.resource_id,
            operation_id=result.handle.operation_id if result.handle else None,
            version_marker=result.version_marker,
            reason=result.reason,
        )


class ReconcileRequest(BaseModel):
    subject_id: Optional[str] = None
    resource_id: Optional[str] = None
    kind: Optional[str] = None


class ReconcileResponse(BaseModel):
    results: list[ReconciliationSummary]
    pending: int
