"""Ledger operation types, handles and confirmation outcomes."""

import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional


class OperationType(str, Enum):
    PURCHASE_LICENSE = "PURCHASE_LICENSE"
    RENEW_LICENSE = "RENEW_LICENSE"
    START_SECTION = "START_SECTION"
    COMPLETE_SECTION = "COMPLETE_SECTION"
    ADD_TO_CREDENTIAL = "ADD_TO_CREDENTIAL"


class ViewKind(str, Enum):
    """Kinds of state readable from the ledger and the index."""

    LICENSE = "license"
    PROGRESS = "progress"
    CREDENTIAL = "credential"


def idempotency_key_for(
    op_type: OperationType,
    subject_id: str,
    resource_id: str,
    params: dict[str, Any],
) -> str:
    """SHA-256 over the canonical JSON of an operation's identity."""
    canonical = json.dumps(
        {
            "op": op_type.value,
            "subject": subject_id,
            "resource": resource_id,
            "params": params,
        },
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    return hashlib.sha256(canonical.encode()).hexdigest()


@dataclass(frozen=True)
class LedgerOperation:
    op_type: OperationType
    subject_id: str
    resource_id: str
    params: dict[str, Any] = field(default_factory=dict, hash=False, compare=False)
    idempotency_key: str = ""

    @classmethod
    def build(
        cls,
        op_type: OperationType,
        subject_id: str,
        resource_id: str,
        idempotency_key: Optional[str] = None,
        **params: Any,
    ) -> "LedgerOperation":
        key = idempotency_key or idempotency_key_for(op_type, subject_id, resource_id, params)
        return cls(op_type, subject_id, resource_id, params, key)

    def to_payload(self) -> dict[str, Any]:
        return {
            "op_type": self.op_type.value,
            "subject_id": self.subject_id,
            "resource_id": self.resource_id,
            "params": self.params,
            "idempotency_key": self.idempotency_key,
        }


@dataclass(frozen=True)
class OperationHandle:
    """Returned once the ledger accepted an operation for broadcast."""

    operation_id: str
    operation: LedgerOperation
    submitted_at: datetime

    @property
    def idempotency_key(self) -> str:
        return self.operation.idempotency_key


class ConfirmationStatus(str, Enum):
    CONFIRMED = "confirmed"
    TIMED_OUT = "timed_out"
    REJECTED = "rejected"


@dataclass(frozen=True)
class Confirmation:
    status: ConfirmationStatus
    handle: OperationHandle
    version_marker: Optional[int] = None
    reason: Optional[str] = None

    @property
    def confirmed(self) -> bool:
        return self.status is ConfirmationStatus.CONFIRMED


@dataclass(frozen=True)
class Receipt:
    """What a transport reports about a broadcast operation."""

    status: str  # pending | confirmed | rejected
    version_marker: Optional[int] = None
    reason: Optional[str] = None


@dataclass(frozen=True)
class LedgerView:
    """Raw, strongly consistent ledger state for one subject+resource."""

    kind: ViewKind
    data: Optional[dict[str, Any]]
    version_marker: Optional[int] = None
