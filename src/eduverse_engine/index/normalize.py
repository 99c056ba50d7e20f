"""Normalise raw index/ledger entities into the domain model.

Both the index and the ledger relay return entities in the same
subgraph-like shape: camelCase fields, ids as strings and unix-second
timestamps as strings or ints.
"""

from datetime import datetime, timezone
from typing import Any, Optional

from eduverse_engine.certificates.models import Credential
from eduverse_engine.ledger.operations import ViewKind
from eduverse_engine.licensing.models import License
from eduverse_engine.progress.models import ProgressSnapshot, Section, SectionProgress


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Unix seconds (str or int) to an aware datetime; 0 and empty mean unset."""
    if value in (None, "", 0, "0"):
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def license_from_raw(raw: Optional[dict[str, Any]], subject_id: str, resource_id: str) -> Optional[License]:
    if not raw:
        return None
    expires_at = parse_timestamp(raw.get("expiryTimestamp"))
    if expires_at is None:
        # the ledger returns an empty struct for licenses that never existed
        return None
    granted_at = parse_timestamp(raw.get("mintedAt")) or expires_at
    return License(
        subject_id=raw.get("student", subject_id),
        resource_id=str(raw.get("courseId", resource_id)),
        granted_at=granted_at,
        duration_units=int(raw.get("durationLicense", 0)),
        expires_at=expires_at,
        is_active=bool(raw.get("isActive", False)),
        total_paid=int(raw.get("totalPaid", 0)),
        renewal_count=int(raw.get("renewalCount", 0)),
        last_renewed_at=parse_timestamp(raw.get("lastRenewedAt")),
    )


def progress_from_raw(raw: Optional[dict[str, Any]], subject_id: str, resource_id: str) -> ProgressSnapshot:
    if not raw:
        return ProgressSnapshot(subject_id, resource_id)
    course = raw.get("course") or {}
    sections = tuple(
        Section(
            section_id=str(s["id"]),
            order=int(s.get("orderId", i)),
            sequence=int(s.get("sequence", i)),
            title=s.get("title", ""),
        )
        for i, s in enumerate(course.get("sections") or [])
    )
    rows = {}
    for r in raw.get("sectionProgresses") or []:
        row = SectionProgress(
            subject_id=subject_id,
            resource_id=resource_id,
            section_id=str(r["sectionId"]),
            started_at=parse_timestamp(r.get("startedAt")),
            completed_at=parse_timestamp(r.get("completedAt")),
            view_count=int(r.get("viewCount", 0)),
        )
        if row.is_started:
            rows[row.section_id] = row
    return ProgressSnapshot(subject_id, resource_id, sections, rows)


def credential_from_raw(raw: Optional[dict[str, Any]], subject_id: str, resource_id: str) -> Optional[Credential]:
    if not raw:
        return None
    return Credential(
        holder_id=raw.get("recipientAddress", subject_id),
        completed_resource_ids=frozenset(str(c["courseId"]) for c in raw.get("courses") or []),
        issued_at=parse_timestamp(raw.get("issuedAt")),
        last_updated_at=parse_timestamp(raw.get("lastUpdated")),
    )


_ENTITY_FIELD = {
    ViewKind.LICENSE: "license",
    ViewKind.CREDENTIAL: "certificate",
}


def normalize(kind: ViewKind, data: Optional[dict[str, Any]], subject_id: str, resource_id: str) -> Any:
    """Turn the ``data`` block of a response into the domain value for ``kind``."""
    data = data or {}
    if kind is ViewKind.LICENSE:
        return license_from_raw(data.get(_ENTITY_FIELD[kind]), subject_id, resource_id)
    if kind is ViewKind.CREDENTIAL:
        return credential_from_raw(data.get(_ENTITY_FIELD[kind]), subject_id, resource_id)
    return progress_from_raw(data, subject_id, resource_id)


def empty_value(kind: ViewKind, subject_id: str, resource_id: str) -> Any:
    return normalize(kind, None, subject_id, resource_id)
