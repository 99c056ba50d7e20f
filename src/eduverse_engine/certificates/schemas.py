"""Pydantic schemas for certificate endpoints."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from eduverse_engine.reconciliation.schemas import ReconciliationSummary


class EligibilityResponse(BaseModel):
    subject_id: str
    resource_id: str
    eligible: bool
    reason: Optional[str] = None
    is_first_certificate: bool
    price: Optional[int] = None


class AddToCredentialRequest(BaseModel):
    subject_id: str = Field(..., min_length=1)
    resource_ids: list[str] = Field(..., min_length=1)


class CredentialResponse(BaseModel):
    holder_id: str
    completed_resource_ids: list[str]
    total_courses_completed: int
    issued_at: Optional[datetime] = None
    last_updated_at: Optional[datetime] = None


class CredentialChangeResponse(BaseModel):
    reconciliation: ReconciliationSummary
    resource_ids: list[str]
    price: int
    minted: bool
    credential: Optional[CredentialResponse] = None
