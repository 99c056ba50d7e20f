"""Pydantic schemas for license endpoints."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from eduverse_engine.common.schemas import FreshnessMixin
from eduverse_engine.reconciliation.schemas import ReconciliationSummary


class LicenseRequest(BaseModel):
    subject_id: str = Field(..., min_length=1)
    resource_id: str = Field(..., min_length=1)
    duration_units: int = Field(default=1, description="Months; one unit is 30 days")


class LicenseDetail(BaseModel):
    granted_at: datetime
    expires_at: datetime
    duration_units: int
    is_active: bool
    total_paid: int
    renewal_count: int
    last_renewed_at: Optional[datetime] = None


class LicenseStatusResponse(FreshnessMixin):
    subject_id: str
    resource_id: str
    status: str
    has_license: bool
    is_valid: bool
    is_expired: bool
    expires_at: Optional[datetime] = None
    time_remaining: Optional[float] = None
    expires_in: Optional[str] = None
    recommended_duration: int
    license: Optional[LicenseDetail] = None


class PriceResponse(BaseModel):
    resource_id: str
    duration_units: int
    price_per_unit: int
    total_price: int
    platform_fee: int
    creator_revenue: int
    total_eth: str
    currency: Optional[str] = None
    fiat_total: Optional[float] = None


class LicenseChangeResponse(BaseModel):
    price: PriceResponse
    reconciliation: ReconciliationSummary
    license: LicenseStatusResponse
