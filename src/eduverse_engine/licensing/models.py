"""License domain model."""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional


class LicenseStatus(str, Enum):
    """Derived from ``(is_active, expires_at, now)``; never stored."""

    NONE = "none"
    ACTIVE = "active"
    EXPIRING_SOON = "expiring_soon"
    EXPIRED = "expired"

    @property
    def grants_access(self) -> bool:
        return self in (LicenseStatus.ACTIVE, LicenseStatus.EXPIRING_SOON)


@dataclass(frozen=True)
class License:
    subject_id: str
    resource_id: str
    granted_at: datetime
    duration_units: int
    expires_at: datetime
    is_active: bool = True
    total_paid: int = 0
    renewal_count: int = 0
    last_renewed_at: Optional[datetime] = None


@dataclass(frozen=True)
class LicensePrice:
    resource_id: str
    price_per_unit: int
    duration_units: int
    total_price: int
    platform_fee: int
    creator_revenue: int

    @property
    def total_eth(self) -> str:
        return f"{self.total_price / 10**18:.6f}"


@dataclass(frozen=True)
class LicenseStatusView:
    """What a caller sees for one subject+resource at one instant."""

    subject_id: str
    resource_id: str
    status: LicenseStatus
    license: Optional[License]
    checked_at: datetime
    freshness: str
    degraded: bool = False
    unconfirmed: bool = False
    pending_index_lag: bool = False

    @property
    def has_license(self) -> bool:
        return self.license is not None

    @property
    def is_valid(self) -> bool:
        return self.status.grants_access

    @property
    def is_expired(self) -> bool:
        return self.status is LicenseStatus.EXPIRED

    @property
    def expires_at(self) -> Optional[datetime]:
        return self.license.expires_at if self.license else None

    @property
    def time_remaining(self) -> Optional[float]:
        """Seconds until expiry, or ``None`` when expired or absent."""
        if self.license is None or self.is_expired:
            return None
        return max(0.0, (self.license.expires_at - self.checked_at).total_seconds())
