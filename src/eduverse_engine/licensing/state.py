"""License state machine: status derivation, purchase and renewal."""

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Optional

from eduverse_engine.common.config import EduverseSettings
from eduverse_engine.common.exceptions import LicenseAlreadyActiveError, LicenseNotFoundError
from eduverse_engine.common.scheduling import Clock
from eduverse_engine.ledger.operations import LedgerOperation, OperationType, ViewKind
from eduverse_engine.licensing.models import License, LicensePrice, LicenseStatus, LicenseStatusView
from eduverse_engine.licensing.pricing import (
    calculate_license_price,
    extended_expiry,
    recommended_renewal_duration,
)
from eduverse_engine.reconciliation.coordinator import (
    Listener,
    Mutation,
    Reconciliation,
    ReconciliationCoordinator,
)
from eduverse_engine.reconciliation.views import Tracked, ViewKey

logger = logging.getLogger(__name__)


def compute_license_status(
    license: Optional[License],
    now: datetime,
    renewal_window: timedelta = timedelta(days=7),
) -> LicenseStatus:
    """NONE without a row; EXPIRED once past expiry or deactivated."""
    if license is None:
        return LicenseStatus.NONE
    if not license.is_active or now >= license.expires_at:
        return LicenseStatus.EXPIRED
    if license.expires_at - now <= renewal_window:
        return LicenseStatus.EXPIRING_SOON
    return LicenseStatus.ACTIVE


@dataclass(frozen=True)
class LicenseChange:
    """Outcome of a purchase or renewal."""

    price: LicensePrice
    reconciliation: Reconciliation
    view: LicenseStatusView


class LicenseStateMachine:
    def __init__(
        self,
        settings: EduverseSettings,
        coordinator: ReconciliationCoordinator,
        clock: Optional[Clock] = None,
    ):
        self.settings = settings
        self.coordinator = coordinator
        self.clock = clock or Clock()
        self.renewal_window = timedelta(days=settings.renewal_window_days)

    def _key(self, subject_id: str, resource_id: str) -> ViewKey:
        return ViewKey(subject_id, resource_id, ViewKind.LICENSE)

    def status_of(self, license: Optional[License], now: Optional[datetime] = None) -> LicenseStatus:
        return compute_license_status(license, now or self.clock.now(), self.renewal_window)

    def _view(self, subject_id: str, resource_id: str, tracked: Tracked) -> LicenseStatusView:
        now = self.clock.now()
        return LicenseStatusView(
            subject_id=subject_id,
            resource_id=resource_id,
            status=self.status_of(tracked.value, now),
            license=tracked.value,
            checked_at=now,
            freshness=tracked.freshness.value,
            degraded=tracked.is_degraded,
            unconfirmed=tracked.unconfirmed,
            pending_index_lag=tracked.pending_index_lag,
        )

    # ── Reads ──

    async def status(self, subject_id: str, resource_id: str) -> LicenseStatusView:
        tracked = await self.coordinator.read(self._key(subject_id, resource_id))
        return self._view(subject_id, resource_id, tracked)

    async def has_access(self, subject_id: str, resource_id: str) -> bool:
        """Can ``subject_id`` watch ``resource_id`` right now."""
        return (await self.status(subject_id, resource_id)).is_valid

    async def recommended_duration(self, subject_id: str, resource_id: str) -> int:
        view = await self.status(subject_id, resource_id)
        return recommended_renewal_duration(
            view.license, view.checked_at,
            self.settings.min_duration_units, self.settings.max_duration_units,
        )

    def quote(self, resource_id: str, duration_units: int) -> LicensePrice:
        return calculate_license_price(
            resource_id,
            self.settings.price_per_unit(resource_id),
            duration_units,
            fee_bps=self.settings.platform_fee_bps,
            min_units=self.settings.min_duration_units,
            max_units=self.settings.max_duration_units,
        )

    # ── Transitions ──

    async def purchase(
        self,
        subject_id: str,
        resource_id: str,
        duration_units: int,
        on_update: Optional[Listener] = None,
    ) -> LicenseChange:
        price = self.quote(resource_id, duration_units)

        def plan(current: Optional[License]) -> Mutation:
            now = self.clock.now()
            status = self.status_of(current, now)
            if status.grants_access:
                raise LicenseAlreadyActiveError(
                    f"License for {resource_id} is already {status.value}"
                )
            granted = License(
                subject_id=subject_id,
                resource_id=resource_id,
                granted_at=now,
                duration_units=duration_units,
                expires_at=now + timedelta(days=self.settings.license_unit_days * duration_units),
                is_active=True,
                total_paid=price.total_price,
            )
            operation = LedgerOperation.build(
                OperationType.PURCHASE_LICENSE, subject_id, resource_id,
                duration_units=duration_units,
                price=price.total_price,
                previous_expiry=int(current.expires_at.timestamp()) if current else None,
            )
            return Mutation(operation, granted)

        result = await self.coordinator.perform(
            self._key(subject_id, resource_id), plan, on_update=on_update,
        )
        logger.info("License purchase %s for %s/%s (%d units)",
                    result.status.value, subject_id, resource_id, duration_units)
        return LicenseChange(price, result, self._view(subject_id, resource_id, result.view))

    async def renew(
        self,
        subject_id: str,
        resource_id: str,
        duration_units: int,
        on_update: Optional[Listener] = None,
    ) -> LicenseChange:
        price = self.quote(resource_id, duration_units)

        def plan(current: Optional[License]) -> Mutation:
            if current is None:
                raise LicenseNotFoundError(f"No license for {resource_id} to renew")
            now = self.clock.now()
            renewed = replace(
                current,
                duration_units=duration_units,
                expires_at=extended_expiry(
                    current.expires_at, now, duration_units, self.settings.license_unit_days,
                ),
                is_active=True,
                total_paid=current.total_paid + price.total_price,
                renewal_count=current.renewal_count + 1,
                last_renewed_at=now,
            )
            operation = LedgerOperation.build(
                OperationType.RENEW_LICENSE, subject_id, resource_id,
                duration_units=duration_units,
                price=price.total_price,
                from_expiry=int(current.expires_at.timestamp()),
            )
            return Mutation(operation, renewed)

        result = await self.coordinator.perform(
            self._key(subject_id, resource_id), plan, on_update=on_update,
        )
        logger.info("License renewal %s for %s/%s (%d units)",
                    result.status.value, subject_id, resource_id, duration_units)
        return LicenseChange(price, result, self._view(subject_id, resource_id, result.view))
