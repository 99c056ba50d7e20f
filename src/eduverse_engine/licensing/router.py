"""License API router."""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from eduverse_engine.common.security import require_api_key
from eduverse_engine.deps import get_engine, get_license_machine
from eduverse_engine.engine import EduverseEngine
from eduverse_engine.licensing.models import LicensePrice, LicenseStatusView
from eduverse_engine.licensing.pricing import format_license_expiry, recommended_renewal_duration
from eduverse_engine.licensing.schemas import (
    LicenseChangeResponse,
    LicenseDetail,
    LicenseRequest,
    LicenseStatusResponse,
    PriceResponse,
)
from eduverse_engine.licensing.state import LicenseChange, LicenseStateMachine
from eduverse_engine.reconciliation.schemas import ReconciliationSummary

router = APIRouter(prefix="/license")


def _status_response(view: LicenseStatusView, machine: LicenseStateMachine) -> LicenseStatusResponse:
    lic = view.license
    settings = machine.settings
    return LicenseStatusResponse(
        subject_id=view.subject_id,
        resource_id=view.resource_id,
        status=view.status.value,
        has_license=view.has_license,
        is_valid=view.is_valid,
        is_expired=view.is_expired,
        expires_at=view.expires_at,
        time_remaining=view.time_remaining,
        expires_in=(
            format_license_expiry(lic.expires_at, view.checked_at, "relative") if lic else None
        ),
        recommended_duration=recommended_renewal_duration(
            lic, view.checked_at, settings.min_duration_units, settings.max_duration_units,
        ),
        license=LicenseDetail(
            granted_at=lic.granted_at,
            expires_at=lic.expires_at,
            duration_units=lic.duration_units,
            is_active=lic.is_active,
            total_paid=lic.total_paid,
            renewal_count=lic.renewal_count,
            last_renewed_at=lic.last_renewed_at,
        ) if lic else None,
        freshness=view.freshness,
        degraded=view.degraded,
        unconfirmed=view.unconfirmed,
        pending_index_lag=view.pending_index_lag,
    )


def _price_response(price: LicensePrice) -> PriceResponse:
    return PriceResponse(
        resource_id=price.resource_id,
        duration_units=price.duration_units,
        price_per_unit=price.price_per_unit,
        total_price=price.total_price,
        platform_fee=price.platform_fee,
        creator_revenue=price.creator_revenue,
        total_eth=price.total_eth,
    )


def _change_response(change: LicenseChange, machine: LicenseStateMachine) -> LicenseChangeResponse:
    return LicenseChangeResponse(
        price=_price_response(change.price),
        reconciliation=ReconciliationSummary.of(change.reconciliation),
        license=_status_response(change.view, machine),
    )


@router.get("/status", response_model=LicenseStatusResponse)
async def license_status(
    subject_id: str = Query(..., min_length=1),
    resource_id: str = Query(..., min_length=1),
    machine: LicenseStateMachine = Depends(get_license_machine),
):
    view = await machine.status(subject_id, resource_id)
    return _status_response(view, machine)


@router.get("/price", response_model=PriceResponse)
async def license_price(
    resource_id: str = Query(..., min_length=1),
    duration_units: int = Query(default=1),
    currency: Optional[str] = Query(default=None, description="Also quote the total in this fiat currency"),
    engine: EduverseEngine = Depends(get_engine),
):
    response = _price_response(engine.licenses.quote(resource_id, duration_units))
    if currency:
        quote = await engine.quotes.quote(currency)
        response.currency = quote.currency
        response.fiat_total = quote.convert_wei(response.total_price)
    return response


@router.post("/purchase", response_model=LicenseChangeResponse)
async def purchase_license(
    body: LicenseRequest,
    machine: LicenseStateMachine = Depends(get_license_machine),
    _=Depends(require_api_key),
):
    change = await machine.purchase(body.subject_id, body.resource_id, body.duration_units)
    return _change_response(change, machine)


@router.post("/renew", response_model=LicenseChangeResponse)
async def renew_license(
    body: LicenseRequest,
    machine: LicenseStateMachine = Depends(get_license_machine),
    _=Depends(require_api_key),
):
    change = await machine.renew(body.subject_id, body.resource_id, body.duration_units)
    return _change_response(change, machine)
