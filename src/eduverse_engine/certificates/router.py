"""Certificate API router."""

from fastapi import APIRouter, Depends, Query

from eduverse_engine.certificates.eligibility import CertificateEligibilityEngine
from eduverse_engine.certificates.schemas import (
    AddToCredentialRequest,
    CredentialChangeResponse,
    CredentialResponse,
    EligibilityResponse,
)
from eduverse_engine.common.security import require_api_key
from eduverse_engine.deps import get_certificate_engine
from eduverse_engine.reconciliation.schemas import ReconciliationSummary

router = APIRouter(prefix="/certificate")


@router.get("/eligibility", response_model=EligibilityResponse)
async def eligibility(
    subject_id: str = Query(..., min_length=1),
    resource_id: str = Query(..., min_length=1),
    engine: CertificateEligibilityEngine = Depends(get_certificate_engine),
):
    result = await engine.check(subject_id, resource_id)
    return EligibilityResponse(
        subject_id=subject_id,
        resource_id=result.resource_id,
        eligible=result.eligible,
        reason=result.reason,
        is_first_certificate=result.is_first_certificate,
        price=result.price,
    )


@router.post("/add", response_model=CredentialChangeResponse)
async def add_to_credential(
    body: AddToCredentialRequest,
    engine: CertificateEligibilityEngine = Depends(get_certificate_engine),
    _=Depends(require_api_key),
):
    change = await engine.add_multiple(body.subject_id, body.resource_ids)
    cred = change.credential
    return CredentialChangeResponse(
        reconciliation=ReconciliationSummary.of(change.reconciliation),
        resource_ids=list(change.resource_ids),
        price=change.price,
        minted=change.minted,
        credential=CredentialResponse(
            holder_id=cred.holder_id,
            completed_resource_ids=sorted(cred.completed_resource_ids),
            total_courses_completed=cred.total_courses_completed,
            issued_at=cred.issued_at,
            last_updated_at=cred.last_updated_at,
        ) if cred else None,
    )
