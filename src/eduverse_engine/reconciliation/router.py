"""Reconciliation router: re-attempt confirmation of unconfirmed writes."""

from fastapi import APIRouter, Depends, HTTPException

from eduverse_engine.common.security import require_api_key
from eduverse_engine.deps import get_engine
from eduverse_engine.engine import EduverseEngine
from eduverse_engine.ledger.operations import ViewKind
from eduverse_engine.reconciliation.schemas import (
    ReconcileRequest,
    ReconcileResponse,
    ReconciliationSummary,
)
from eduverse_engine.reconciliation.views import ViewKey

router = APIRouter()


@router.post("/reconcile", response_model=ReconcileResponse)
async def reconcile(
    body: ReconcileRequest,
    engine: EduverseEngine = Depends(get_engine),
    _=Depends(require_api_key),
):
    key = None
    if body.subject_id or body.resource_id or body.kind:
        if not (body.subject_id and body.resource_id and body.kind):
            raise HTTPException(
                status_code=422,
                detail="subject_id, resource_id and kind must be given together",
            )
        try:
            kind = ViewKind(body.kind)
        except ValueError:
            raise HTTPException(status_code=422, detail=f"Unknown kind: {body.kind}")
        key = ViewKey(body.subject_id, body.resource_id, kind)

    results = await engine.coordinator.reconcile(key)
    return ReconcileResponse(
        results=[ReconciliationSummary.of(r) for r in results],
        pending=len(engine.coordinator.pending_patches(key)),
    )
