"""Signed content URL router."""

from datetime import datetime

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from eduverse_engine.access.signed_urls import format_time_until_expiry
from eduverse_engine.deps import get_engine
from eduverse_engine.engine import EduverseEngine

router = APIRouter(prefix="/access")


class SignedUrlResponse(BaseModel):
    content_id: str
    signed_url: str
    expires_at: datetime
    seconds_remaining: float
    expires_in: str


@router.get("/signed-url", response_model=SignedUrlResponse)
async def signed_url(
    content_id: str = Query(..., min_length=1),
    engine: EduverseEngine = Depends(get_engine),
):
    manager = engine.signed_urls
    token = await manager.get_token(content_id)
    remaining = token.seconds_remaining(manager.clock.now())
    return SignedUrlResponse(
        content_id=content_id,
        signed_url=token.token,
        expires_at=token.expires_at,
        seconds_remaining=remaining,
        expires_in=format_time_until_expiry(remaining),
    )
