"""Shared Pydantic schemas for Eduverse-Engine."""

from typing import Optional

from pydantic import BaseModel


class HealthResponse(BaseModel):
    status: str = "ok"
    version: str = "0.1.0"
    service: str = "eduverse-engine"


class ErrorResponse(BaseModel):
    error: str
    code: str
    detail: str = ""
    reasons: Optional[dict[str, str]] = None


class FreshnessMixin(BaseModel):
    """How far a returned view can be trusted."""

    freshness: str
    degraded: bool = False
    unconfirmed: bool = False
    pending_index_lag: bool = False
