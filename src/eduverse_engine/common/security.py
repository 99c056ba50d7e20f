"""API key authentication dependency."""

from fastapi import Header, HTTPException


async def require_api_key(
    x_eduverse_api_key: str = Header(..., alias="X-Eduverse-Api-Key"),
) -> str:
    """FastAPI dependency that validates the API key for mutating endpoints."""
    from eduverse_engine.common.config import get_settings

    settings = get_settings()
    if x_eduverse_api_key != settings.api_key:
        raise HTTPException(status_code=403, detail="Invalid API key")
    return x_eduverse_api_key
