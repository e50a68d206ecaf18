"""API key authentication dependency."""

import hmac

from fastapi import Header, HTTPException


async def require_api_key(
    x_custody_api_key: str = Header(..., alias="X-Custody-Api-Key"),
) -> str:
    """FastAPI dependency that validates the service API key from header."""
    from custody_engine.common.config import get_settings

    settings = get_settings()
    if not hmac.compare_digest(x_custody_api_key, settings.api_key):
        raise HTTPException(status_code=403, detail="Invalid API key")
    return x_custody_api_key
