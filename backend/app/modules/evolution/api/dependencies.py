"""
Shared API dependencies for the Evolution module.

Authentication happens upstream; the tenant arrives in the X-User-ID header.
"""
import logging
from typing import Optional

import httpx
from fastapi import Header, HTTPException

from app.shared.core.logging import set_tenant_id
from app.shared.utils.exceptions import (
    EntityNotFoundError,
    ProviderHTTPError,
    RateLimitExceededError,
    ValidationError,
)

logger = logging.getLogger("evolution_api")


def get_current_user_id(x_user_id: Optional[str] = Header(default=None)) -> str:
    """Tenant id of the caller; 401 when missing."""
    user_id = (x_user_id or "").strip()
    if not user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-ID header")
    set_tenant_id(user_id)
    return user_id


def to_http_exception(error: Exception) -> HTTPException:
    """Map a domain exception to the HTTP answer the client sees."""
    if isinstance(error, EntityNotFoundError):
        return HTTPException(status_code=404, detail=error.message)
    if isinstance(error, RateLimitExceededError):
        return HTTPException(status_code=429, detail=error.message)
    if isinstance(error, ValidationError):
        return HTTPException(status_code=400, detail=error.message)
    if isinstance(error, ProviderHTTPError):
        logger.error(f"❌ Provider error on {error.path}: {error}")
        return HTTPException(status_code=502, detail=error.message)
    if isinstance(error, httpx.HTTPError):
        logger.error(f"❌ Provider unreachable: {error}")
        return HTTPException(status_code=502, detail="WhatsApp provider unreachable")
    logger.error(f"❌ Unexpected error: {str(error)}", exc_info=True)
    return HTTPException(status_code=500, detail="Internal server error")
