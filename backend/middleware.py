from fastapi import Request, HTTPException, status
from typing import Optional
import hmac
import logging

from quota_settings import get_admin_api_key

logger = logging.getLogger(__name__)

ADMIN_KEY_HEADER = "X-Admin-Key"


def _get_admin_key(request: Request) -> Optional[str]:
    """Read the admin key from the X-Admin-Key header."""
    key = request.headers.get(ADMIN_KEY_HEADER)
    return key.strip() if key else None


async def require_admin(request: Request) -> dict:
    """Require a valid admin API key."""
    expected = get_admin_api_key()
    if not expected:
        logger.error("ADMIN_API_KEY is not configured; rejecting admin request")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Admin access is not configured"
        )

    provided = _get_admin_key(request)
    if not provided:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated"
        )

    if not hmac.compare_digest(provided.encode(), expected.encode()):
        logger.warning(f"Invalid admin key on {request.url.path}")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Insufficient permissions"
        )

    return {"role": "admin", "actor_id": "admin_api_key"}


async def admin_route_guard(request: Request) -> dict:
    """Guard for admin routes."""
    admin = await require_admin(request)
    return admin
