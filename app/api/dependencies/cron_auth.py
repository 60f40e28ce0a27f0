"""
Bearer-secret check for the scheduled job endpoints.

The scheduler sends ``Authorization: Bearer <CRON_SECRET>``. The endpoints
answer with a flat ``{"error": ...}`` body, so the check returns the
rejection response instead of raising HTTPException.

Usage:
    @router.post("/expire-reservations")
    async def expire(request: Request, ...):
        rejection = verify_cron_request(request.headers.get("Authorization"))
        if rejection is not None:
            return rejection
"""
import hmac

from fastapi.responses import JSONResponse

from app.core.config import settings
from app.core.logging import get_logger

logger = get_logger(__name__)


def verify_cron_request(authorization: str | None) -> JSONResponse | None:
    """
    None when the request carries the configured secret.

    - CRON_SECRET not configured: 500
    - header missing or wrong: 401
    """
    secret = settings.CRON_SECRET
    if not secret:
        logger.error("Cron request refused: CRON_SECRET is not configured")
        return JSONResponse(status_code=500, content={"error": "CRON_SECRET is not configured"})

    expected = f"Bearer {secret}"
    # constant-time compare
    if not authorization or not hmac.compare_digest(authorization.encode(), expected.encode()):
        logger.warning("Cron request with a missing or wrong bearer secret")
        return JSONResponse(status_code=401, content={"error": "Unauthorized"})

    return None
