"""
API key authentication for the admin reservation endpoints.

Rejections are AppExceptions, so they render through the app exception
handler with the same ``{"error": {"code", "message", "details"}}`` body as
every other admin error.

Usage:
    @router.get("/reservations")
    async def list_reservations(
        _: None = Depends(require_admin_api_key),
    ):
        ...
"""
import hmac

from fastapi import Depends
from fastapi.security import APIKeyHeader

from app.core.config import settings
from app.core.exceptions import AppException, ErrorCode
from app.core.logging import get_logger

logger = get_logger(__name__)

ADMIN_API_KEY_HEADER = "X-Admin-API-Key"

_api_key_header = APIKeyHeader(name=ADMIN_API_KEY_HEADER, auto_error=False)


def _forbidden(message: str) -> AppException:
    return AppException(message=message, error_code=ErrorCode.FORBIDDEN, status_code=403)


async def require_admin_api_key(
    api_key: str | None = Depends(_api_key_header),
) -> None:
    """
    401 without a key, 403 for a wrong one.

    With no ADMIN_API_KEY configured the admin surface is closed: every
    request gets 403, keyed or not.
    """
    if not settings.ADMIN_API_KEY:
        logger.warning("Admin endpoint refused: ADMIN_API_KEY is not configured")
        raise _forbidden("Admin API is disabled")

    if not api_key:
        raise AppException(
            message=f"Missing {ADMIN_API_KEY_HEADER} header",
            error_code=ErrorCode.UNAUTHORIZED,
            status_code=401,
        )

    if not hmac.compare_digest(api_key.encode(), settings.ADMIN_API_KEY.encode()):
        logger.warning("Admin endpoint refused: wrong API key")
        raise _forbidden("Invalid API key")
