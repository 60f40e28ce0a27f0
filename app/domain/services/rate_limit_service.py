"""
Inquiry Rate Limiter

Two sliding windows over the inquiries table: one keyed by email, one by
client IP. Counting errors propagate; a broken store is a fault, not a
"yes".
"""
from dataclasses import dataclass
from datetime import timedelta
from typing import Literal

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.logging import get_logger, mask_email
from app.db.database import utcnow
from app.db.models.inquiry import Inquiry

logger = get_logger(__name__)

EMAIL_LIMIT_MESSAGE = "You’ve already sent a few inquiries. We’ll be in touch shortly."
IP_LIMIT_MESSAGE = (
    "Looks like several inquiries came from this connection. "
    "Please wait before submitting again."
)

RateLimitReason = Literal["email", "ip"]


@dataclass(frozen=True)
class RateLimitResult:
    ok: bool
    reason: RateLimitReason | None = None
    message: str | None = None


async def _count_since(db: AsyncSession, column, value: str, since) -> int:
    result = await db.execute(
        select(func.count(Inquiry.id)).where(column == value, Inquiry.created_at >= since)
    )
    return result.scalar_one()


async def check_inquiry_rate_limit(
    db: AsyncSession,
    email: str | None,
    client_ip: str | None,
) -> RateLimitResult:
    """
    Decide whether another inquiry may be accepted.

    Email is checked first; when both limits are exceeded only the email
    reason is reported. The IP check is skipped when no IP is known.
    """
    since = utcnow() - timedelta(minutes=settings.INQUIRY_RATE_LIMIT_WINDOW_MINUTES)

    normalized_email = (email or "").strip().lower()
    if normalized_email:
        email_count = await _count_since(db, Inquiry.email, normalized_email, since)
        if email_count >= settings.INQUIRY_EMAIL_LIMIT:
            logger.info(
                "Inquiry rejected by email limit",
                extra_data={"email": mask_email(normalized_email), "count": email_count},
            )
            return RateLimitResult(ok=False, reason="email", message=EMAIL_LIMIT_MESSAGE)

    if client_ip:
        ip_count = await _count_since(db, Inquiry.client_ip, client_ip, since)
        if ip_count >= settings.INQUIRY_IP_LIMIT:
            logger.info(
                "Inquiry rejected by IP limit",
                extra_data={"client_ip": client_ip, "count": ip_count},
            )
            return RateLimitResult(ok=False, reason="ip", message=IP_LIMIT_MESSAGE)

    return RateLimitResult(ok=True)
