"""
Health checks - process liveness, dependency readiness and webhook health.

- liveness: the process is up (no dependency checks)
- readiness: database and Redis respond
- webhooks: per-provider error rate over the recent ledger window
"""
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import case, func, select, text
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.logging import get_logger
from app.core.redis_client import get_redis
from app.db.database import AsyncSessionLocal, utcnow
from app.db.models.reservation import PaymentProvider
from app.db.models.webhook_event import WebhookEvent

logger = get_logger(__name__)

_STATUS_HEALTHY = "healthy"
_STATUS_DEGRADED = "degraded"

_CHECK_OK = "ok"

# No infrastructure details in responses
_ERROR_DB = "error: db_unavailable"
_ERROR_REDIS = "error: redis_unavailable"


async def _check_db() -> str:
    """Cheap query against the database."""
    try:
        async with AsyncSessionLocal() as session:
            await session.execute(text("SELECT 1"))
        return _CHECK_OK
    except Exception as e:
        logger.warning("Database health check failed", extra_data={"error": str(e)})
        return _ERROR_DB


async def _check_redis() -> str:
    """PING Redis."""
    try:
        client = await get_redis()
        await client.ping()
        return _CHECK_OK
    except Exception as e:
        logger.warning("Redis health check failed", extra_data={"error": str(e)})
        return _ERROR_REDIS


async def check_readiness() -> dict[str, Any]:
    """
    Dependency readiness.

    Returns a dict with the overall status ("healthy" / "degraded") and
    "ok" or "error: ..." per dependency.
    """
    checks = {
        "db": await _check_db(),
        "redis": await _check_redis(),
    }

    all_ok = all(v == _CHECK_OK for v in checks.values())
    if not all_ok:
        logger.warning("Readiness check degraded", extra_data=checks)

    return {"status": _STATUS_HEALTHY if all_ok else _STATUS_DEGRADED, **checks}


def _iso(value: datetime | None) -> str | None:
    return f"{value.isoformat()}Z" if value else None


def _provider_health(
    total: int,
    failed: int,
    last_success: datetime | None,
    last_failure: datetime | None,
) -> dict[str, Any]:
    error_rate = failed / total if total else 0.0
    return {
        "healthy": error_rate <= settings.WEBHOOK_HEALTH_MAX_ERROR_RATE,
        "recent_events": total,
        "failed_events": failed,
        "last_success_time": _iso(last_success),
        "last_failure_time": _iso(last_failure),
        "error_rate": round(error_rate, 2),
    }


async def webhook_health_report(db: AsyncSession) -> dict[str, Any]:
    """
    Per-provider webhook health over the last WEBHOOK_HEALTH_WINDOW_MINUTES.

    An event counts as failed when it carries a processing_error. A provider
    with no recent events is healthy; the overall report is healthy when every
    provider is and the combined error rate is within the limit.
    """
    now = utcnow()
    cutoff = now - timedelta(minutes=settings.WEBHOOK_HEALTH_WINDOW_MINUTES)

    is_failed = WebhookEvent.processing_error.is_not(None)
    result = await db.execute(
        select(
            WebhookEvent.provider,
            func.count(WebhookEvent.id),
            func.sum(case((is_failed, 1), else_=0)),
            func.max(case((~is_failed, WebhookEvent.created_at))),
            func.max(case((is_failed, WebhookEvent.created_at))),
            func.max(WebhookEvent.created_at),
        )
        .where(WebhookEvent.created_at >= cutoff)
        .group_by(WebhookEvent.provider)
    )
    rows = {row[0]: row[1:] for row in result.all()}

    checks: dict[str, dict[str, Any]] = {}
    recent_total = 0
    failed_total = 0
    last_event: datetime | None = None
    for provider in PaymentProvider:
        total, failed, last_success, last_failure, newest = rows.get(
            provider.value, (0, 0, None, None, None)
        )
        failed = int(failed or 0)
        checks[provider.value] = _provider_health(total, failed, last_success, last_failure)
        recent_total += total
        failed_total += failed
        if newest and (last_event is None or newest > last_event):
            last_event = newest

    overall_rate = failed_total / recent_total if recent_total else 0.0
    healthy = (
        all(check["healthy"] for check in checks.values())
        and overall_rate <= settings.WEBHOOK_HEALTH_MAX_ERROR_RATE
    )

    if not healthy:
        logger.warning(
            "Webhook health degraded",
            extra_data={"recent_events": recent_total, "failed_events": failed_total},
        )

    return {
        "healthy": healthy,
        "timestamp": _iso(now),
        "window_minutes": settings.WEBHOOK_HEALTH_WINDOW_MINUTES,
        "checks": checks,
        "summary": {
            "recent_events": recent_total,
            "failed_events": failed_total,
            "last_event_time": _iso(last_event),
        },
    }
