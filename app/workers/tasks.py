"""
Celery Tasks for Periodic Reservation Maintenance

Beat runs the expiration sweeper, the sold puppy archive and the stuck
webhook report. Each task runs its coroutine on a fresh event loop with a
task-scoped database session.
"""
from __future__ import annotations

import asyncio
from contextlib import contextmanager

from app.workers.celery_app import celery_app
from app.db.database import get_task_session
from app.domain.services import expiration_service
from app.domain.services.alert_service import alert_on_failure
from app.domain.services.webhook_ledger import WebhookLedger
from app.core.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

STUCK_EVENTS_REPORT_LIMIT = 50


@contextmanager
def get_event_loop():
    """
    Context manager for proper event loop handling in Celery tasks.
    Creates a new event loop and ensures proper cleanup to prevent resource leaks.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        yield loop
    finally:
        try:
            # The Redis singleton is bound to this loop; drop it before the loop closes
            from app.core.redis_client import close_redis
            loop.run_until_complete(close_redis())
        except Exception as e:
            logger.warning(
                "Failed to close Redis at the end of the task",
                extra_data={"error": str(e)},
            )
        try:
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        finally:
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()


def run_async(coro):
    """Helper to run async code in sync Celery task with proper cleanup"""
    # Set correlation ID for task tracking
    set_correlation_id()

    with get_event_loop() as loop:
        return loop.run_until_complete(coro)


@celery_app.task(name="app.workers.tasks.expire_pending_reservations")
def expire_pending_reservations():
    """Expire overdue pending reservations and release their puppies"""

    async def _expire():
        async with get_task_session() as db:
            expired = await expiration_service.expire_pending_reservations(db)
            return {"expired": expired}

    return run_async(_expire())


@celery_app.task(name="app.workers.tasks.archive_sold_puppies")
def archive_sold_puppies(days: int | None = None):
    """Archive puppies sold more than ``days`` ago"""

    async def _archive():
        async with get_task_session() as db:
            archived = await expiration_service.archive_sold_puppies(db, days=days)
            return {"archived": archived}

    return run_async(_archive())


async def _report_stuck_events(db) -> dict:
    events = await WebhookLedger(db).get_pending_events(limit=STUCK_EVENTS_REPORT_LIMIT)
    if not events:
        return {"stuck": 0, "alerted": False}

    logger.warning(
        "Webhook events left unprocessed",
        extra_data={
            "count": len(events),
            "events": [
                {"provider": e.provider, "event_id": e.event_id, "event_type": e.event_type}
                for e in events[:10]
            ],
        },
    )

    oldest = events[0]
    alerted = await alert_on_failure(
        oldest.provider,
        "stuck_events",
        oldest.event_id,
        f"{len(events)} webhook event(s) unprocessed; oldest received {oldest.created_at.isoformat()}Z"
        + (f": {oldest.processing_error}" if oldest.processing_error else ""),
    )
    return {"stuck": len(events), "alerted": alerted}


@celery_app.task(name="app.workers.tasks.report_stuck_webhook_events")
def report_stuck_webhook_events():
    """
    Alert when ledger rows stay unprocessed.

    A failed claim leaves the row unprocessed with its error; the provider
    retries, but an operator should know before the retries run out.
    """

    async def _report():
        async with get_task_session() as db:
            return await _report_stuck_events(db)

    return run_async(_report())
