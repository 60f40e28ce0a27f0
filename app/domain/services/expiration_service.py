"""
Expiration Sweeper

Periodic job (Celery beat and the cron endpoint) that expires pending
reservations past their hold and hands the puppies back to the storefront.
Both statements are set-based and run in one transaction; running the sweep
twice in a row is harmless.
"""
from datetime import timedelta

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.logging import get_logger, log_async_operation
from app.db.database import utcnow
from app.db.models.puppy import Puppy, PuppyStatus
from app.db.models.reservation import (
    ACTIVE_RESERVATION_STATUSES,
    Reservation,
    ReservationStatus,
)

logger = get_logger(__name__)

_ORPHAN_REPORT_LIMIT = 50


def _active_reservation_exists():
    return (
        select(Reservation.id)
        .where(
            Reservation.puppy_id == Puppy.id,
            Reservation.status.in_(ACTIVE_RESERVATION_STATUSES),
        )
        .exists()
    )


@log_async_operation("expire_pending_reservations")
async def expire_pending_reservations(db: AsyncSession) -> int:
    """
    Expire every pending reservation whose expires_at has passed.

    Puppies held by the expired rows return to available, but only when they
    are still reserved and no other pending/confirmed reservation holds them.

    Returns:
        Number of reservations expired; 0 is the normal case.
    """
    now = utcnow()
    overdue = (
        Reservation.status == ReservationStatus.PENDING,
        Reservation.expires_at.is_not(None),
        Reservation.expires_at <= now,
    )
    try:
        # Lock the overdue rows so a concurrent confirm waits for us
        locked = await db.execute(
            select(Reservation.puppy_id).where(*overdue).with_for_update()
        )
        puppy_ids = set(locked.scalars().all())

        expired = 0
        released = 0
        if puppy_ids:
            result = await db.execute(
                update(Reservation)
                .where(*overdue)
                .values(status=ReservationStatus.EXPIRED, updated_at=now)
                .execution_options(synchronize_session="fetch")
            )
            expired = result.rowcount or 0

            released_result = await db.execute(
                update(Puppy)
                .where(
                    Puppy.id.in_(puppy_ids),
                    Puppy.status == PuppyStatus.RESERVED,
                    ~_active_reservation_exists(),
                )
                .values(status=PuppyStatus.AVAILABLE, updated_at=now)
                .execution_options(synchronize_session="fetch")
            )
            released = released_result.rowcount or 0

        await db.commit()
    except Exception:
        await db.rollback()
        raise

    if expired:
        logger.info(
            "Expired pending reservations",
            extra_data={"expired": expired, "puppies_released": released},
        )

    await _report_orphaned_puppies(db)
    return expired


async def _report_orphaned_puppies(db: AsyncSession) -> None:
    """
    Reserved puppies with no active reservation. Someone reserved them by
    hand or a past release failed; an operator has to decide, so only log.
    """
    result = await db.execute(
        select(Puppy.id)
        .where(Puppy.status == PuppyStatus.RESERVED, ~_active_reservation_exists())
        .limit(_ORPHAN_REPORT_LIMIT)
    )
    orphan_ids = list(result.scalars().all())
    if orphan_ids:
        logger.warning(
            "Reserved puppies without an active reservation",
            extra_data={"count": len(orphan_ids), "puppy_ids": orphan_ids},
        )


@log_async_operation("archive_sold_puppies")
async def archive_sold_puppies(db: AsyncSession, days: int | None = None) -> int:
    """Archive sold puppies whose sale is at least ``days`` old"""
    if days is None:
        days = settings.ARCHIVE_SOLD_AFTER_DAYS
    cutoff = utcnow() - timedelta(days=days)
    try:
        result = await db.execute(
            update(Puppy)
            .where(
                Puppy.status == PuppyStatus.SOLD,
                Puppy.is_archived.is_(False),
                Puppy.sold_at.is_not(None),
                Puppy.sold_at <= cutoff,
            )
            .values(is_archived=True, updated_at=utcnow())
            .execution_options(synchronize_session="fetch")
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    archived = result.rowcount or 0
    if archived:
        logger.info("Archived sold puppies", extra_data={"archived": archived, "days": days})
    return archived
