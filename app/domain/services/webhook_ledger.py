"""
Webhook Event Ledger

Idempotent bookkeeping for inbound provider events. A redelivered webhook
must never apply its side effect twice, so every event is recorded on
receipt and then walked through processing -> processed | failed.

Marking uses an explicit two-step conditional UPDATE: first by
(provider, event_id), then by idempotency_key alone. Providers disagree on
which identifier stays stable across retries, and the log line records
which one matched.
"""
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from sqlalchemy import select, update, or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import LedgerConsistencyError
from app.core.logging import get_logger
from app.db.database import utcnow
from app.db.models.reservation import Reservation
from app.db.models.webhook_event import WebhookEvent

logger = get_logger(__name__)

# processing_error is TEXT but there is no value in storing stack-sized blobs
_MAX_ERROR_LENGTH = 2000


@dataclass
class IdempotencyCheck:
    """Result of looking an event up before processing it"""
    exists: bool
    event: WebhookEvent | None = None
    reservation_id: str | None = None


class WebhookLedger:
    """Service over the webhook_events table"""

    def __init__(self, db: AsyncSession):
        self.db = db

    @staticmethod
    def build_idempotency_key(
        provider: str,
        event_id: str,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """
        provider:event_id, plus ``:k=v&k2=v2`` with metadata keys sorted so
        the same metadata always yields the same key.
        """
        key = f"{provider}:{event_id}"
        if metadata:
            pairs = "&".join(f"{k}={metadata[k]}" for k in sorted(metadata))
            key = f"{key}:{pairs}"
        return key

    @staticmethod
    def _stale_before():
        return utcnow() - timedelta(minutes=settings.WEBHOOK_PROCESSING_STALE_MINUTES)

    async def get_event(self, provider: str, event_id: str) -> WebhookEvent | None:
        result = await self.db.execute(
            select(WebhookEvent).where(
                WebhookEvent.provider == provider,
                WebhookEvent.event_id == event_id,
            )
        )
        return result.scalar_one_or_none()

    async def record_event(
        self,
        provider: str,
        event_id: str,
        event_type: str,
        payload: dict[str, Any] | None,
        idempotency_key: str | None = None,
    ) -> tuple[WebhookEvent, bool]:
        """
        Insert the ledger row for a just-received event.

        Optimistic insert in a savepoint, committed at once so the row survives
        a failure later in processing. A unique violation on
        (provider, event_id) means a redelivery: the existing row is returned.

        Returns:
            (event, created)
        """
        key = idempotency_key or self.build_idempotency_key(provider, event_id)
        event = WebhookEvent(
            provider=provider,
            event_id=event_id,
            idempotency_key=key,
            event_type=event_type,
            payload=payload,
            processed=False,
            created_at=utcnow(),
        )
        try:
            async with self.db.begin_nested():
                self.db.add(event)
            await self.db.commit()
            logger.info(
                "Webhook event recorded",
                extra_data={"provider": provider, "event_id": event_id, "event_type": event_type},
            )
            return event, True
        except IntegrityError:
            pass  # already recorded

        existing = await self.get_event(provider, event_id)
        if existing is None:
            # the unique violation came from somewhere else; nothing was recorded
            raise LedgerConsistencyError("recorded", provider, event_id, key)

        logger.info(
            "Webhook event already recorded",
            extra_data={
                "provider": provider,
                "event_id": event_id,
                "processed": existing.processed,
            },
        )
        return existing, False

    async def check_event(
        self,
        provider: str,
        event_id: str,
        external_payment_id: str | None = None,
    ) -> IdempotencyCheck:
        """
        Has this event (or its payment) already been handled?

        An event counts as existing when it is processed, or when another
        delivery started processing it less than the stale window ago. A
        reservation already backed by the same provider payment also counts.
        """
        event = await self.get_event(provider, event_id)
        if event is not None:
            if event.processed:
                return IdempotencyCheck(True, event, event.reservation_id)
            if event.processing_started_at and event.processing_started_at > self._stale_before():
                return IdempotencyCheck(True, event, event.reservation_id)

        if external_payment_id:
            result = await self.db.execute(
                select(Reservation.id).where(
                    Reservation.payment_provider == provider,
                    Reservation.external_payment_id == external_payment_id,
                )
            )
            reservation_id = result.scalar_one_or_none()
            if reservation_id:
                return IdempotencyCheck(True, event, reservation_id)

        return IdempotencyCheck(False, event)

    async def _update_dual(
        self,
        provider: str,
        event_id: str,
        idempotency_key: str,
        values: dict[str, Any],
    ) -> str | None:
        """
        Returns the name of the key that matched, or None.

        idempotency_key is shared by every event of one payment, so the
        fallback touches a single row: the newest unprocessed one. Rows that
        already reached processed=True are never rewritten through it.
        """
        result = await self.db.execute(
            update(WebhookEvent)
            .where(WebhookEvent.provider == provider, WebhookEvent.event_id == event_id)
            .values(**values)
        )
        if result.rowcount:
            return "provider_event_id"

        fallback = await self.db.execute(
            select(WebhookEvent.id)
            .where(
                WebhookEvent.provider == provider,
                WebhookEvent.idempotency_key == idempotency_key,
                WebhookEvent.processed.is_(False),
            )
            .order_by(WebhookEvent.created_at.desc(), WebhookEvent.id.desc())
            .limit(1)
        )
        row_id = fallback.scalar_one_or_none()
        if row_id is None:
            return None

        await self.db.execute(
            update(WebhookEvent).where(WebhookEvent.id == row_id).values(**values)
        )
        return "idempotency_key"

    async def mark_processing(
        self,
        provider: str,
        event_id: str,
        idempotency_key: str,
        event_type: str,
        reservation_id: str | None = None,
    ) -> str:
        """
        Stamp processing_started_at.

        Raises:
            LedgerConsistencyError: neither key matched; the event was never
                recorded and must not be processed.
        """
        values: dict[str, Any] = {"processing_started_at": utcnow(), "event_type": event_type}
        if reservation_id:
            values["reservation_id"] = reservation_id

        matched_by = await self._update_dual(provider, event_id, idempotency_key, values)
        if matched_by is None:
            await self.db.rollback()
            logger.critical(
                "Webhook event missing from ledger at mark_processing",
                extra_data={
                    "provider": provider,
                    "event_id": event_id,
                    "idempotency_key": idempotency_key,
                },
            )
            raise LedgerConsistencyError("processing", provider, event_id, idempotency_key)

        await self.db.commit()
        logger.info(
            "Webhook event marked processing",
            extra_data={"provider": provider, "event_id": event_id, "matched_by": matched_by},
        )
        return matched_by

    async def mark_processed(
        self,
        provider: str,
        event_id: str,
        idempotency_key: str,
        reservation_id: str | None = None,
    ) -> str:
        """
        Terminal success: processed=True, processed_at stamped, error cleared.

        Raises:
            LedgerConsistencyError: neither key matched.
        """
        values: dict[str, Any] = {
            "processed": True,
            "processed_at": utcnow(),
            "processing_error": None,
        }
        if reservation_id:
            values["reservation_id"] = reservation_id

        matched_by = await self._update_dual(provider, event_id, idempotency_key, values)
        if matched_by is None:
            await self.db.rollback()
            logger.critical(
                "Webhook event missing from ledger at mark_processed",
                extra_data={
                    "provider": provider,
                    "event_id": event_id,
                    "idempotency_key": idempotency_key,
                },
            )
            raise LedgerConsistencyError("processed", provider, event_id, idempotency_key)

        await self.db.commit()
        logger.info(
            "Webhook event marked processed",
            extra_data={
                "provider": provider,
                "event_id": event_id,
                "matched_by": matched_by,
                "reservation_id": reservation_id,
            },
        )
        return matched_by

    async def mark_failed(
        self,
        provider: str,
        event_id: str,
        idempotency_key: str,
        error: str,
    ) -> bool:
        """
        Terminal failure: processed=False with processing_error recorded.

        processing_started_at is cleared so the provider's retry is processed
        again instead of being taken for an in-flight duplicate.

        Best effort: we are already on an error path, so a missing row or a
        database error is logged and reported as False, never raised.
        """
        values = {
            "processed": False,
            "processing_error": (error or "unknown error")[:_MAX_ERROR_LENGTH],
            "processed_at": utcnow(),
            "processing_started_at": None,
        }
        try:
            matched_by = await self._update_dual(provider, event_id, idempotency_key, values)
            if matched_by is None:
                await self.db.rollback()
                logger.error(
                    "No webhook event found to mark as failed",
                    extra_data={
                        "provider": provider,
                        "event_id": event_id,
                        "idempotency_key": idempotency_key,
                        "error": error,
                    },
                )
                return False
            await self.db.commit()
        except SQLAlchemyError as exc:
            await self.db.rollback()
            logger.error(
                "Could not mark webhook event as failed",
                extra_data={"provider": provider, "event_id": event_id, "error": str(exc)},
                exc_info=True,
            )
            return False

        logger.warning(
            "Webhook event marked failed",
            extra_data={
                "provider": provider,
                "event_id": event_id,
                "matched_by": matched_by,
                "error": error,
            },
        )
        return True

    async def get_pending_events(self, limit: int = 50) -> list[WebhookEvent]:
        """Unprocessed events that nobody is currently working on"""
        result = await self.db.execute(
            select(WebhookEvent)
            .where(
                WebhookEvent.processed.is_(False),
                or_(
                    WebhookEvent.processing_started_at.is_(None),
                    WebhookEvent.processing_started_at <= self._stale_before(),
                ),
            )
            .order_by(WebhookEvent.created_at.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def list_events(
        self,
        provider: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[WebhookEvent]:
        """Most recent ledger rows first"""
        query = select(WebhookEvent)
        if provider:
            query = query.where(WebhookEvent.provider == provider)
        result = await self.db.execute(
            query.order_by(WebhookEvent.created_at.desc(), WebhookEvent.id.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all())
