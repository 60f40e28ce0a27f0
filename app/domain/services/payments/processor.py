"""
Payment Event Processor

Provider-neutral flow shared by the Stripe and PayPal handlers:

    record event -> idempotency check -> mark processing
        -> claim -> confirm -> mark processed

Every event is recorded in the ledger before anything else happens. A lost
race or a redelivery is a duplicate (200 to the provider, no alert); any
other failure marks the event failed so the route can alert and let the
provider retry.
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Optional

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import ClaimErrorCode, ReservationClaimError
from app.core.logging import get_logger
from app.db.models.puppy import Puppy
from app.db.models.reservation import PaymentProvider, Reservation
from app.db.models.webhook_event import WebhookEvent
from app.domain.services.notification_service import NotificationKind, PaymentNotification
from app.domain.services.reservation_service import ClaimRequest, ReservationService
from app.domain.services.webhook_ledger import WebhookLedger

logger = get_logger(__name__)


@dataclass
class WebhookProcessingResult:
    """Outcome handed back to the webhook route"""
    success: bool
    event_type: str
    duplicate: bool = False
    reservation_id: Optional[str] = None
    payment_id: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    # set only when this delivery changed a reservation
    notification: Optional[PaymentNotification] = None


def _first_validation_message(exc: ValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "Invalid reservation data"
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    return f"Invalid reservation data: {location}: {first.get('msg')}"


class PaymentEventProcessor:
    """Ledger + reservation orchestration for one provider"""

    def __init__(self, db: AsyncSession, provider: PaymentProvider):
        self.db = db
        self.provider = provider
        self.ledger = WebhookLedger(db)
        self.reservations = ReservationService(db)

    async def record(
        self,
        event_id: str,
        event_type: str,
        payload: dict[str, Any],
        idempotency_key: str,
    ) -> WebhookEvent:
        event, _ = await self.ledger.record_event(
            self.provider.value, event_id, event_type, payload, idempotency_key
        )
        return event

    async def record_only(
        self,
        event_id: str,
        event_type: str,
        payload: dict[str, Any],
        idempotency_key: str,
        payment_id: Optional[str] = None,
        message: Optional[str] = None,
    ) -> WebhookProcessingResult:
        """Audit-only events: record and close them, no reservation side effect"""
        event = await self.record(event_id, event_type, payload, idempotency_key)
        duplicate = bool(event.processed)
        if not duplicate:
            await self.ledger.mark_processed(self.provider.value, event_id, idempotency_key)
        return WebhookProcessingResult(
            success=True,
            event_type=event_type,
            duplicate=duplicate,
            payment_id=payment_id,
            error=message,
        )

    async def fail(
        self,
        event_id: str,
        event_type: str,
        idempotency_key: str,
        error: str,
        payment_id: Optional[str] = None,
        error_code: Optional[str] = None,
    ) -> WebhookProcessingResult:
        logger.error(
            "Payment event processing failed",
            extra_data={
                "provider": self.provider.value,
                "event_id": event_id,
                "event_type": event_type,
                "payment_id": payment_id,
                "error": error,
                "error_code": error_code,
            },
        )
        await self.ledger.mark_failed(self.provider.value, event_id, idempotency_key, error)
        return WebhookProcessingResult(
            success=False,
            event_type=event_type,
            payment_id=payment_id,
            error=error,
            error_code=error_code,
        )

    async def _duplicate_from_check(
        self,
        event_id: str,
        event_type: str,
        idempotency_key: str,
        payment_id: Optional[str],
    ) -> Optional[WebhookProcessingResult]:
        """Duplicate result when the event (or its payment) was already handled"""
        check = await self.ledger.check_event(self.provider.value, event_id, payment_id)
        if not check.exists:
            return None

        event = check.event
        # Another event already produced the reservation; close this one too
        if event is not None and not event.processed and check.reservation_id:
            await self.ledger.mark_processed(
                self.provider.value, event_id, idempotency_key, check.reservation_id
            )

        logger.info(
            "Duplicate payment event",
            extra_data={
                "provider": self.provider.value,
                "event_id": event_id,
                "payment_id": payment_id,
                "reservation_id": check.reservation_id,
            },
        )
        return WebhookProcessingResult(
            success=True,
            event_type=event_type,
            duplicate=True,
            reservation_id=check.reservation_id,
            payment_id=payment_id,
        )

    async def _notification(
        self,
        kind: NotificationKind,
        reservation: Reservation | str,
        transaction_id: str,
        amount: Optional[Decimal] = None,
        reason: Optional[str] = None,
    ) -> Optional[PaymentNotification]:
        """Owner/customer email data; None when it cannot be loaded"""
        try:
            if isinstance(reservation, str):
                reservation = await self.reservations.get(reservation)
            if reservation is None:
                return None
            puppy = await self.db.get(Puppy, reservation.puppy_id)
        except SQLAlchemyError as exc:
            # the payment is already settled; only the emails are lost
            logger.warning(
                "Could not load payment notification data",
                extra_data={"transaction_id": transaction_id, "error": str(exc)},
            )
            await self.db.rollback()
            return None
        return PaymentNotification(
            kind=kind,
            provider=self.provider.value,
            reservation_id=reservation.id,
            transaction_id=transaction_id,
            amount=amount if amount is not None else reservation.amount,
            customer_email=reservation.customer_email,
            customer_name=reservation.customer_name,
            puppy_name=puppy.name if puppy else None,
            puppy_slug=puppy.slug if puppy else None,
            reason=reason,
        )

    async def claim(
        self,
        event: WebhookEvent,
        event_type: str,
        idempotency_key: str,
        payment_id: str,
        claim_fields: dict[str, Any],
    ) -> WebhookProcessingResult:
        """
        Claim the puppy for a paid deposit and confirm the reservation.

        ``event`` must already be recorded (see record()).
        """
        event_id = event.event_id
        provider = self.provider.value

        duplicate = await self._duplicate_from_check(event_id, event_type, idempotency_key, payment_id)
        if duplicate:
            return duplicate

        await self.ledger.mark_processing(provider, event_id, idempotency_key, event_type)

        try:
            request = ClaimRequest(
                **claim_fields,
                payment_provider=self.provider,
                external_payment_id=payment_id,
                webhook_event_id=event.id,
            )
        except ValidationError as exc:
            return await self.fail(
                event_id,
                event_type,
                idempotency_key,
                _first_validation_message(exc),
                payment_id=payment_id,
                error_code=ClaimErrorCode.VALIDATION_ERROR.value,
            )

        try:
            reservation_id = await self.reservations.claim(request)
        except ReservationClaimError as exc:
            return await self._handle_claim_error(exc, event_id, event_type, idempotency_key, payment_id)
        except Exception as exc:
            logger.error(
                "Unexpected error while claiming reservation",
                extra_data={"provider": provider, "event_id": event_id, "error": str(exc)},
                exc_info=True,
            )
            await self.db.rollback()
            return await self.fail(
                event_id, event_type, idempotency_key, str(exc) or type(exc).__name__,
                payment_id=payment_id,
            )

        confirmed = await self.reservations.confirm(reservation_id)
        if not confirmed:
            logger.warning(
                "Reservation created but not confirmed",
                extra_data={"reservation_id": reservation_id, "payment_id": payment_id},
            )

        await self.ledger.mark_processed(provider, event_id, idempotency_key, reservation_id)
        notification = await self._notification(
            NotificationKind.DEPOSIT, reservation_id, payment_id
        )
        return WebhookProcessingResult(
            success=True,
            event_type=event_type,
            reservation_id=reservation_id,
            payment_id=payment_id,
            notification=notification,
        )

    async def _handle_claim_error(
        self,
        exc: ReservationClaimError,
        event_id: str,
        event_type: str,
        idempotency_key: str,
        payment_id: str,
    ) -> WebhookProcessingResult:
        provider = self.provider.value

        if exc.code == ClaimErrorCode.DUPLICATE_PAYMENT:
            existing_id = exc.details.get("existing_reservation_id")
            await self.ledger.mark_processed(provider, event_id, idempotency_key, existing_id)
            return WebhookProcessingResult(
                success=True,
                event_type=event_type,
                duplicate=True,
                reservation_id=existing_id,
                payment_id=payment_id,
                error=exc.message,
            )

        if exc.is_expected:
            # Paid, but someone else holds the puppy; the payment needs a refund
            logger.warning(
                "Payment received for a puppy that is already reserved",
                extra_data={
                    "provider": provider,
                    "event_id": event_id,
                    "payment_id": payment_id,
                    "puppy_id": exc.details.get("puppy_id"),
                    "reason": exc.code.value,
                },
            )
            await self.ledger.mark_processed(provider, event_id, idempotency_key)
            return WebhookProcessingResult(
                success=True,
                event_type=event_type,
                duplicate=True,
                payment_id=payment_id,
                error=exc.message,
                error_code=exc.code.value,
            )

        return await self.fail(
            event_id,
            event_type,
            idempotency_key,
            exc.message,
            payment_id=payment_id,
            error_code=exc.code.value,
        )

    async def refund(
        self,
        event: WebhookEvent,
        event_type: str,
        idempotency_key: str,
        payment_id: str,
        note: str,
        refund_id: Optional[str] = None,
        refund_amount: Optional[Decimal] = None,
        reason: Optional[str] = None,
    ) -> WebhookProcessingResult:
        """Cancel the reservation backed by a refunded payment"""
        event_id = event.event_id
        provider = self.provider.value

        # The payment backs a reservation by definition; only the event itself counts
        duplicate = await self._duplicate_from_check(event_id, event_type, idempotency_key, None)
        if duplicate:
            return duplicate

        await self.ledger.mark_processing(provider, event_id, idempotency_key, event_type)

        try:
            reservation = await self.reservations.refund_by_payment(self.provider, payment_id, note)
        except Exception as exc:
            logger.error(
                "Unexpected error while cancelling refunded reservation",
                extra_data={"provider": provider, "event_id": event_id, "error": str(exc)},
                exc_info=True,
            )
            return await self.fail(
                event_id, event_type, idempotency_key, str(exc) or type(exc).__name__,
                payment_id=payment_id,
            )

        if reservation is None:
            return await self.fail(
                event_id, event_type, idempotency_key, "Reservation not found",
                payment_id=payment_id,
            )

        await self.ledger.mark_processed(provider, event_id, idempotency_key, reservation.id)
        notification = await self._notification(
            NotificationKind.REFUND, reservation, refund_id or payment_id, refund_amount, reason
        )
        return WebhookProcessingResult(
            success=True,
            event_type=event_type,
            reservation_id=reservation.id,
            payment_id=payment_id,
            notification=notification,
        )
