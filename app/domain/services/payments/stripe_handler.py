"""
Stripe Checkout webhook handling

Signature verification of the Stripe-Signature header and routing of the
four checkout.session events:

- checkout.session.completed: claim when paid, otherwise wait for the async event
- checkout.session.async_payment_succeeded: claim
- checkout.session.async_payment_failed: audit only
- checkout.session.expired: audit only
"""
import hashlib
import hmac
import json
import time
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import LedgerConsistencyError, WebhookSignatureError
from app.core.logging import get_logger
from app.core.validation import PhoneNumberValidator
from app.db.models.reservation import PaymentProvider, ReservationChannel
from app.domain.services.payments.processor import PaymentEventProcessor, WebhookProcessingResult

logger = get_logger(__name__)

CHECKOUT_SESSION_COMPLETED = "checkout.session.completed"
CHECKOUT_ASYNC_PAYMENT_SUCCEEDED = "checkout.session.async_payment_succeeded"
CHECKOUT_ASYNC_PAYMENT_FAILED = "checkout.session.async_payment_failed"
CHECKOUT_SESSION_EXPIRED = "checkout.session.expired"

SUPPORTED_EVENTS = (
    CHECKOUT_SESSION_COMPLETED,
    CHECKOUT_ASYNC_PAYMENT_SUCCEEDED,
    CHECKOUT_ASYNC_PAYMENT_FAILED,
    CHECKOUT_SESSION_EXPIRED,
)

_CENTS = Decimal("100")


def _parse_signature_header(header: str) -> tuple[Optional[int], list[str]]:
    timestamp: Optional[int] = None
    signatures: list[str] = []
    for item in header.split(","):
        key, _, value = item.strip().partition("=")
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                return None, []
        elif key == "v1" and value:
            signatures.append(value)
    return timestamp, signatures


def verify_stripe_signature(
    payload: bytes,
    signature_header: str,
    secret: str,
    tolerance_seconds: int = 300,
    now: Optional[float] = None,
) -> dict[str, Any]:
    """
    Verify a Stripe webhook and return the parsed event.

    The header looks like ``t=1700000000,v1=<hex>[,v1=<hex>]``; the signed
    message is ``"{t}.{raw body}"`` under HMAC-SHA256 with the endpoint secret.

    Raises:
        WebhookSignatureError: missing/malformed header, no matching v1
            signature, timestamp outside the tolerance, or a body that is not
            a JSON object
    """
    if not signature_header:
        raise WebhookSignatureError("stripe", "Missing Stripe-Signature header")

    timestamp, signatures = _parse_signature_header(signature_header)
    if timestamp is None or not signatures:
        raise WebhookSignatureError("stripe", "Malformed Stripe-Signature header")

    signed_payload = f"{timestamp}.".encode() + payload
    expected = hmac.new(secret.encode(), signed_payload, hashlib.sha256).hexdigest().encode()
    # bytes: compare_digest rejects non-ASCII str
    if not any(hmac.compare_digest(expected, candidate.encode()) for candidate in signatures):
        raise WebhookSignatureError("stripe", "No signatures found matching the expected signature")

    current = time.time() if now is None else now
    if tolerance_seconds > 0 and abs(current - timestamp) > tolerance_seconds:
        raise WebhookSignatureError("stripe", "Timestamp outside the tolerance zone")

    try:
        event = json.loads(payload)
    except ValueError:
        raise WebhookSignatureError("stripe", "Invalid JSON payload")
    if not isinstance(event, dict):
        raise WebhookSignatureError("stripe", "Invalid JSON payload")
    return event


def _payment_intent_id(session: dict[str, Any]) -> Optional[str]:
    # Expanded sessions carry the whole PaymentIntent object
    payment_intent = session.get("payment_intent")
    if isinstance(payment_intent, dict):
        return payment_intent.get("id")
    return payment_intent or None


def _payment_key(payment_intent: Optional[str], event_id: str) -> str:
    return f"stripe:{payment_intent}" if payment_intent else f"stripe:{event_id}"


def _deposit_amount(session: dict[str, Any]) -> Decimal:
    try:
        cents = Decimal(str(session.get("amount_total") or 0))
    except InvalidOperation:
        return Decimal("0")
    return (cents / _CENTS).quantize(Decimal("0.01"))


def _channel(value: Any) -> str:
    allowed = {channel.value for channel in ReservationChannel}
    return value if value in allowed else ReservationChannel.SITE.value


def _claim_fields(session: dict[str, Any]) -> dict[str, Any]:
    metadata = session.get("metadata") or {}
    details = session.get("customer_details") or {}
    phone = details.get("phone") or metadata.get("customer_phone")
    return {
        "puppy_id": metadata.get("puppy_id"),
        "customer_email": details.get("email") or metadata.get("customer_email"),
        "customer_name": details.get("name") or metadata.get("customer_name"),
        "customer_phone": phone if phone and PhoneNumberValidator.validate(phone) else None,
        "amount": _deposit_amount(session),
        "channel": _channel(metadata.get("channel")),
        "notes": f"Stripe Checkout Session: {session.get('id')}",
    }


def alert_context(event: dict[str, Any]) -> dict[str, Any]:
    """puppy_id / customer_email for a failure alert"""
    session = (event.get("data") or {}).get("object") or {}
    metadata = session.get("metadata") or {}
    details = session.get("customer_details") or {}
    return {
        "puppy_id": metadata.get("puppy_id"),
        "customer_email": details.get("email") or metadata.get("customer_email"),
    }


async def _claim_from_session(
    processor: PaymentEventProcessor,
    event: dict[str, Any],
    session: dict[str, Any],
    event_type: str,
) -> WebhookProcessingResult:
    event_id = event["id"]
    payment_intent = _payment_intent_id(session)
    key = _payment_key(payment_intent, event_id)

    recorded = await processor.record(event_id, event_type, event, key)

    if not (session.get("metadata") or {}).get("puppy_id"):
        return await processor.fail(
            event_id, event_type, key, "Missing required metadata: puppy_id",
            payment_id=payment_intent,
        )
    if not payment_intent:
        return await processor.fail(event_id, event_type, key, "Missing payment_intent")

    logger.info(
        "Claiming reservation from Stripe session",
        extra_data={
            "session_id": session.get("id"),
            "payment_intent": payment_intent,
            "puppy_id": session["metadata"]["puppy_id"],
        },
    )
    return await processor.claim(recorded, event_type, key, payment_intent, _claim_fields(session))


async def _dispatch(
    processor: PaymentEventProcessor,
    event: dict[str, Any],
    event_type: str,
) -> WebhookProcessingResult:
    event_id = event["id"]
    session = (event.get("data") or {}).get("object") or {}
    payment_intent = _payment_intent_id(session)

    if event_type == CHECKOUT_SESSION_COMPLETED:
        metadata = session.get("metadata") or {}
        if metadata.get("puppy_id") and session.get("payment_status") != "paid":
            logger.info(
                "Stripe session completed but not paid yet",
                extra_data={
                    "session_id": session.get("id"),
                    "payment_status": session.get("payment_status"),
                },
            )
            return await processor.record_only(
                event_id,
                event_type,
                event,
                _payment_key(payment_intent, event_id),
                payment_id=payment_intent,
                message="Payment pending - waiting for async_payment_succeeded",
            )
        return await _claim_from_session(processor, event, session, event_type)

    if event_type == CHECKOUT_ASYNC_PAYMENT_SUCCEEDED:
        return await _claim_from_session(processor, event, session, event_type)

    if event_type == CHECKOUT_ASYNC_PAYMENT_FAILED:
        logger.warning(
            "Stripe async payment failed",
            extra_data={"session_id": session.get("id"), "payment_intent": payment_intent},
        )
        return await processor.record_only(
            event_id,
            event_type,
            event,
            f"{_payment_key(payment_intent, event_id)}:failed",
            payment_id=payment_intent,
            message="Async payment failed",
        )

    if event_type == CHECKOUT_SESSION_EXPIRED:
        return await processor.record_only(
            event_id,
            event_type,
            event,
            f"stripe:{session.get('id') or event_id}:expired",
            message="Session expired without payment",
        )

    logger.info("Unhandled Stripe event type", extra_data={"event_type": event_type})
    return WebhookProcessingResult(
        success=True,
        event_type=event_type,
        error=f"Unhandled event type: {event_type}",
    )


async def process_stripe_event(db: AsyncSession, event: dict[str, Any]) -> WebhookProcessingResult:
    """Process a verified Stripe event"""
    event_type = event.get("type") or ""
    if not event.get("id"):
        return WebhookProcessingResult(success=False, event_type=event_type, error="Missing event id")

    logger.info(
        "Processing Stripe event",
        extra_data={"event_id": event["id"], "event_type": event_type},
    )
    processor = PaymentEventProcessor(db, PaymentProvider.STRIPE)
    try:
        return await _dispatch(processor, event, event_type)
    except LedgerConsistencyError as exc:
        return WebhookProcessingResult(
            success=False,
            event_type=event_type,
            error=exc.message,
            error_code=exc.error_code.value,
        )
