"""
PayPal webhook handling

- PAYMENT.CAPTURE.COMPLETED: claim and confirm the reservation
- PAYMENT.CAPTURE.REFUNDED: cancel the reservation the capture paid for
- CHECKOUT.ORDER.APPROVED: audit only

Checkout metadata travels in the capture's ``custom_id`` as a JSON object
({"puppy_id": ..., "customer_email": ..., "channel": ...}).
"""
import json
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import LedgerConsistencyError
from app.core.logging import get_logger
from app.core.validation import PhoneNumberValidator
from app.db.database import utcnow
from app.db.models.reservation import PaymentProvider, ReservationChannel
from app.domain.services.payments.paypal_client import get_paypal_client
from app.domain.services.payments.processor import PaymentEventProcessor, WebhookProcessingResult

logger = get_logger(__name__)

PAYMENT_CAPTURE_COMPLETED = "PAYMENT.CAPTURE.COMPLETED"
PAYMENT_CAPTURE_REFUNDED = "PAYMENT.CAPTURE.REFUNDED"
CHECKOUT_ORDER_APPROVED = "CHECKOUT.ORDER.APPROVED"

SUPPORTED_EVENTS = (
    PAYMENT_CAPTURE_COMPLETED,
    PAYMENT_CAPTURE_REFUNDED,
    CHECKOUT_ORDER_APPROVED,
)


def parse_custom_id(custom_id: Any) -> dict[str, Any]:
    """Checkout metadata from custom_id; {} when absent or not a JSON object"""
    if not custom_id or not isinstance(custom_id, str):
        return {}
    try:
        metadata = json.loads(custom_id)
    except ValueError:
        logger.warning("Could not parse PayPal custom_id metadata")
        return {}
    return metadata if isinstance(metadata, dict) else {}


def _amount(resource: dict[str, Any]) -> Optional[Decimal]:
    amount = resource.get("amount")
    if not isinstance(amount, dict):
        return None
    try:
        value = Decimal(str(amount.get("value")))
    except InvalidOperation:
        return None
    return value if value.is_finite() else None


def _refunded_capture_id(resource: dict[str, Any]) -> Optional[str]:
    """
    A refund resource links back to its capture with rel "up"
    (.../v2/payments/captures/{capture_id}).
    """
    for link in resource.get("links") or []:
        if not isinstance(link, dict):
            continue
        href = link.get("href") or ""
        if link.get("rel") == "up" and "/captures/" in href:
            return href.rstrip("/").rsplit("/", 1)[-1]
    return resource.get("id")


def alert_context(event: dict[str, Any]) -> dict[str, Any]:
    """puppy_id / customer_email for a failure alert"""
    metadata = parse_custom_id((event.get("resource") or {}).get("custom_id"))
    return {
        "puppy_id": metadata.get("puppy_id"),
        "customer_email": metadata.get("customer_email"),
    }


async def _payer_details(order_id: str) -> dict[str, Optional[str]]:
    """Payer email/name/phone from the order; {} when the lookup fails"""
    try:
        order = await get_paypal_client().get_order(order_id)
    except Exception as e:
        logger.warning(
            "Could not fetch PayPal order details",
            extra_data={"order_id": order_id, "error": str(e)},
        )
        return {}

    payer = order.get("payer") or {}
    name = payer.get("name") or {}
    full_name = " ".join(part for part in (name.get("given_name"), name.get("surname")) if part).strip()
    phone = (((payer.get("phone") or {}).get("phone_number")) or {}).get("national_number")
    return {
        "email": payer.get("email_address"),
        "name": full_name or None,
        "phone": phone,
    }


async def _handle_capture_completed(
    processor: PaymentEventProcessor,
    event: dict[str, Any],
    event_type: str,
) -> WebhookProcessingResult:
    event_id = event["id"]
    resource = event.get("resource") if isinstance(event.get("resource"), dict) else {}
    capture_id = resource.get("id")
    key = f"paypal:{capture_id}" if capture_id else f"paypal:{event_id}"

    recorded = await processor.record(event_id, event_type, event, key)

    if not capture_id or not isinstance(resource.get("amount"), dict):
        return await processor.fail(event_id, event_type, key, "Invalid capture resource")

    status = resource.get("status")
    if status and status != "COMPLETED":
        return await processor.fail(
            event_id, event_type, key,
            f"Capture status is {status}, expected COMPLETED",
            payment_id=capture_id,
        )

    metadata = parse_custom_id(resource.get("custom_id"))
    if not metadata.get("puppy_id"):
        return await processor.fail(
            event_id, event_type, key, "Missing required metadata: puppy_id",
            payment_id=capture_id,
        )

    amount = _amount(resource)
    if amount is None or amount <= 0:
        return await processor.fail(
            event_id, event_type, key, "Invalid capture amount",
            payment_id=capture_id,
        )

    email = metadata.get("customer_email")
    name = metadata.get("customer_name")
    phone = metadata.get("customer_phone")

    order_id = ((resource.get("supplementary_data") or {}).get("related_ids") or {}).get("order_id")
    if order_id and not (email and name and phone):
        payer = await _payer_details(order_id)
        email = email or payer.get("email")
        name = name or payer.get("name")
        phone = phone or payer.get("phone")

    if not email:
        return await processor.fail(
            event_id, event_type, key, "Missing customer email",
            payment_id=capture_id,
        )

    channel = metadata.get("channel")
    fields = {
        "puppy_id": metadata["puppy_id"],
        "customer_email": email,
        "customer_name": name,
        "customer_phone": phone if phone and PhoneNumberValidator.validate(phone) else None,
        "amount": amount,
        "channel": channel if channel in {c.value for c in ReservationChannel} else ReservationChannel.SITE.value,
        "notes": f"PayPal Order {order_id}" if order_id else "PayPal capture",
    }
    return await processor.claim(recorded, event_type, key, capture_id, fields)


async def _handle_capture_refunded(
    processor: PaymentEventProcessor,
    event: dict[str, Any],
    event_type: str,
) -> WebhookProcessingResult:
    event_id = event["id"]
    resource = event.get("resource") if isinstance(event.get("resource"), dict) else {}
    capture_id = _refunded_capture_id(resource)
    key = f"paypal:{capture_id}:refunded" if capture_id else f"paypal:{event_id}:refunded"

    recorded = await processor.record(event_id, event_type, event, key)

    if not capture_id:
        return await processor.fail(event_id, event_type, key, "Invalid capture resource")

    amount = resource.get("amount") if isinstance(resource.get("amount"), dict) else {}
    note = (
        f"[PayPal Refund {utcnow().isoformat(timespec='seconds')}Z] "
        f"Amount: ${amount.get('value', '0')} {amount.get('currency_code', 'USD')}, "
        f"Capture ID: {capture_id}"
    )
    logger.info("Processing PayPal refund", extra_data={"capture_id": capture_id})
    return await processor.refund(
        recorded,
        event_type,
        key,
        capture_id,
        note,
        refund_id=resource.get("id"),
        refund_amount=_amount(resource),
        reason=resource.get("note_to_payer"),
    )


async def process_paypal_event(db: AsyncSession, event: dict[str, Any]) -> WebhookProcessingResult:
    """Process a verified PayPal event"""
    event_type = event.get("event_type") or ""
    if not event.get("id"):
        return WebhookProcessingResult(success=False, event_type=event_type, error="Missing event id")

    logger.info(
        "Processing PayPal event",
        extra_data={"event_id": event["id"], "event_type": event_type},
    )
    processor = PaymentEventProcessor(db, PaymentProvider.PAYPAL)
    try:
        if event_type == PAYMENT_CAPTURE_COMPLETED:
            return await _handle_capture_completed(processor, event, event_type)
        if event_type == PAYMENT_CAPTURE_REFUNDED:
            return await _handle_capture_refunded(processor, event, event_type)
        if event_type == CHECKOUT_ORDER_APPROVED:
            return await processor.record_only(
                event["id"],
                event_type,
                event,
                processor.ledger.build_idempotency_key(PaymentProvider.PAYPAL.value, event["id"]),
            )
    except LedgerConsistencyError as exc:
        return WebhookProcessingResult(
            success=False,
            event_type=event_type,
            error=exc.message,
            error_code=exc.error_code.value,
        )

    logger.info("Unhandled PayPal event type", extra_data={"event_type": event_type})
    return WebhookProcessingResult(
        success=True,
        event_type=event_type,
        error=f"Unhandled event type: {event_type}",
    )
