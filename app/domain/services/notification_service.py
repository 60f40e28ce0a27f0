"""
Notification Service - emails to the owner and the customer after a payment

A confirmed deposit sends the owner a "new deposit" notice and the customer a
confirmation; a processed refund sends both a refund notice. Everything goes
out through the Resend HTTP API behind its own circuit breaker.

Notifications are best effort: they run after the webhook response, and a
failing or unconfigured channel is logged, never raised.
"""
import asyncio
import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

import httpx

from app.core.circuit_breaker import get_notification_email_circuit_breaker
from app.core.config import settings
from app.core.exceptions import AlertChannelError
from app.core.logging import get_logger, mask_email
from app.core.validation import TextSanitizer

logger = get_logger(__name__)

esc = TextSanitizer.sanitize_for_html


class NotificationKind(str, enum.Enum):
    DEPOSIT = "deposit"
    REFUND = "refund"


@dataclass
class PaymentNotification:
    """What the owner and customer emails show for one payment"""
    kind: NotificationKind
    provider: str
    reservation_id: str
    transaction_id: str
    amount: Decimal
    customer_email: str
    customer_name: Optional[str] = None
    puppy_name: Optional[str] = None
    puppy_slug: Optional[str] = None
    currency: str = "USD"
    reason: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def provider_label(self) -> str:
        return "Stripe" if self.provider == "stripe" else "PayPal"

    @property
    def display_customer_name(self) -> str:
        return self.customer_name or "Valued Customer"

    @property
    def display_puppy_name(self) -> str:
        return self.puppy_name or "Puppy"

    @property
    def display_amount(self) -> str:
        return f"${self.amount:,.2f} {self.currency}"


@dataclass
class EmailMessage:
    to: str
    subject: str
    html: str
    reply_to: Optional[str] = None


def _puppy_url(notification: PaymentNotification) -> str:
    return f"{settings.SITE_URL.rstrip('/')}/puppies/{notification.puppy_slug or ''}"


def _fields(rows: list[tuple[str, object]]) -> str:
    return "\n".join(
        f'<div class="field"><span class="label">{esc(label)}:</span> '
        f'<span class="value">{esc(value)}</span></div>'
        for label, value in rows
        if value not in (None, "")
    )


def _contact_block() -> str:
    lines = [f'Email: <a href="mailto:{esc(settings.CONTACT_EMAIL)}">{esc(settings.CONTACT_EMAIL)}</a>']
    if settings.CONTACT_PHONE:
        lines.append(f"Phone: {esc(settings.CONTACT_PHONE)}")
    return "<br>".join(lines)


def _page(title: str, heading: str, body: str) -> str:
    return f"""<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <title>{esc(title)}</title>
</head>
<body style="font-family: Arial, sans-serif; line-height: 1.6; color: #333;">
    <h1>{esc(heading)}</h1>
    {body}
    <p style="font-size: 12px; color: #666;">{esc(settings.APP_NAME)}</p>
</body>
</html>
"""


def build_owner_deposit_email(notification: PaymentNotification) -> EmailMessage:
    n = notification
    details = _fields([
        ("Puppy", n.display_puppy_name),
        ("Customer", n.display_customer_name),
        ("Email", n.customer_email),
        ("Paid via", n.provider_label),
        ("Reservation ID", n.reservation_id),
        ("Transaction ID", n.transaction_id),
        ("Date", n.timestamp.isoformat(timespec="seconds")),
    ])
    body = f"""<p style="font-size: 24px;"><strong>{esc(n.display_amount)}</strong></p>
    <h2>Deposit Details</h2>
    {details}
    <p><a href="{esc(_puppy_url(n))}">View puppy</a> |
    <a href="mailto:{esc(n.customer_email)}">Contact customer</a></p>"""
    return EmailMessage(
        to=settings.OWNER_EMAIL,
        subject=f"New Deposit: ${n.amount:,.2f} for {n.display_puppy_name}",
        html=_page("New Deposit Received", "New Deposit Received", body),
        reply_to=n.customer_email,
    )


def build_customer_deposit_email(notification: PaymentNotification) -> EmailMessage:
    n = notification
    details = _fields([
        ("Puppy", n.display_puppy_name),
        ("Deposit", n.display_amount),
        ("Paid via", n.provider_label),
        ("Reservation ID", n.reservation_id),
        ("Transaction ID", n.transaction_id),
    ])
    body = f"""<p>Dear {esc(n.display_customer_name)}, your deposit was received and
    <strong>{esc(n.display_puppy_name)}</strong> is now reserved for you.</p>
    <h2>Reservation Details</h2>
    {details}
    <p><a href="{esc(_puppy_url(n))}">View your puppy</a></p>
    <h2>What's Next</h2>
    <ol>
        <li>We will contact you within 24 hours to confirm the details</li>
        <li>We will agree on pickup or delivery and the remaining balance</li>
        <li>You will receive regular updates until your puppy comes home</li>
    </ol>
    <h2>Questions?</h2>
    <p>{_contact_block()}</p>"""
    return EmailMessage(
        to=n.customer_email,
        subject=f"Deposit Confirmed - {n.display_puppy_name} is Reserved for You!",
        html=_page("Deposit Confirmed", "Deposit Confirmed", body),
    )


def _refund_processing_time(provider: str) -> str:
    if provider == "stripe":
        return "5-10 business days"
    return "5-10 business days (up to 30 days in some cases)"


def build_owner_refund_email(notification: PaymentNotification) -> EmailMessage:
    n = notification
    details = _fields([
        ("Puppy", n.display_puppy_name),
        ("Customer", n.display_customer_name),
        ("Email", n.customer_email),
        ("Refunded via", n.provider_label),
        ("Reservation ID", n.reservation_id),
        ("Refund ID", n.transaction_id),
        ("Reason", n.reason),
        ("Date", n.timestamp.isoformat(timespec="seconds")),
    ])
    body = f"""<p style="font-size: 24px;"><strong>{esc(n.display_amount)}</strong></p>
    <p>The reservation was cancelled and the puppy is available again.</p>
    <h2>Refund Details</h2>
    {details}
    <p><a href="{esc(_puppy_url(n))}">View puppy</a> |
    <a href="mailto:{esc(n.customer_email)}">Contact customer</a></p>"""
    return EmailMessage(
        to=settings.OWNER_EMAIL,
        subject=f"Refund Processed: ${n.amount:,.2f} for {n.display_puppy_name}",
        html=_page("Refund Processed", "Refund Processed", body),
        reply_to=n.customer_email,
    )


def build_customer_refund_email(notification: PaymentNotification) -> EmailMessage:
    n = notification
    processing_time = _refund_processing_time(n.provider)
    details = _fields([
        ("Puppy", n.display_puppy_name),
        ("Refund", n.display_amount),
        ("Original payment method", n.provider_label),
        ("Refund reason", n.reason),
        ("Reservation ID", n.reservation_id),
        ("Refund ID", n.transaction_id),
    ])
    body = f"""<p>Dear {esc(n.display_customer_name)}, your refund has been initiated.</p>
    <p><strong>Processing time:</strong> the refund will appear in your account within
    {esc(processing_time)}, depending on your bank or card issuer.</p>
    <h2>Refund Details</h2>
    {details}
    <h2>Questions?</h2>
    <p>{_contact_block()}</p>"""
    return EmailMessage(
        to=n.customer_email,
        subject=f"Refund Confirmation - {n.display_puppy_name}",
        html=_page("Refund Confirmation", "Refund Processed", body),
    )


_BUILDERS = {
    NotificationKind.DEPOSIT: (build_owner_deposit_email, build_customer_deposit_email),
    NotificationKind.REFUND: (build_owner_refund_email, build_customer_refund_email),
}


def build_messages(notification: PaymentNotification) -> list[tuple[str, EmailMessage]]:
    """(recipient role, message) pairs; the owner only when OWNER_EMAIL is set"""
    owner_builder, customer_builder = _BUILDERS[notification.kind]
    messages = []
    if settings.OWNER_EMAIL:
        messages.append(("owner", owner_builder(notification)))
    if notification.customer_email:
        messages.append(("customer", customer_builder(notification)))
    return messages


async def send_email(message: EmailMessage) -> None:
    """
    Send one message through Resend.

    Raises:
        AlertChannelError: non-2xx response
        CircuitBreakerOpenError: Resend recently failing
    """
    payload = {
        "from": settings.RESEND_FROM_EMAIL,
        "to": [message.to],
        "subject": message.subject,
        "html": message.html,
    }
    if message.reply_to:
        payload["reply_to"] = message.reply_to
    headers = {"Authorization": f"Bearer {settings.RESEND_API_KEY}"}

    async def _send():
        async with httpx.AsyncClient(timeout=settings.ALERT_HTTP_TIMEOUT_SECONDS) as client:
            response = await client.post(settings.RESEND_API_URL, json=payload, headers=headers)
            if not response.is_success:
                raise AlertChannelError(
                    "notification_email",
                    f"Resend returned status {response.status_code}",
                    details={"status_code": response.status_code},
                )

    await get_notification_email_circuit_breaker().execute(_send)


async def send_payment_notifications(notification: PaymentNotification) -> dict[str, bool]:
    """
    Email the owner and the customer about a deposit or refund.

    Returns:
        recipient role -> sent; empty when Resend is not configured
    """
    if not settings.RESEND_API_KEY:
        logger.warning(
            "Payment notification skipped: Resend not configured",
            extra_data={"kind": notification.kind.value, "reservation_id": notification.reservation_id},
        )
        return {}

    messages = build_messages(notification)
    results = await asyncio.gather(
        *(send_email(message) for _, message in messages), return_exceptions=True
    )

    sent: dict[str, bool] = {}
    for (role, message), result in zip(messages, results):
        if isinstance(result, BaseException):
            logger.error(
                "Payment notification failed",
                extra_data={
                    "kind": notification.kind.value,
                    "recipient": role,
                    "reservation_id": notification.reservation_id,
                    "error": str(result),
                },
            )
            sent[role] = False
        else:
            logger.info(
                "Payment notification sent",
                extra_data={
                    "kind": notification.kind.value,
                    "recipient": role,
                    "reservation_id": notification.reservation_id,
                    "to": mask_email(message.to),
                },
            )
            sent[role] = True
    return sent
