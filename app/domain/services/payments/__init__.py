"""
Payment provider webhook handling (Stripe Checkout, PayPal Orders v2)
"""
from app.domain.services.payments.processor import (
    PaymentEventProcessor,
    WebhookProcessingResult,
)
from app.domain.services.payments.stripe_handler import (
    process_stripe_event,
    verify_stripe_signature,
)
from app.domain.services.payments.paypal_handler import process_paypal_event
from app.domain.services.payments.paypal_client import (
    PAYPAL_SIGNATURE_HEADERS,
    PayPalClient,
    get_paypal_client,
)

__all__ = [
    "PaymentEventProcessor",
    "WebhookProcessingResult",
    "process_stripe_event",
    "verify_stripe_signature",
    "process_paypal_event",
    "PAYPAL_SIGNATURE_HEADERS",
    "PayPalClient",
    "get_paypal_client",
]
