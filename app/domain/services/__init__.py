"""
Domain Services
"""
from app.domain.services.reservation_service import (
    ClaimRequest,
    ReservationService,
    ReservationState,
)
from app.domain.services.webhook_ledger import IdempotencyCheck, WebhookLedger
from app.domain.services.deposit_service import calculate_deposit, deposit_for_puppy
from app.domain.services.rate_limit_service import RateLimitResult, check_inquiry_rate_limit
from app.domain.services.expiration_service import (
    archive_sold_puppies,
    expire_pending_reservations,
)
from app.domain.services.alert_service import alert_on_failure, track_webhook_success

__all__ = [
    "ClaimRequest",
    "ReservationService",
    "ReservationState",
    "IdempotencyCheck",
    "WebhookLedger",
    "calculate_deposit",
    "deposit_for_puppy",
    "RateLimitResult",
    "check_inquiry_rate_limit",
    "archive_sold_puppies",
    "expire_pending_reservations",
    "alert_on_failure",
    "track_webhook_success",
]
