"""
Database Models
"""
from app.db.models.puppy import Puppy, PuppyStatus
from app.db.models.reservation import (
    Reservation,
    ReservationStatus,
    ReservationChannel,
    PaymentProvider,
)
from app.db.models.webhook_event import WebhookEvent
from app.db.models.inquiry import Inquiry

__all__ = [
    "Puppy",
    "PuppyStatus",
    "Reservation",
    "ReservationStatus",
    "ReservationChannel",
    "PaymentProvider",
    "WebhookEvent",
    "Inquiry",
]
