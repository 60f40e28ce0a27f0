"""
Reservation Model - a deposit-backed hold on one puppy

Database-level invariants (also checked inside the claim transaction):
- unique_external_payment_per_provider: one reservation per provider payment
- valid_reservation_amount: amount > 0 (amount <= price is a PostgreSQL trigger)
- idx_one_active_reservation_per_puppy: at most one pending/confirmed row per puppy
"""
import enum

from sqlalchemy import (
    Column,
    Integer,
    String,
    DateTime,
    Numeric,
    Text,
    ForeignKey,
    Enum as SQLEnum,
    UniqueConstraint,
    CheckConstraint,
    Index,
    text,
)

from app.db.database import Base, utcnow
from app.db.models.puppy import generate_uuid


class ReservationStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


# Statuses that hold the puppy
ACTIVE_RESERVATION_STATUSES = (ReservationStatus.PENDING, ReservationStatus.CONFIRMED)


class PaymentProvider(str, enum.Enum):
    STRIPE = "stripe"
    PAYPAL = "paypal"


class ReservationChannel(str, enum.Enum):
    SITE = "site"
    WHATSAPP = "whatsapp"
    TELEGRAM = "telegram"
    INSTAGRAM = "instagram"
    FACEBOOK = "facebook"
    PHONE = "phone"


def _values(enum_cls):
    return [m.value for m in enum_cls]


_ACTIVE_WHERE = text("status IN ('pending', 'confirmed')")


class Reservation(Base):
    """Reservation record"""

    __tablename__ = "reservations"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    puppy_id = Column(String(36), ForeignKey("puppies.id"), nullable=False)

    # Customer contact
    customer_name = Column(String(100), nullable=True)
    customer_email = Column(String(255), nullable=False)
    customer_phone = Column(String(30), nullable=True)
    channel = Column(
        SQLEnum(ReservationChannel, native_enum=False, length=20, values_callable=_values),
        nullable=False,
        default=ReservationChannel.SITE,
    )

    # Payment
    payment_provider = Column(
        SQLEnum(PaymentProvider, native_enum=False, length=20, values_callable=_values),
        nullable=False,
    )
    external_payment_id = Column(String(255), nullable=False)
    webhook_event_id = Column(Integer, ForeignKey("webhook_events.id"), nullable=True)
    amount = Column(Numeric(10, 2), nullable=False)

    status = Column(
        SQLEnum(ReservationStatus, native_enum=False, length=20, values_callable=_values),
        nullable=False,
        default=ReservationStatus.PENDING,
    )
    # Only meaningful while pending
    expires_at = Column(DateTime, nullable=True)
    notes = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint(
            "payment_provider",
            "external_payment_id",
            name="unique_external_payment_per_provider",
        ),
        CheckConstraint("amount > 0", name="valid_reservation_amount"),
        CheckConstraint(
            "status IN ('pending', 'confirmed', 'expired', 'cancelled')",
            name="valid_reservation_status",
        ),
        Index(
            "idx_one_active_reservation_per_puppy",
            "puppy_id",
            unique=True,
            postgresql_where=_ACTIVE_WHERE,
            sqlite_where=_ACTIVE_WHERE,
        ),
        Index("idx_reservations_puppy_id", "puppy_id"),
        Index("idx_reservations_status", "status"),
        Index("idx_reservations_payment_provider", "payment_provider"),
        Index("idx_reservations_external_payment_id", "external_payment_id"),
        Index("ix_reservations_status_expires_at", "status", "expires_at"),
    )
