"""
Webhook Event Model - the ledger of inbound provider events.

Every delivery is recorded on receipt and never deleted: the rows are both
the idempotency guard and the audit trail. A row ends either processed=True
or with processing_error set.
"""
from sqlalchemy import (
    Column,
    Integer,
    String,
    Boolean,
    DateTime,
    Text,
    JSON,
    Index,
    UniqueConstraint,
)

from app.db.database import Base, utcnow


class WebhookEvent(Base):
    """Ledger row for one provider event"""

    __tablename__ = "webhook_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    provider = Column(String(20), nullable=False)
    event_id = Column(String(255), nullable=False)
    # Provider-agnostic dedup key, e.g. "stripe:pi_123"
    idempotency_key = Column(String(500), nullable=False, index=True)
    event_type = Column(String(100), nullable=False)
    payload = Column(JSON, nullable=True)

    processing_started_at = Column(DateTime, nullable=True)
    processed = Column(Boolean, nullable=False, default=False)
    processed_at = Column(DateTime, nullable=True)
    processing_error = Column(Text, nullable=True)
    reservation_id = Column(String(36), nullable=True)

    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        UniqueConstraint("provider", "event_id", name="uq_webhook_events_provider_event"),
        Index("ix_webhook_events_provider_created", "provider", "created_at"),
        Index("ix_webhook_events_processed_created", "processed", "created_at"),
    )
