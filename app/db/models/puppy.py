"""
Puppy Model - the scarce item a reservation claims
"""
import enum
import uuid

from sqlalchemy import Column, String, Boolean, DateTime, Numeric, Enum as SQLEnum
from sqlalchemy.orm import validates

from app.db.database import Base, utcnow


def generate_uuid() -> str:
    return str(uuid.uuid4())


class PuppyStatus(str, enum.Enum):
    AVAILABLE = "available"
    RESERVED = "reserved"
    SOLD = "sold"
    UPCOMING = "upcoming"


class Puppy(Base):
    """A puppy listed in the storefront; can be sold exactly once"""

    __tablename__ = "puppies"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    name = Column(String(100), nullable=True)
    slug = Column(String(150), unique=True, nullable=True, index=True)

    status = Column(
        SQLEnum(
            PuppyStatus,
            native_enum=False,
            length=20,
            values_callable=lambda e: [m.value for m in e],
        ),
        nullable=False,
        default=PuppyStatus.AVAILABLE,
        index=True,
    )
    # NULL means the price is not published yet
    price_usd = Column(Numeric(10, 2), nullable=True)
    is_archived = Column(Boolean, nullable=False, default=False)

    # Set once, on the first transition to SOLD
    sold_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    @validates("status")
    def _stamp_sold_at(self, key, value):
        if value in (PuppyStatus.SOLD, PuppyStatus.SOLD.value) and self.sold_at is None:
            self.sold_at = utcnow()
        return value
