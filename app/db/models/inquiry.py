"""
Inquiry Model - contact form submissions, counted by the inquiry rate limiter
"""
from sqlalchemy import Column, Integer, String, DateTime, Text, ForeignKey, Index

from app.db.database import Base, utcnow


class Inquiry(Base):
    __tablename__ = "inquiries"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(100), nullable=True)
    email = Column(String(255), nullable=False)
    phone = Column(String(30), nullable=True)
    message = Column(Text, nullable=True)
    puppy_id = Column(String(36), ForeignKey("puppies.id"), nullable=True)
    client_ip = Column(String(64), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_inquiries_email_created", "email", "created_at"),
        Index("ix_inquiries_client_ip_created", "client_ip", "created_at"),
    )
