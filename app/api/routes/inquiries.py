"""
Contact form endpoint
"""
from datetime import datetime

from fastapi import APIRouter, Depends, Request, status
from pydantic import BaseModel, Field, field_validator
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import NotFoundException, RateLimitExceededError
from app.core.logging import get_logger, mask_email
from app.core.validation import (
    email_validator,
    name_validator,
    phone_validator,
    sanitized_text_validator,
)
from app.db.database import get_db
from app.db.models.inquiry import Inquiry
from app.db.models.puppy import Puppy
from app.domain.services.rate_limit_service import check_inquiry_rate_limit

logger = get_logger(__name__)

router = APIRouter()


class InquiryCreate(BaseModel):
    """Contact form submission"""
    email: str = Field(..., max_length=255)
    name: str | None = None
    phone: str | None = None
    message: str | None = Field(None, max_length=5000)
    puppy_id: str | None = None

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        return email_validator(v)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str | None) -> str | None:
        return name_validator(v)

    @field_validator("phone")
    @classmethod
    def validate_phone(cls, v: str | None) -> str | None:
        return phone_validator(v)

    @field_validator("message")
    @classmethod
    def validate_message(cls, v: str | None) -> str | None:
        return sanitized_text_validator(v, max_length=5000)


class InquiryResponse(BaseModel):
    id: int
    email: str
    name: str | None
    puppy_id: str | None
    created_at: datetime

    class Config:
        from_attributes = True


def get_client_ip(request: Request) -> str | None:
    """First hop of X-Forwarded-For, else the socket peer"""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return request.client.host if request.client else None


@router.post(
    "",
    response_model=InquiryResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Submit an inquiry",
    description=(
        "Stores a contact form submission. Limited per email and per client IP "
        "over a sliding window; the email limit is checked first."
    ),
    responses={
        201: {"description": "Inquiry stored"},
        404: {"description": "Puppy not found"},
        429: {"description": "Too many inquiries from this email or connection"},
    },
)
async def create_inquiry(
    payload: InquiryCreate,
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> Inquiry:
    client_ip = get_client_ip(request)

    decision = await check_inquiry_rate_limit(db, payload.email, client_ip)
    if not decision.ok:
        raise RateLimitExceededError(decision.reason, decision.message)

    if payload.puppy_id:
        result = await db.execute(select(Puppy.id).where(Puppy.id == payload.puppy_id))
        if result.scalar_one_or_none() is None:
            raise NotFoundException("Puppy", payload.puppy_id)

    inquiry = Inquiry(
        email=payload.email,
        name=payload.name,
        phone=payload.phone,
        message=payload.message,
        puppy_id=payload.puppy_id,
        client_ip=client_ip,
    )
    db.add(inquiry)
    await db.commit()
    await db.refresh(inquiry)

    logger.info(
        "Inquiry received",
        extra_data={"inquiry_id": inquiry.id, "email": mask_email(inquiry.email)},
    )
    return inquiry
