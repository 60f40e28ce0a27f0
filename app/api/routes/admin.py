"""
Admin Endpoints - reservation oversight and webhook diagnostics without
direct database access.

1. Reservations: list, payment mismatches, manual status change, cancel
2. Webhook ledger: recent events, events nobody finished
3. Circuit breakers of the outbound services
"""
from datetime import datetime
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.admin_auth import require_admin_api_key
from app.core.circuit_breaker import (
    CircuitBreaker,
    get_alert_email_circuit_breaker,
    get_alert_slack_circuit_breaker,
    get_notification_email_circuit_breaker,
    get_paypal_circuit_breaker,
)
from app.core.logging import get_logger
from app.db.database import get_db
from app.db.models.reservation import PaymentProvider, ReservationStatus
from app.domain.services.reservation_service import ReservationService
from app.domain.services.webhook_ledger import WebhookLedger

logger = get_logger(__name__)

router = APIRouter()

_AUTH_RESPONSES = {
    401: {"description": "Missing API key"},
    403: {"description": "Wrong API key"},
}


# ─── Pydantic models ────────────────────────────────────────────────────────

class ReservationResponse(BaseModel):
    id: str
    puppy_id: str
    customer_name: str | None
    customer_email: str
    customer_phone: str | None
    channel: str
    status: ReservationStatus
    payment_provider: PaymentProvider
    external_payment_id: str
    amount: Decimal
    expires_at: datetime | None
    notes: str | None
    created_at: datetime | None
    updated_at: datetime | None

    class Config:
        from_attributes = True


class ReservationListResponse(BaseModel):
    items: list[ReservationResponse]
    total: int
    limit: int
    offset: int


class StatusUpdateRequest(BaseModel):
    """Manual status change; the reason lands in the audit note"""
    status: ReservationStatus
    reason: str = Field(..., max_length=500)


class CancelRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)


class WebhookEventResponse(BaseModel):
    id: int
    provider: str
    event_id: str
    idempotency_key: str
    event_type: str
    processed: bool
    processing_started_at: datetime | None
    processed_at: datetime | None
    processing_error: str | None
    reservation_id: str | None
    created_at: datetime | None

    class Config:
        from_attributes = True


class CircuitBreakerStatusResponse(BaseModel):
    service: str
    state: str = Field(description="closed | open | half_open")
    failure_count: int
    success_count: int
    half_open_calls: int
    retry_after_seconds: float = Field(
        description="Seconds until a call is attempted again (0 when not open)"
    )


# ─── 1. Reservations ────────────────────────────────────────────────────────

@router.get(
    "/reservations",
    response_model=ReservationListResponse,
    summary="List reservations",
    description="Newest first, filtered by status and payment provider.",
    responses={200: {"description": "Page of reservations"}, **_AUTH_RESPONSES},
)
async def list_reservations(
    _: None = Depends(require_admin_api_key),
    db: AsyncSession = Depends(get_db),
    status: Optional[ReservationStatus] = Query(default=None, description="Reservation status"),
    provider: Optional[PaymentProvider] = Query(default=None, description="Payment provider"),
    limit: int = Query(default=50, ge=1, le=200, description="Page size"),
    offset: int = Query(default=0, ge=0, description="Rows to skip"),
) -> ReservationListResponse:
    items, total = await ReservationService(db).list_reservations(
        status=status,
        provider=provider,
        limit=limit,
        offset=offset,
    )
    return ReservationListResponse(
        items=[ReservationResponse.model_validate(r) for r in items],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get(
    "/reservations/mismatches",
    response_model=list[ReservationResponse],
    summary="Payment status mismatches",
    description=(
        "Pending reservations with a provider payment that were never confirmed "
        "within the hold window. Each one is money taken without a finished claim."
    ),
    responses={200: {"description": "Mismatched reservations, oldest first"}, **_AUTH_RESPONSES},
)
async def list_payment_mismatches(
    _: None = Depends(require_admin_api_key),
    db: AsyncSession = Depends(get_db),
):
    return await ReservationService(db).payment_mismatches()


@router.post(
    "/reservations/{reservation_id}/status",
    response_model=ReservationResponse,
    summary="Change reservation status",
    description=(
        "Manual override. Re-activating a reservation fails when another active "
        "reservation holds the puppy; leaving an active status releases it."
    ),
    responses={
        200: {"description": "Updated reservation"},
        400: {"description": "Reason too short"},
        404: {"description": "Reservation not found"},
        409: {"description": "Puppy held by another reservation"},
        **_AUTH_RESPONSES,
    },
)
async def update_reservation_status(
    reservation_id: str,
    payload: StatusUpdateRequest,
    _: None = Depends(require_admin_api_key),
    db: AsyncSession = Depends(get_db),
):
    reservation = await ReservationService(db).admin_update_status(
        reservation_id,
        payload.status,
        payload.reason,
    )
    logger.info(
        "Admin changed reservation status",
        extra_data={"reservation_id": reservation_id, "status": payload.status.value},
    )
    return reservation


@router.post(
    "/reservations/{reservation_id}/cancel",
    response_model=ReservationResponse,
    summary="Cancel a reservation",
    description="Cancels a pending or confirmed reservation and releases the puppy.",
    responses={
        200: {"description": "Cancelled reservation"},
        404: {"description": "Reservation not found"},
        409: {"description": "Reservation is not active"},
        **_AUTH_RESPONSES,
    },
)
async def cancel_reservation(
    reservation_id: str,
    payload: CancelRequest,
    _: None = Depends(require_admin_api_key),
    db: AsyncSession = Depends(get_db),
):
    return await ReservationService(db).cancel(reservation_id, payload.reason)


# ─── 2. Webhook ledger ──────────────────────────────────────────────────────

@router.get(
    "/webhook-events",
    response_model=list[WebhookEventResponse],
    summary="Webhook ledger",
    description=(
        "Recent ledger rows, newest first. With pending_only, the unprocessed "
        "events nobody is working on, oldest first."
    ),
    responses={200: {"description": "Ledger rows"}, **_AUTH_RESPONSES},
)
async def list_webhook_events(
    _: None = Depends(require_admin_api_key),
    db: AsyncSession = Depends(get_db),
    provider: Optional[PaymentProvider] = Query(default=None, description="Payment provider"),
    pending_only: bool = Query(default=False, description="Only unfinished events"),
    limit: int = Query(default=50, ge=1, le=200, description="Maximum rows"),
    offset: int = Query(default=0, ge=0, description="Rows to skip"),
):
    ledger = WebhookLedger(db)
    if pending_only:
        events = await ledger.get_pending_events(limit=limit)
        if provider:
            events = [e for e in events if e.provider == provider.value]
        return events
    return await ledger.list_events(
        provider=provider.value if provider else None,
        limit=limit,
        offset=offset,
    )


# ─── 3. Circuit breakers ────────────────────────────────────────────────────

def _cb_to_response(cb: CircuitBreaker) -> CircuitBreakerStatusResponse:
    snapshot = cb.snapshot()
    return CircuitBreakerStatusResponse(
        service=snapshot.service,
        state=snapshot.state.value,
        failure_count=snapshot.failure_count,
        success_count=snapshot.success_count,
        half_open_calls=snapshot.half_open_calls,
        retry_after_seconds=snapshot.retry_after_seconds,
    )


@router.get(
    "/circuit-breakers",
    response_model=list[CircuitBreakerStatusResponse],
    summary="Circuit breaker status",
    description="Current state of the alert, notification and PayPal circuit breakers.",
    responses={200: {"description": "Status per breaker"}, **_AUTH_RESPONSES},
)
async def get_circuit_breaker_status(
    _: None = Depends(require_admin_api_key),
) -> list[CircuitBreakerStatusResponse]:
    breakers = [
        get_alert_email_circuit_breaker(),
        get_alert_slack_circuit_breaker(),
        get_notification_email_circuit_breaker(),
        get_paypal_circuit_breaker(),
    ]
    return [_cb_to_response(cb) for cb in breakers]
