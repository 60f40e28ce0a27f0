"""
Stripe Checkout webhook endpoint.

Stripe signs the raw body; the signature must be checked before the body is
parsed, so the route reads ``request.body()`` itself instead of declaring a
pydantic model.
"""
from fastapi import APIRouter, BackgroundTasks, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.webhooks.common import processing_response, unexpected_error_response
from app.core.config import settings
from app.core.exceptions import WebhookSignatureError
from app.core.logging import get_logger
from app.db.database import get_db
from app.domain.services.payments.stripe_handler import (
    alert_context,
    process_stripe_event,
    verify_stripe_signature,
)

logger = get_logger(__name__)

router = APIRouter()


@router.post(
    "/stripe",
    summary="Stripe webhook",
    description=(
        "Receives Stripe Checkout events. Verifies the Stripe-Signature header, "
        "records the event in the ledger and claims the puppy on a paid session."
    ),
    responses={
        200: {"description": "Event processed or already processed"},
        400: {"description": "Signature verification failed"},
        500: {"description": "Secret not configured or processing failed (Stripe retries)"},
    },
)
async def stripe_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    secret = settings.STRIPE_WEBHOOK_SECRET
    if not secret:
        logger.error("Stripe webhook received but STRIPE_WEBHOOK_SECRET is not configured")
        return JSONResponse(
            status_code=500,
            content={"error": "Stripe webhook secret is not configured"},
        )

    body = await request.body()
    try:
        event = verify_stripe_signature(
            body,
            request.headers.get("stripe-signature", ""),
            secret,
            tolerance_seconds=settings.STRIPE_SIGNATURE_TOLERANCE_SECONDS,
        )
    except WebhookSignatureError as exc:
        logger.warning(
            "Stripe webhook signature verification failed",
            extra_data={"reason": exc.message},
        )
        return JSONResponse(
            status_code=400,
            content={"error": f"Webhook signature verification failed: {exc.message}"},
        )

    try:
        result = await process_stripe_event(db, event)
    except Exception as exc:
        return unexpected_error_response("stripe", event, exc, background_tasks)

    return processing_response(
        "stripe",
        event.get("id") or "unknown",
        result,
        background_tasks,
        context=alert_context(event),
    )
