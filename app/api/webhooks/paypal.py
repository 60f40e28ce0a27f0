"""
PayPal webhook endpoint.

PayPal deliveries are authenticated by calling PayPal back
(verify-webhook-signature) with the transmission headers and the event.
"""
import json

import httpx
from fastapi import APIRouter, BackgroundTasks, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.webhooks.common import processing_response, unexpected_error_response
from app.core.config import settings
from app.core.exceptions import AppException
from app.core.logging import get_logger
from app.db.database import get_db
from app.domain.services.payments.paypal_client import PAYPAL_SIGNATURE_HEADERS, get_paypal_client
from app.domain.services.payments.paypal_handler import alert_context, process_paypal_event

logger = get_logger(__name__)

router = APIRouter()


@router.post(
    "/paypal",
    summary="PayPal webhook",
    description=(
        "Receives PayPal payment events. Verifies the delivery with PayPal, "
        "records it in the ledger, claims the puppy on a completed capture and "
        "cancels the reservation on a refund."
    ),
    responses={
        200: {"description": "Event processed or already processed"},
        400: {"description": "Missing headers, malformed body or failed verification"},
        500: {"description": "Webhook ID not configured or processing failed (PayPal retries)"},
    },
)
async def paypal_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    webhook_id = settings.PAYPAL_WEBHOOK_ID
    if not webhook_id:
        logger.error("PayPal webhook received but PAYPAL_WEBHOOK_ID is not configured")
        return JSONResponse(
            status_code=500,
            content={"error": "PayPal webhook ID is not configured"},
        )

    headers = {name: request.headers.get(name) for name in PAYPAL_SIGNATURE_HEADERS}
    if not all(headers.values()):
        logger.warning(
            "PayPal webhook without signature headers",
            extra_data={"missing": [name for name, value in headers.items() if not value]},
        )
        return JSONResponse(
            status_code=400,
            content={"error": "Missing PayPal signature headers"},
        )

    try:
        event = json.loads(await request.body())
    except ValueError:
        return JSONResponse(status_code=400, content={"error": "Invalid JSON payload"})
    if not isinstance(event, dict):
        return JSONResponse(status_code=400, content={"error": "Invalid JSON payload"})

    try:
        verified = await get_paypal_client().verify_webhook_signature(headers, event, webhook_id)
    except (AppException, httpx.HTTPError) as exc:
        logger.error(
            "PayPal webhook verification call failed",
            extra_data={"error": str(exc), "transmission_id": headers["paypal-transmission-id"]},
        )
        verified = False

    if not verified:
        return JSONResponse(status_code=400, content={"error": "Invalid webhook signature"})

    try:
        result = await process_paypal_event(db, event)
    except Exception as exc:
        return unexpected_error_response("paypal", event, exc, background_tasks)

    return processing_response(
        "paypal",
        event.get("id") or "unknown",
        result,
        background_tasks,
        context=alert_context(event),
    )
