"""
Shared response handling for the payment provider webhooks.

Providers only look at the status code: 2xx stops retries, anything else
schedules a redelivery. Failures also raise an operator alert, sent after
the response so the provider is not kept waiting on Resend/Slack. A deposit
or refund that changed a reservation emails the owner and the customer the
same way.
"""
from typing import Any

from fastapi import BackgroundTasks
from fastapi.responses import JSONResponse

from app.core.logging import get_logger
from app.domain.services.alert_service import alert_on_failure, track_webhook_success
from app.domain.services.notification_service import send_payment_notifications
from app.domain.services.payments.processor import WebhookProcessingResult

logger = get_logger(__name__)


def processing_response(
    provider: str,
    event_id: str,
    result: WebhookProcessingResult,
    background_tasks: BackgroundTasks,
    context: dict[str, Any] | None = None,
) -> JSONResponse:
    """200 for success and duplicates, 500 (plus an alert) for failures"""
    if result.success:
        background_tasks.add_task(track_webhook_success, provider, result.event_type)
        if result.notification is not None and not result.duplicate:
            background_tasks.add_task(send_payment_notifications, result.notification)
        body: dict[str, Any] = {
            "received": True,
            "eventType": result.event_type,
            "duplicate": result.duplicate,
        }
        if result.reservation_id:
            body["reservationId"] = result.reservation_id
        return JSONResponse(status_code=200, content=body)

    error = result.error or "Unknown processing error"
    logger.error(
        "Webhook processing failed",
        extra_data={
            "provider": provider,
            "event_id": event_id,
            "event_type": result.event_type,
            "error": error,
            "error_code": result.error_code,
        },
    )
    background_tasks.add_task(
        alert_on_failure,
        provider,
        result.event_type or "unknown",
        event_id or "unknown",
        error,
        context,
    )
    return JSONResponse(
        status_code=500,
        content={"error": error, "eventType": result.event_type},
    )


def unexpected_error_response(
    provider: str,
    event: dict[str, Any] | None,
    exc: Exception,
    background_tasks: BackgroundTasks,
) -> JSONResponse:
    """500 for an exception that escaped the handler"""
    event = event or {}
    event_type = event.get("type") or event.get("event_type") or "unknown"
    event_id = event.get("id") or "unknown"
    logger.error(
        "Unexpected error while handling webhook",
        extra_data={"provider": provider, "event_id": event_id, "event_type": event_type},
        exc_info=True,
    )
    background_tasks.add_task(
        alert_on_failure,
        provider,
        event_type,
        event_id,
        f"Unexpected error: {exc}",
    )
    return JSONResponse(status_code=500, content={"error": "Internal server error"})
