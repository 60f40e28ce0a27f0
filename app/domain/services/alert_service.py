"""
Alert Service - operator alerts for failed webhook processing

Sends an email (Resend HTTP API) and a Slack message (incoming webhook) when a
payment event could not be processed. Alerting is best effort: channel
failures are logged and never reach the webhook response.

Throttling:
- one alert per provider:event_type per ALERT_THROTTLE_MINUTES (default 15)
- the throttle mark is set before sending, so a failing channel still counts
- backend "memory" (per process, resets on restart) or "redis" (SET NX EX)
"""
import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

import httpx
from redis.exceptions import RedisError

from app.core.circuit_breaker import (
    get_alert_email_circuit_breaker,
    get_alert_slack_circuit_breaker,
)
from app.core.config import settings
from app.core.exceptions import AlertChannelError
from app.core.logging import get_logger, mask_email
from app.core.redis_client import get_redis
from app.core.validation import TextSanitizer

logger = get_logger(__name__)

_THROTTLE_PREFIX = "alert_throttle"

# provider:event_type -> monotonic time of the last alert
_last_alert_at: dict[str, float] = {}


@dataclass
class WebhookAlert:
    """Everything an alert message shows"""
    provider: str
    event_type: str
    event_id: str
    error: str
    puppy_id: Optional[str] = None
    customer_email: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def throttle_key(self) -> str:
        return f"{self.provider}:{self.event_type}"


def reset_alert_throttle() -> None:
    """Forget every in-memory throttle mark"""
    _last_alert_at.clear()


def _throttle_seconds() -> int:
    return settings.ALERT_THROTTLE_MINUTES * 60


def _acquire_memory_throttle(key: str) -> bool:
    now = time.monotonic()
    last = _last_alert_at.get(key)
    if last is not None and now - last < _throttle_seconds():
        return False
    _last_alert_at[key] = now
    return True


async def _acquire_throttle(key: str) -> bool:
    """True when an alert for ``key`` may be sent now (and marks it sent)"""
    if settings.ALERT_THROTTLE_BACKEND == "redis":
        try:
            redis = await get_redis()
            acquired = await redis.set(
                f"{_THROTTLE_PREFIX}:{key}", "1", nx=True, ex=_throttle_seconds()
            )
            return bool(acquired)
        except (RedisError, OSError) as e:
            logger.warning(
                "Redis throttle unavailable, using in-memory throttle",
                extra_data={"throttle_key": key, "error": str(e)},
            )
    return _acquire_memory_throttle(key)


def _health_url() -> str:
    return f"{settings.SITE_URL.rstrip('/')}/api/health/webhooks"


def build_email_subject(alert: WebhookAlert) -> str:
    return f"Webhook Error: {alert.provider.upper()} - {alert.event_type}"


def build_email_html(alert: WebhookAlert) -> str:
    """HTML body; every value that came from outside is escaped"""
    esc = TextSanitizer.sanitize_for_html
    provider = esc(alert.provider.upper())

    rows = [
        ("Provider", provider),
        ("Event Type", esc(alert.event_type)),
        ("Event ID", esc(alert.event_id)),
        ("Timestamp", esc(alert.timestamp.isoformat())),
    ]
    if alert.puppy_id:
        rows.append(("Puppy ID", esc(alert.puppy_id)))
    if alert.customer_email:
        rows.append(("Customer Email", esc(alert.customer_email)))

    fields = "\n".join(
        f'<div class="field"><span class="label">{label}:</span> '
        f'<span class="value">{value}</span></div>'
        for label, value in rows
    )

    return f"""<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <title>Webhook Error Alert</title>
</head>
<body style="font-family: Arial, sans-serif; color: #333;">
    <h1>Webhook Processing Error</h1>
    <p>A webhook event failed to process successfully.</p>
    <div style="background: #fee2e2; border-left: 4px solid #dc2626; padding: 15px;">
        <strong>Error:</strong> {esc(alert.error)}
    </div>
    <h2>Event Details</h2>
    {fields}
    <h2>Next Steps</h2>
    <ol>
        <li>Check the <a href="{esc(_health_url())}">webhook health endpoint</a></li>
        <li>Review the webhook_events ledger for this event</li>
        <li>Verify the {provider} webhook configuration</li>
        <li>If a customer payment was affected, contact the customer: {esc(alert.customer_email or "N/A")}</li>
    </ol>
    <p style="font-size: 12px; color: #666;">Automated alert from {esc(settings.APP_NAME)} webhook monitoring.</p>
</body>
</html>
"""


def build_slack_payload(alert: WebhookAlert) -> dict[str, Any]:
    blocks: list[dict[str, Any]] = [
        {
            "type": "header",
            "text": {"type": "plain_text", "text": "Webhook Processing Error"},
        },
        {
            "type": "section",
            "fields": [
                {"type": "mrkdwn", "text": f"*Provider:*\n{alert.provider.upper()}"},
                {"type": "mrkdwn", "text": f"*Event Type:*\n{alert.event_type}"},
                {"type": "mrkdwn", "text": f"*Event ID:*\n`{alert.event_id}`"},
                {"type": "mrkdwn", "text": f"*Timestamp:*\n{alert.timestamp.isoformat()}"},
            ],
        },
        {
            "type": "section",
            "text": {"type": "mrkdwn", "text": f"*Error:*\n```{alert.error}```"},
        },
    ]
    if alert.customer_email:
        blocks.append({
            "type": "section",
            "text": {"type": "mrkdwn", "text": f"*Customer Email:* {alert.customer_email}"},
        })
    blocks.append({
        "type": "actions",
        "elements": [
            {
                "type": "button",
                "text": {"type": "plain_text", "text": "View Health Check"},
                "url": _health_url(),
            }
        ],
    })
    return {
        "text": f"Webhook Error: {alert.provider.upper()} - {alert.event_type}",
        "blocks": blocks,
    }


async def send_email_alert(alert: WebhookAlert) -> None:
    """
    Send through Resend.

    Raises:
        AlertChannelError: non-2xx response
        CircuitBreakerOpenError: Resend recently failing
    """
    payload = {
        "from": settings.RESEND_FROM_EMAIL,
        "to": settings.alert_recipients,
        "subject": build_email_subject(alert),
        "html": build_email_html(alert),
    }
    headers = {"Authorization": f"Bearer {settings.RESEND_API_KEY}"}

    async def _send():
        async with httpx.AsyncClient(timeout=settings.ALERT_HTTP_TIMEOUT_SECONDS) as client:
            response = await client.post(settings.RESEND_API_URL, json=payload, headers=headers)
            if not response.is_success:
                raise AlertChannelError(
                    "email",
                    f"Resend returned status {response.status_code}",
                    details={"status_code": response.status_code},
                )

    await get_alert_email_circuit_breaker().execute(_send)


async def send_slack_alert(alert: WebhookAlert) -> None:
    """
    Post to the Slack incoming webhook.

    Raises:
        AlertChannelError: non-2xx response
        CircuitBreakerOpenError: Slack recently failing
    """
    payload = build_slack_payload(alert)

    async def _send():
        async with httpx.AsyncClient(timeout=settings.ALERT_HTTP_TIMEOUT_SECONDS) as client:
            response = await client.post(settings.SLACK_WEBHOOK_URL, json=payload)
            if not response.is_success:
                raise AlertChannelError(
                    "slack",
                    f"Slack webhook returned status {response.status_code}",
                    details={"status_code": response.status_code},
                )

    await get_alert_slack_circuit_breaker().execute(_send)


async def alert_on_failure(
    provider: str,
    event_type: str,
    event_id: str,
    error: str,
    context: Optional[dict[str, Any]] = None,
) -> bool:
    """
    Alert operators that a webhook event failed.

    Args:
        context: optional puppy_id / customer_email shown in the message

    Returns:
        True when the alert went out to at least one configured channel
        (individual channels may still have failed), False when throttled or
        when no channel is configured.
    """
    context = context or {}
    alert = WebhookAlert(
        provider=provider,
        event_type=event_type,
        event_id=event_id,
        error=error,
        puppy_id=context.get("puppy_id"),
        customer_email=context.get("customer_email"),
    )

    if not await _acquire_throttle(alert.throttle_key):
        logger.info("Alert throttled", extra_data={"throttle_key": alert.throttle_key})
        return False

    channels = []
    if settings.RESEND_API_KEY and settings.alert_recipients:
        channels.append(("email", send_email_alert(alert)))
    if settings.SLACK_WEBHOOK_URL:
        channels.append(("slack", send_slack_alert(alert)))

    if not channels:
        logger.warning(
            "Webhook failure alert not sent: no alert channel configured",
            extra_data={"throttle_key": alert.throttle_key, "event_id": event_id},
        )
        return False

    results = await asyncio.gather(*(coro for _, coro in channels), return_exceptions=True)

    for (channel, _), result in zip(channels, results):
        if isinstance(result, BaseException):
            logger.error(
                "Alert channel failed",
                extra_data={
                    "channel": channel,
                    "throttle_key": alert.throttle_key,
                    "error": str(result),
                },
            )
        else:
            logger.info(
                "Alert sent",
                extra_data={
                    "channel": channel,
                    "throttle_key": alert.throttle_key,
                    "customer_email": mask_email(alert.customer_email or ""),
                },
            )
    return True


async def track_webhook_success(provider: str, event_type: str) -> None:
    """Success counter hook; logs only"""
    logger.info(
        "Webhook processed",
        extra_data={"provider": provider, "event_type": event_type},
    )
