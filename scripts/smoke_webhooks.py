"""
Smoke tests for a deployed instance.

Runs lightweight HTTP checks against a running app:
- GET /health and /health/ready
- POST /api/webhooks/stripe without a signature (must be rejected)
- POST /api/webhooks/stripe with a signed event type the app ignores
- GET /api/health/webhooks

The signed event is of a type the handler does not process, so nothing is
written to the ledger and no puppy changes state.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import os
import sys
import time
from pathlib import Path

import httpx

# allow running from any directory (e.g. `python scripts/smoke_webhooks.py` in a shell)
REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from app.core.config import settings  # noqa: E402
from app.core.logging import get_logger, setup_logging  # noqa: E402


logger = get_logger(__name__)

SMOKE_EVENT_TYPE = "smoke.test"


def _base_url() -> str:
    port = os.environ.get("PORT", "8000")
    return os.environ.get("BASE_URL", f"http://127.0.0.1:{port}").rstrip("/")


def _timeout_seconds() -> float:
    return float(os.environ.get("SMOKE_TIMEOUT_SECONDS", "10"))


def _stripe_event() -> bytes:
    return json.dumps({
        "id": f"evt_smoke_{int(time.time())}",
        "object": "event",
        "type": SMOKE_EVENT_TYPE,
        "data": {"object": {}},
    }).encode()


def _stripe_signature(body: bytes, secret: str) -> str:
    timestamp = int(time.time())
    signature = hmac.new(secret.encode(), f"{timestamp}.".encode() + body, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def _check_status(resp: httpx.Response, *expected: int) -> None:
    if resp.status_code not in expected:
        raise RuntimeError(
            f"Unexpected status {resp.status_code} for {resp.request.method} {resp.request.url}. "
            f"Body: {(resp.text or '')[:500]}"
        )


def main() -> None:
    setup_logging(level="INFO", json_format=False, app_name="puppy-reservations-smoke")

    base_url = _base_url()
    timeout = _timeout_seconds()

    logger.info("Starting smoke tests", extra_data={"base_url": base_url, "timeout_seconds": timeout})

    with httpx.Client(timeout=timeout) as client:
        resp = client.get(f"{base_url}/health")
        _check_status(resp, 200)

        resp = client.get(f"{base_url}/health/ready")
        _check_status(resp, 200)

        stripe_url = f"{base_url}/api/webhooks/stripe"
        body = _stripe_event()

        logger.info("Posting unsigned Stripe payload", extra_data={"url": stripe_url})
        resp = client.post(stripe_url, content=body, headers={"content-type": "application/json"})
        _check_status(resp, 400)

        if settings.STRIPE_WEBHOOK_SECRET:
            logger.info("Posting signed Stripe payload", extra_data={"url": stripe_url})
            resp = client.post(
                stripe_url,
                content=body,
                headers={
                    "content-type": "application/json",
                    "stripe-signature": _stripe_signature(body, settings.STRIPE_WEBHOOK_SECRET),
                },
            )
            _check_status(resp, 200)
        else:
            logger.warning("STRIPE_WEBHOOK_SECRET not set locally; skipping signed delivery")

        # 503 is a valid answer here: it reports recent failures, not a broken app
        resp = client.get(f"{base_url}/api/health/webhooks")
        _check_status(resp, 200, 503)
        logger.info("Webhook health", extra_data={"status_code": resp.status_code, "report": resp.json()})

    logger.info("Smoke tests completed successfully")


if __name__ == "__main__":
    main()
