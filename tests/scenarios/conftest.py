"""
Fixtures and helpers for end-to-end scenario tests.

Provides:
- Short send helpers for the Stripe and PayPal webhooks
- Storefront and cron calls
- DB assertions (puppy status, reservations, ledger rows)
"""
import json
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select

from app.db.models.puppy import Puppy, PuppyStatus
from app.db.models.reservation import Reservation
from app.db.models.webhook_event import WebhookEvent
from tests.conftest import CRON_HEADERS, PAYPAL_HEADERS, sign_stripe_payload


# ============================================================================
# Send helpers
# ============================================================================

async def send_stripe(client, event: dict, *, expected_status: int = 200) -> dict:
    """Signed Stripe delivery; asserts the status and returns the JSON body"""
    body = json.dumps(event).encode()
    resp = await client.post(
        "/api/webhooks/stripe",
        content=body,
        headers={"content-type": "application/json", "stripe-signature": sign_stripe_payload(body)},
    )
    assert resp.status_code == expected_status, f"Stripe webhook returned {resp.status_code}: {resp.text}"
    return resp.json()


async def send_paypal(client, event: dict, *, expected_status: int = 200) -> dict:
    """PayPal delivery; verification is mocked by mock_paypal_client"""
    resp = await client.post(
        "/api/webhooks/paypal",
        content=json.dumps(event),
        headers={"content-type": "application/json", **PAYPAL_HEADERS},
    )
    assert resp.status_code == expected_status, f"PayPal webhook returned {resp.status_code}: {resp.text}"
    return resp.json()


async def reservation_state(client, puppy_id: str) -> dict:
    resp = await client.get(f"/api/puppies/{puppy_id}/reservation-state")
    assert resp.status_code == 200, resp.text
    return resp.json()


async def run_expire_sweep(client) -> int:
    resp = await client.post("/api/cron/expire-reservations", headers=CRON_HEADERS)
    assert resp.status_code == 200, resp.text
    return resp.json()["expired"]


# ============================================================================
# DB assertions
# ============================================================================

async def assert_puppy_status(db_session, puppy_id: str, expected: PuppyStatus) -> Puppy:
    result = await db_session.execute(
        select(Puppy).where(Puppy.id == puppy_id).execution_options(populate_existing=True)
    )
    puppy = result.scalar_one()
    assert puppy.status == expected, f"Puppy {puppy_id} is {puppy.status}, expected {expected}"
    return puppy


async def reservations_for(db_session, puppy_id: str) -> list[Reservation]:
    result = await db_session.execute(
        select(Reservation)
        .where(Reservation.puppy_id == puppy_id)
        .order_by(Reservation.created_at)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def ledger_rows(db_session, provider: str) -> list[WebhookEvent]:
    result = await db_session.execute(
        select(WebhookEvent)
        .where(WebhookEvent.provider == provider)
        .order_by(WebhookEvent.id)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def webhook_alerts():
    """Alerts the webhook routes schedule; no channel is contacted"""
    with patch("app.api.webhooks.common.alert_on_failure", new_callable=AsyncMock) as mock:
        yield mock
