"""
Scenario 3 - PayPal capture, refund, and the puppy sold again

Covers:
- Capture reserves the puppy; the admin listing shows the reservation
- Refund cancels it with an audit note and releases the puppy
- A redelivered refund changes nothing
- A new buyer reserves the released puppy
"""
from decimal import Decimal

import pytest

from app.db.models.puppy import PuppyStatus
from app.db.models.reservation import PaymentProvider, ReservationStatus
from tests.conftest import ADMIN_HEADERS, build_capture_event, build_checkout_session_event, build_refund_event
from tests.scenarios.conftest import (
    assert_puppy_status,
    reservation_state,
    reservations_for,
    send_paypal,
    send_stripe,
)


@pytest.mark.scenario
class TestRefundFlow:

    async def test_refund_releases_puppy_for_next_buyer(
        self, test_client, db_session, puppy_factory, mock_paypal_client, webhook_alerts
    ):
        puppy = await puppy_factory(name="Luna")
        puppy_id = puppy.id

        captured = await send_paypal(test_client, build_capture_event(
            puppy_id, capture_id="CAPTURE-LUNA", order_id="ORDER-LUNA",
        ))
        reservation_id = captured["reservationId"]
        await assert_puppy_status(db_session, puppy_id, PuppyStatus.RESERVED)

        listing = await test_client.get(
            "/api/admin/reservations",
            params={"provider": "paypal"},
            headers=ADMIN_HEADERS,
        )
        assert listing.status_code == 200
        assert [r["id"] for r in listing.json()["items"]] == [reservation_id]

        refunded = await send_paypal(test_client, build_refund_event("CAPTURE-LUNA"))
        assert refunded["duplicate"] is False

        [reservation] = await reservations_for(db_session, puppy_id)
        assert reservation.status == ReservationStatus.CANCELLED
        assert reservation.notes.startswith("PayPal Order ORDER-LUNA")
        assert "Capture ID: CAPTURE-LUNA" in reservation.notes
        await assert_puppy_status(db_session, puppy_id, PuppyStatus.AVAILABLE)

        again = await send_paypal(test_client, build_refund_event("CAPTURE-LUNA"))
        assert again["duplicate"] is True
        [reservation] = await reservations_for(db_session, puppy_id)
        assert reservation.notes.count("Capture ID: CAPTURE-LUNA") == 1

        assert (await reservation_state(test_client, puppy_id))["can_reserve"] is True

        resold = await send_stripe(test_client, build_checkout_session_event(
            puppy_id, event_id="evt_luna_second", payment_intent="pi_luna_second",
            email="next@example.com",
        ))
        reservations = {r.id: r for r in await reservations_for(db_session, puppy_id)}
        assert len(reservations) == 2
        winner = reservations[resold["reservationId"]]
        assert winner.payment_provider == PaymentProvider.STRIPE
        assert winner.status == ReservationStatus.CONFIRMED
        assert winner.amount == Decimal("300.00")
        await assert_puppy_status(db_session, puppy_id, PuppyStatus.RESERVED)
        webhook_alerts.assert_not_called()

    async def test_admin_cancel_then_refund(
        self, test_client, db_session, puppy_factory, mock_paypal_client, webhook_alerts
    ):
        puppy = await puppy_factory()
        puppy_id = puppy.id
        captured = await send_paypal(test_client, build_capture_event(puppy_id, capture_id="CAPTURE-ADM"))

        cancelled = await test_client.post(
            f"/api/admin/reservations/{captured['reservationId']}/cancel",
            json={"reason": "buyer changed their mind"},
            headers=ADMIN_HEADERS,
        )
        assert cancelled.status_code == 200
        await assert_puppy_status(db_session, puppy_id, PuppyStatus.AVAILABLE)

        # The refund arrives after the operator already cancelled
        refunded = await send_paypal(test_client, build_refund_event("CAPTURE-ADM", event_id="WH-REFUND-ADM"))

        assert refunded["duplicate"] is False
        [reservation] = await reservations_for(db_session, puppy_id)
        assert reservation.status == ReservationStatus.CANCELLED
        assert "Cancelled: buyer changed their mind" in reservation.notes
        webhook_alerts.assert_not_called()
