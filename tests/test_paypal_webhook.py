"""
Tests for the PayPal webhook endpoint
"""
import json
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import httpx
import pytest
from sqlalchemy import select

from app.core.config import settings
from app.db.models.puppy import Puppy, PuppyStatus
from app.db.models.reservation import PaymentProvider, Reservation, ReservationStatus
from app.domain.services.notification_service import NotificationKind
from app.domain.services.payments.paypal_handler import parse_custom_id
from tests.conftest import PAYPAL_HEADERS, build_capture_event, build_refund_event

PAYPAL_URL = "/api/webhooks/paypal"


async def _post_event(test_client, event, headers=None):
    body = event if isinstance(event, (bytes, str)) else json.dumps(event)
    return await test_client.post(
        PAYPAL_URL,
        content=body,
        headers={"content-type": "application/json", **(PAYPAL_HEADERS if headers is None else headers)},
    )


async def _reservation(db_session, puppy_id: str) -> Reservation | None:
    result = await db_session.execute(
        select(Reservation)
        .where(Reservation.puppy_id == puppy_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def _puppy_status(db_session, puppy_id: str) -> PuppyStatus:
    result = await db_session.execute(select(Puppy.status).where(Puppy.id == puppy_id))
    return PuppyStatus(result.scalar_one())


@pytest.fixture
def alert_mock():
    with patch("app.api.webhooks.common.alert_on_failure", new_callable=AsyncMock) as mock:
        yield mock


class TestVerification:

    @pytest.mark.unit
    async def test_missing_webhook_id_returns_500(self, test_client, mock_paypal_client):
        with patch.object(settings, "PAYPAL_WEBHOOK_ID", ""):
            response = await _post_event(test_client, build_capture_event("p1"))

        assert response.status_code == 500
        mock_paypal_client.verify_webhook_signature.assert_not_called()

    @pytest.mark.unit
    async def test_missing_headers_returns_400(self, test_client, mock_paypal_client):
        headers = {k: v for k, v in PAYPAL_HEADERS.items() if k != "paypal-transmission-sig"}

        response = await _post_event(test_client, build_capture_event("p1"), headers=headers)

        assert response.status_code == 400
        assert response.json() == {"error": "Missing PayPal signature headers"}

    @pytest.mark.unit
    async def test_invalid_json_returns_400(self, test_client, mock_paypal_client):
        response = await _post_event(test_client, b"{not json")
        assert response.status_code == 400
        assert response.json() == {"error": "Invalid JSON payload"}

    @pytest.mark.unit
    async def test_failed_verification_returns_400(self, test_client, mock_paypal_client):
        mock_paypal_client.verify_webhook_signature.return_value = False

        response = await _post_event(test_client, build_capture_event("p1"))

        assert response.status_code == 400
        assert response.json() == {"error": "Invalid webhook signature"}

    @pytest.mark.unit
    async def test_verification_call_error_returns_400(self, test_client, mock_paypal_client):
        mock_paypal_client.verify_webhook_signature.side_effect = httpx.ConnectError("down")

        response = await _post_event(test_client, build_capture_event("p1"))

        assert response.status_code == 400

    @pytest.mark.unit
    async def test_verification_receives_headers_and_webhook_id(
        self, test_client, mock_paypal_client, puppy_factory
    ):
        puppy = await puppy_factory()
        event = build_capture_event(puppy.id)

        await _post_event(test_client, event)

        headers, sent_event, webhook_id = mock_paypal_client.verify_webhook_signature.await_args.args
        assert headers == PAYPAL_HEADERS
        assert sent_event == event
        assert webhook_id == "WH-TEST-0001"


class TestCaptureCompleted:

    @pytest.mark.unit
    async def test_capture_reserves_puppy(self, test_client, db_session, mock_paypal_client, puppy_factory):
        puppy = await puppy_factory()
        puppy_id = puppy.id

        response = await _post_event(test_client, build_capture_event(puppy_id))

        assert response.status_code == 200
        reservation = await _reservation(db_session, puppy_id)
        assert response.json()["reservationId"] == reservation.id
        assert reservation.status == ReservationStatus.CONFIRMED
        assert reservation.payment_provider == PaymentProvider.PAYPAL
        assert reservation.external_payment_id == "CAPTURE-1"
        assert reservation.amount == Decimal("300.00")
        assert await _puppy_status(db_session, puppy_id) == PuppyStatus.RESERVED

    @pytest.mark.unit
    async def test_redelivery_is_duplicate(self, test_client, db_session, mock_paypal_client, puppy_factory):
        puppy = await puppy_factory()
        event = build_capture_event(puppy.id)

        await _post_event(test_client, event)
        response = await _post_event(test_client, event)

        assert response.status_code == 200
        assert response.json()["duplicate"] is True

    @pytest.mark.unit
    async def test_payer_fetched_when_email_missing(
        self, test_client, db_session, mock_paypal_client, puppy_factory
    ):
        mock_paypal_client.get_order.return_value = {
            "payer": {
                "email_address": "payer@example.com",
                "name": {"given_name": "Pat", "surname": "Payer"},
            }
        }
        puppy = await puppy_factory()
        puppy_id = puppy.id

        response = await _post_event(
            test_client, build_capture_event(puppy_id, email=None, order_id="ORDER-1")
        )

        assert response.status_code == 200
        mock_paypal_client.get_order.assert_awaited_once_with("ORDER-1")
        reservation = await _reservation(db_session, puppy_id)
        assert reservation.customer_email == "payer@example.com"
        assert reservation.customer_name == "Pat Payer"
        assert reservation.notes == "PayPal Order ORDER-1"

    @pytest.mark.unit
    async def test_no_email_anywhere_fails(self, test_client, mock_paypal_client, puppy_factory, alert_mock):
        puppy = await puppy_factory()

        response = await _post_event(test_client, build_capture_event(puppy.id, email=None))

        assert response.status_code == 500
        assert response.json()["error"] == "Missing customer email"
        alert_mock.assert_awaited_once()

    @pytest.mark.unit
    async def test_capture_not_completed_fails(self, test_client, mock_paypal_client, puppy_factory, alert_mock):
        puppy = await puppy_factory()

        response = await _post_event(test_client, build_capture_event(puppy.id, status="PENDING"))

        assert response.status_code == 500
        assert "PENDING" in response.json()["error"]

    @pytest.mark.unit
    async def test_missing_puppy_fails(self, test_client, mock_paypal_client, alert_mock):
        response = await _post_event(test_client, build_capture_event(None))

        assert response.status_code == 500
        args = alert_mock.await_args.args
        assert args[:3] == ("paypal", "PAYMENT.CAPTURE.COMPLETED", "WH-CAPTURE-1")


class TestRefund:

    @pytest.mark.unit
    async def test_refund_cancels_and_releases(self, test_client, db_session, mock_paypal_client, puppy_factory):
        puppy = await puppy_factory()
        puppy_id = puppy.id
        await _post_event(test_client, build_capture_event(puppy_id))

        response = await _post_event(test_client, build_refund_event("CAPTURE-1"))

        assert response.status_code == 200
        reservation = await _reservation(db_session, puppy_id)
        assert reservation.status == ReservationStatus.CANCELLED
        assert "PayPal Refund" in reservation.notes
        assert "Capture ID: CAPTURE-1" in reservation.notes
        assert await _puppy_status(db_session, puppy_id) == PuppyStatus.AVAILABLE

    @pytest.mark.unit
    async def test_refund_redelivery_is_duplicate(self, test_client, mock_paypal_client, puppy_factory):
        puppy = await puppy_factory()
        await _post_event(test_client, build_capture_event(puppy.id))
        await _post_event(test_client, build_refund_event("CAPTURE-1"))

        response = await _post_event(test_client, build_refund_event("CAPTURE-1"))

        assert response.status_code == 200
        assert response.json()["duplicate"] is True

    @pytest.mark.unit
    async def test_refund_for_unknown_capture_fails(self, test_client, mock_paypal_client, alert_mock):
        response = await _post_event(test_client, build_refund_event("CAPTURE-UNKNOWN"))

        assert response.status_code == 500
        assert response.json()["error"] == "Reservation not found"

    @pytest.mark.unit
    async def test_refund_schedules_refund_emails(self, test_client, mock_paypal_client, puppy_factory):
        puppy = await puppy_factory(name="Bella")
        await _post_event(test_client, build_capture_event(puppy.id))

        with patch("app.api.webhooks.common.send_payment_notifications", new_callable=AsyncMock) as notify:
            response = await _post_event(test_client, build_refund_event("CAPTURE-1", value="150.00"))
            await _post_event(test_client, build_refund_event("CAPTURE-1", value="150.00"))

        assert response.status_code == 200
        notify.assert_awaited_once()
        notification = notify.await_args.args[0]
        assert notification.kind == NotificationKind.REFUND
        assert notification.provider == "paypal"
        assert notification.transaction_id == "REFUND-1"
        assert notification.amount == Decimal("150.00")
        assert notification.customer_email == "buyer@example.com"
        assert notification.puppy_name == "Bella"

    @pytest.mark.unit
    async def test_capture_schedules_deposit_emails(self, test_client, mock_paypal_client, puppy_factory):
        puppy = await puppy_factory()

        with patch("app.api.webhooks.common.send_payment_notifications", new_callable=AsyncMock) as notify:
            await _post_event(test_client, build_capture_event(puppy.id))

        notification = notify.await_args.args[0]
        assert notification.kind == NotificationKind.DEPOSIT
        assert notification.transaction_id == "CAPTURE-1"
        assert notification.amount == Decimal("300.00")


class TestOtherEvents:

    @pytest.mark.unit
    async def test_order_approved_recorded(self, test_client, mock_paypal_client):
        event = {"id": "WH-ORDER-1", "event_type": "CHECKOUT.ORDER.APPROVED", "resource": {"id": "ORDER-1"}}

        response = await _post_event(test_client, event)

        assert response.status_code == 200
        assert response.json()["duplicate"] is False

    @pytest.mark.unit
    async def test_unhandled_event_type(self, test_client, mock_paypal_client):
        event = {"id": "WH-OTHER-1", "event_type": "BILLING.SUBSCRIPTION.CREATED", "resource": {}}

        response = await _post_event(test_client, event)

        assert response.status_code == 200


class TestCustomId:

    @pytest.mark.unit
    @pytest.mark.parametrize("raw,expected", [
        ('{"puppy_id": "p1"}', {"puppy_id": "p1"}),
        ("not json", {}),
        ('["a"]', {}),
        (None, {}),
    ])
    def test_parse_custom_id(self, raw, expected):
        assert parse_custom_id(raw) == expected
