"""
Tests for webhook failure alerts: throttling, channel isolation, message content
"""
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from httpx import Response
from redis.exceptions import RedisError

from app.core.config import settings
from app.domain.services.alert_service import (
    WebhookAlert,
    alert_on_failure,
    build_email_html,
    build_email_subject,
    build_slack_payload,
)

SLACK_URL = "https://hooks.slack.test/T000/B000/XXX"


def _response(status_code: int) -> MagicMock:
    response = MagicMock(spec=Response)
    response.status_code = status_code
    response.is_success = 200 <= status_code < 300
    return response


class TestAlertOnFailure:

    @pytest.mark.unit
    async def test_sends_to_both_channels(self, alert_channels, mock_alert_http):
        sent = await alert_on_failure(
            "stripe", "checkout.session.completed", "evt_1", "boom",
            {"puppy_id": "p1", "customer_email": "buyer@example.com"},
        )

        assert sent is True
        urls = [call.args[0] for call in mock_alert_http.post.call_args_list]
        assert settings.RESEND_API_URL in urls
        assert SLACK_URL in urls

    @pytest.mark.unit
    async def test_email_request(self, alert_channels, mock_alert_http):
        await alert_on_failure("paypal", "PAYMENT.CAPTURE.COMPLETED", "WH-1", "boom")

        email_call = next(
            call for call in mock_alert_http.post.call_args_list
            if call.args[0] == settings.RESEND_API_URL
        )
        assert email_call.kwargs["headers"]["Authorization"] == "Bearer re_test_key"
        assert email_call.kwargs["json"]["to"] == ["owner@example.com"]
        assert email_call.kwargs["json"]["subject"] == "Webhook Error: PAYPAL - PAYMENT.CAPTURE.COMPLETED"

    @pytest.mark.unit
    async def test_throttled_within_window(self, alert_channels, mock_alert_http):
        assert await alert_on_failure("stripe", "checkout.session.completed", "evt_1", "boom")
        calls_after_first = mock_alert_http.post.call_count

        assert await alert_on_failure("stripe", "checkout.session.completed", "evt_2", "boom") is False
        assert mock_alert_http.post.call_count == calls_after_first

    @pytest.mark.unit
    async def test_throttle_is_per_provider_and_type(self, alert_channels, mock_alert_http):
        assert await alert_on_failure("stripe", "checkout.session.completed", "evt_1", "boom")
        assert await alert_on_failure("stripe", "checkout.session.async_payment_succeeded", "evt_2", "boom")
        assert await alert_on_failure("paypal", "checkout.session.completed", "WH-1", "boom")

    @pytest.mark.unit
    async def test_one_channel_failure_does_not_block_the_other(self, alert_channels, mock_alert_http):
        async def _post(url, **kwargs):
            return _response(500 if url == SLACK_URL else 200)

        mock_alert_http.post = AsyncMock(side_effect=_post)

        sent = await alert_on_failure("stripe", "checkout.session.completed", "evt_1", "boom")

        assert sent is True
        urls = [call.args[0] for call in mock_alert_http.post.call_args_list]
        assert settings.RESEND_API_URL in urls
        assert SLACK_URL in urls

    @pytest.mark.unit
    async def test_network_error_is_swallowed(self, alert_channels, mock_alert_http):
        mock_alert_http.post = AsyncMock(side_effect=OSError("connection refused"))
        assert await alert_on_failure("stripe", "checkout.session.completed", "evt_1", "boom") is True

    @pytest.mark.unit
    async def test_no_channel_configured(self, mock_alert_http):
        assert await alert_on_failure("stripe", "checkout.session.completed", "evt_1", "boom") is False
        mock_alert_http.post.assert_not_called()

    @pytest.mark.unit
    async def test_email_needs_recipients(self, mock_alert_http):
        with patch.object(settings, "RESEND_API_KEY", "re_test_key"), \
             patch.object(settings, "ALERT_EMAILS", ""), \
             patch.object(settings, "OWNER_EMAIL", ""):
            assert await alert_on_failure("stripe", "x", "evt_1", "boom") is False


class TestRedisThrottle:

    @pytest.mark.unit
    async def test_redis_backend_sets_key(self, alert_channels, mock_alert_http, fake_redis):
        with patch.object(settings, "ALERT_THROTTLE_BACKEND", "redis"):
            assert await alert_on_failure("stripe", "x", "evt_1", "boom")
            assert await alert_on_failure("stripe", "x", "evt_2", "boom") is False

        assert await fake_redis.get("alert_throttle:stripe:x") == "1"
        assert fake_redis._ttls["alert_throttle:stripe:x"] == settings.ALERT_THROTTLE_MINUTES * 60

    @pytest.mark.unit
    async def test_redis_failure_falls_back_to_memory(self, alert_channels, mock_alert_http):
        async def _broken_redis():
            raise RedisError("down")

        with patch.object(settings, "ALERT_THROTTLE_BACKEND", "redis"), \
             patch("app.domain.services.alert_service.get_redis", _broken_redis):
            assert await alert_on_failure("stripe", "x", "evt_1", "boom")
            assert await alert_on_failure("stripe", "x", "evt_2", "boom") is False


class TestMessages:

    @pytest.mark.unit
    def test_email_html_escapes_values(self):
        alert = WebhookAlert(
            provider="stripe",
            event_type="checkout.session.completed",
            event_id="evt_<script>",
            error="<img src=x onerror=alert(1)>",
            customer_email="buyer@example.com",
        )

        html = build_email_html(alert)

        assert "<script>" not in html
        assert "<img src=x" not in html
        assert "&lt;img" in html
        assert "buyer@example.com" in html

    @pytest.mark.unit
    def test_subject(self):
        alert = WebhookAlert(provider="stripe", event_type="checkout.session.completed", event_id="e", error="x")
        assert build_email_subject(alert) == "Webhook Error: STRIPE - checkout.session.completed"

    @pytest.mark.unit
    def test_slack_payload(self):
        alert = WebhookAlert(
            provider="paypal",
            event_type="PAYMENT.CAPTURE.COMPLETED",
            event_id="WH-1",
            error="boom",
            customer_email="buyer@example.com",
        )

        payload = build_slack_payload(alert)

        assert payload["text"] == "Webhook Error: PAYPAL - PAYMENT.CAPTURE.COMPLETED"
        assert payload["blocks"][0]["type"] == "header"
        assert any("buyer@example.com" in str(block) for block in payload["blocks"])
        assert payload["blocks"][-1]["elements"][0]["url"].endswith("/api/health/webhooks")
