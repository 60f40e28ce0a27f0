"""
PayPal REST client

OAuth client-credentials token, webhook signature verification through
PayPal's verify-webhook-signature API, and order lookup. Every call goes
through the "paypal" circuit breaker.
"""
import time
from typing import Any, Optional

import httpx

from app.core.circuit_breaker import get_paypal_circuit_breaker
from app.core.config import settings
from app.core.exceptions import ConfigurationError, PayPalAPIError
from app.core.logging import get_logger

logger = get_logger(__name__)

# Headers PayPal sends with every webhook delivery
PAYPAL_SIGNATURE_HEADERS = (
    "paypal-transmission-id",
    "paypal-transmission-sig",
    "paypal-transmission-time",
    "paypal-cert-url",
    "paypal-auth-algo",
)

# Refresh a little before PayPal expires the token
_TOKEN_EXPIRY_MARGIN_SECONDS = 60
_REQUEST_TIMEOUT_SECONDS = 15.0


class PayPalClient:
    """Thin async client over the PayPal REST endpoints we need"""

    def __init__(
        self,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        base_url: Optional[str] = None,
    ):
        self.client_id = client_id if client_id is not None else settings.PAYPAL_CLIENT_ID
        self.client_secret = client_secret if client_secret is not None else settings.PAYPAL_CLIENT_SECRET
        self.base_url = (base_url or settings.paypal_api_base).rstrip("/")
        self._access_token: Optional[str] = None
        self._token_expires_at = 0.0

    async def get_access_token(self) -> str:
        """
        Client-credentials token, cached until shortly before expiry.

        Raises:
            ConfigurationError: client id/secret missing
            PayPalAPIError: token request rejected
        """
        if self._access_token and time.monotonic() < self._token_expires_at:
            return self._access_token

        if not self.client_id or not self.client_secret:
            raise ConfigurationError(
                "PAYPAL_CLIENT_ID",
                "PayPal client credentials are not configured",
            )

        async def _fetch() -> dict[str, Any]:
            async with httpx.AsyncClient(timeout=_REQUEST_TIMEOUT_SECONDS) as client:
                response = await client.post(
                    f"{self.base_url}/v1/oauth2/token",
                    auth=(self.client_id, self.client_secret),
                    data={"grant_type": "client_credentials"},
                    headers={"Accept": "application/json"},
                )
                if response.status_code != 200:
                    raise PayPalAPIError(
                        f"token request returned status {response.status_code}",
                        details={"status_code": response.status_code},
                    )
                return response.json()

        data = await get_paypal_circuit_breaker().execute(_fetch)
        token = data.get("access_token")
        if not token:
            raise PayPalAPIError("token response did not contain access_token")

        expires_in = int(data.get("expires_in") or 0)
        self._access_token = token
        self._token_expires_at = time.monotonic() + max(0, expires_in - _TOKEN_EXPIRY_MARGIN_SECONDS)
        return token

    async def _request(self, method: str, path: str, operation: str, **kwargs) -> dict[str, Any]:
        token = await self.get_access_token()

        async def _send() -> dict[str, Any]:
            async with httpx.AsyncClient(timeout=_REQUEST_TIMEOUT_SECONDS) as client:
                response = await client.request(
                    method,
                    f"{self.base_url}{path}",
                    headers={
                        "Authorization": f"Bearer {token}",
                        "Content-Type": "application/json",
                    },
                    **kwargs,
                )
                if not response.is_success:
                    raise PayPalAPIError(
                        f"{operation} returned status {response.status_code}",
                        details={
                            "status_code": response.status_code,
                            "response_text": response.text[:500],
                        },
                    )
                return response.json()

        return await get_paypal_circuit_breaker().execute(_send)

    async def verify_webhook_signature(
        self,
        headers: dict[str, str],
        webhook_event: dict[str, Any],
        webhook_id: str,
    ) -> bool:
        """
        Ask PayPal whether a delivery is authentic.

        Args:
            headers: the five paypal-* transmission headers (lowercase keys)

        Returns:
            True only for verification_status == "SUCCESS".
        """
        payload = {
            "auth_algo": headers["paypal-auth-algo"],
            "cert_url": headers["paypal-cert-url"],
            "transmission_id": headers["paypal-transmission-id"],
            "transmission_sig": headers["paypal-transmission-sig"],
            "transmission_time": headers["paypal-transmission-time"],
            "webhook_id": webhook_id,
            "webhook_event": webhook_event,
        }
        data = await self._request(
            "POST",
            "/v1/notifications/verify-webhook-signature",
            "verify-webhook-signature",
            json=payload,
        )
        status = data.get("verification_status")
        if status != "SUCCESS":
            logger.warning(
                "PayPal webhook signature rejected",
                extra_data={
                    "verification_status": status,
                    "transmission_id": headers["paypal-transmission-id"],
                },
            )
            return False
        return True

    async def get_order(self, order_id: str) -> dict[str, Any]:
        return await self._request("GET", f"/v2/checkout/orders/{order_id}", "get-order")


_client: Optional[PayPalClient] = None


def get_paypal_client() -> PayPalClient:
    """Process-wide client so the access token is reused"""
    global _client
    if _client is None:
        _client = PayPalClient()
    return _client
