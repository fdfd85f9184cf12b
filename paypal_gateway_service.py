"""
PayPal Gateway Service - Orders API (create, capture, lookup) and webhook verification
"""

import logging
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional
from urllib.parse import quote

import httpx

from config import settings
from exceptions import GatewayFailure

log = logging.getLogger(__name__)

VERIFICATION_HEADERS = (
    ("transmission_id", "paypal-transmission-id"),
    ("transmission_time", "paypal-transmission-time"),
    ("cert_url", "paypal-cert-url"),
    ("auth_algo", "paypal-auth-algo"),
    ("transmission_sig", "paypal-transmission-sig"),
)


class PayPalGateway:
    """Thin client over the PayPal REST API using client-credentials OAuth"""

    def __init__(
        self,
        client_id: Optional[str],
        client_secret: Optional[str],
        webhook_id: Optional[str],
        base_url: str = "https://api-m.sandbox.paypal.com",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.client_id = (client_id or "").strip()
        self.client_secret = (client_secret or "").strip()
        self.webhook_id = (webhook_id or "").strip()
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    @classmethod
    def from_settings(cls, transport: Optional[httpx.AsyncBaseTransport] = None) -> "PayPalGateway":
        client_id, client_secret, webhook_id = settings.paypal_credentials
        return cls(
            client_id, client_secret, webhook_id,
            base_url=settings.paypal_base_url,
            timeout=settings.GATEWAY_TIMEOUT_SECONDS,
            transport=transport,
        )

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=self.transport)

    async def _access_token(self, client: httpx.AsyncClient) -> str:
        if not self.client_id or not self.client_secret:
            raise GatewayFailure("PayPal credentials are not configured")
        try:
            response = await client.post(
                "/v1/oauth2/token",
                data={"grant_type": "client_credentials"},
                auth=(self.client_id, self.client_secret),
            )
        except httpx.HTTPError as e:
            log.error(f"PayPal auth failed: {e}")
            raise GatewayFailure("PayPal auth failed") from e
        try:
            token = response.json().get("access_token")
        except (ValueError, AttributeError):
            token = None
        if not response.is_success or not token:
            log.error(f"Failed to fetch PayPal access token, status {response.status_code}")
            raise GatewayFailure("Failed to fetch PayPal access token")
        return token

    async def _request(self, method: str, path: str, body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        async with self._client() as client:
            token = await self._access_token(client)
            try:
                response = await client.request(
                    method, path, json=body, headers={"Authorization": f"Bearer {token}"}
                )
            except httpx.HTTPError as e:
                log.error(f"PayPal API request {method} {path} failed: {e}")
                raise GatewayFailure("PayPal API request failed") from e

        try:
            parsed = response.json()
        except ValueError:
            parsed = None
        if not isinstance(parsed, dict):
            log.error(f"Unexpected PayPal API response for {method} {path}")
            raise GatewayFailure("Unexpected PayPal API response")
        if not response.is_success:
            log.error(f"PayPal API {method} {path} returned {response.status_code}")
            raise GatewayFailure("PayPal API returned non-success status")
        return parsed

    async def create_order(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """payload keys: amount, currency, invoice_id, custom_id, description, return_url, cancel_url."""
        amount = Decimal(str(payload.get("amount", 0))).quantize(Decimal("0.01"))
        body = {
            "intent": "CAPTURE",
            "purchase_units": [{
                "amount": {
                    "currency_code": str(payload.get("currency", "AUD")).upper(),
                    "value": f"{amount:.2f}",
                },
                "invoice_id": payload.get("invoice_id", ""),
                "custom_id": payload.get("custom_id", ""),
                "description": payload.get("description", "Membership Payment"),
            }],
            "application_context": {
                "return_url": payload.get("return_url", ""),
                "cancel_url": payload.get("cancel_url", ""),
                "user_action": "PAY_NOW",
            },
        }
        return await self._request("POST", "/v2/checkout/orders", body)

    async def capture_order(self, order_id: str) -> Dict[str, Any]:
        return await self._request("POST", f"/v2/checkout/orders/{quote(order_id, safe='')}/capture", {})

    async def get_order(self, order_id: str) -> Dict[str, Any]:
        return await self._request("GET", f"/v2/checkout/orders/{quote(order_id, safe='')}")

    async def verify_webhook(self, headers: Mapping[str, str], event: Dict[str, Any]) -> bool:
        """Ask PayPal to verify the transmission signature; every transmission header is required."""
        if not self.webhook_id:
            return False
        lowered = {k.lower(): v for k, v in headers.items()}
        verification: Dict[str, Any] = {}
        for field, header in VERIFICATION_HEADERS:
            value = (lowered.get(header) or "").strip()
            if not value:
                return False
            verification[field] = value
        verification["webhook_id"] = self.webhook_id
        verification["webhook_event"] = event

        response = await self._request("POST", "/v1/notifications/verify-webhook-signature", verification)
        return str(response.get("verification_status", "")).upper() == "SUCCESS"
