"""
Stripe Gateway Service - Checkout session creation and webhook signature verification
"""

import asyncio
import json
import logging
from typing import Any, Dict, Optional, Union

import stripe

from config import settings
from exceptions import GatewayFailure

log = logging.getLogger(__name__)

# Seconds a signed webhook stays acceptable after Stripe timestamps it
WEBHOOK_TOLERANCE_SECONDS = 300


class StripeGateway:
    """Stripe Checkout and webhook verification through the official SDK"""

    def __init__(
        self,
        secret_key: Optional[str],
        webhook_secret: Optional[str],
        timeout: float = 30.0,
        tolerance: int = WEBHOOK_TOLERANCE_SECONDS,
    ):
        self.secret_key = (secret_key or "").strip()
        self.webhook_secret = (webhook_secret or "").strip()
        self.timeout = timeout
        self.tolerance = tolerance

    @classmethod
    def from_settings(cls) -> "StripeGateway":
        stripe.default_http_client = stripe.RequestsClient(timeout=settings.GATEWAY_TIMEOUT_SECONDS)
        stripe.max_network_retries = 0
        return cls(
            settings.stripe_secret_key,
            settings.stripe_webhook_secret,
            timeout=settings.GATEWAY_TIMEOUT_SECONDS,
        )

    async def create_checkout_session(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        Create a one-off payment Checkout Session.

        payload keys: amount_cents, currency, description, customer_email,
        success_url, cancel_url, metadata.
        Returns ``{"id": ..., "url": ...}``.
        """
        if not self.secret_key:
            raise GatewayFailure("Stripe secret key is not configured")

        params = {
            "mode": "payment",
            "success_url": payload.get("success_url", ""),
            "cancel_url": payload.get("cancel_url", ""),
            "line_items": [{
                "price_data": {
                    "currency": str(payload.get("currency", "AUD")).lower(),
                    "product_data": {"name": payload.get("description") or "Membership Payment"},
                    "unit_amount": int(payload.get("amount_cents", 0)),
                },
                "quantity": 1,
            }],
            "metadata": {key: str(value) for key, value in (payload.get("metadata") or {}).items()},
        }
        if payload.get("customer_email"):
            params["customer_email"] = payload["customer_email"]

        try:
            session = await asyncio.to_thread(
                stripe.checkout.Session.create, api_key=self.secret_key, **params
            )
        except stripe.StripeError as e:
            log.error(f"Stripe checkout session creation failed: {e}")
            raise GatewayFailure("Stripe checkout session creation failed") from e

        session_id = getattr(session, "id", None)
        if not session_id:
            log.error("Stripe returned a checkout session without an id")
            raise GatewayFailure("Stripe checkout session creation failed")
        return {"id": session_id, "url": getattr(session, "url", None)}

    def construct_verified_event(self, payload: Union[str, bytes], signature_header: Optional[str]) -> Optional[Dict[str, Any]]:
        """
        Verify the Stripe-Signature header and decode the event.

        Returns None for a missing secret, a malformed or stale header, a bad
        signature or a payload that is not a JSON object.
        """
        if isinstance(payload, bytes):
            try:
                payload = payload.decode("utf-8")
            except UnicodeDecodeError:
                return None
        if not self.webhook_secret or not signature_header or not payload:
            return None

        try:
            event = json.loads(payload)
        except ValueError:
            return None
        if not isinstance(event, dict):
            return None

        try:
            stripe.Webhook.construct_event(
                payload, signature_header, self.webhook_secret, tolerance=self.tolerance
            )
        except (ValueError, stripe.SignatureVerificationError) as e:
            log.warning(f"Stripe webhook rejected: {e}")
            return None
        return event
