"""
Gateway Payment Service - Member portal checkout flows and gateway webhooks

All paths end in PaymentActivationService.reconcile once the subscription id,
amount and currency have been pulled out of a verified gateway payload.
"""

import json
import logging
import re
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

import crud
from activity_log_service import ActivityLogger
from config import MembershipPolicy
from exceptions import AmountMismatch, GatewayFailure, InvalidState, NotFound
from models import Member, PaymentStatus, Subscription, SubscriptionStatus, User
from payment_activation_service import PaymentActivationService, to_money
from paypal_gateway_service import PayPalGateway
from schemas import ReconcileResult
from ses_service import Mailer
from stripe_gateway_service import StripeGateway

log = logging.getLogger(__name__)

INVOICE_PREFIX = "IEI-SUB-"
INVOICE_PATTERN = re.compile(r"IEI-SUB-(\d+)")
PAYABLE_STATUSES = (
    SubscriptionStatus.PENDING_PAYMENT.value,
    SubscriptionStatus.OVERDUE.value,
    SubscriptionStatus.LAPSED.value,
)
ACK = {"ok": True}


def invoice_id_for(subscription_id: int) -> str:
    return f"{INVOICE_PREFIX}{subscription_id}"


def subscription_id_from_invoice(invoice_id: Optional[str]) -> int:
    match = INVOICE_PATTERN.search(invoice_id or "")
    return int(match.group(1)) if match else 0


def _positive_int(value: Any) -> int:
    try:
        number = int(str(value).strip())
    except (TypeError, ValueError):
        return 0
    return number if number > 0 else 0


def extract_paypal_capture_details(capture: Dict[str, Any], default_currency: str) -> Dict[str, Any]:
    """Pull subscription id, amount, currency and capture id out of a capture response."""
    units = capture.get("purchase_units") or [{}]
    unit = units[0] if isinstance(units[0], dict) else {}
    captures = (unit.get("payments") or {}).get("captures") or [{}]
    first_capture = captures[0] if isinstance(captures[0], dict) else {}

    subscription_id = _positive_int(unit.get("custom_id")) or subscription_id_from_invoice(unit.get("invoice_id"))
    amount = (first_capture.get("amount") or unit.get("amount") or {})
    return {
        "subscription_id": subscription_id,
        "amount": to_money(amount.get("value", 0)),
        "currency": str(amount.get("currency_code") or default_currency).upper(),
        "reference": str(first_capture.get("id") or capture.get("id") or ""),
    }


class GatewayPaymentService:
    """Member-facing checkout, PayPal order/capture and webhook handling"""

    @staticmethod
    async def payment_context(db: AsyncSession, user: User) -> Tuple[Member, Subscription, Decimal]:
        """The member's earliest unpaid subscription and its outstanding amount."""
        member = await crud.get_member_by_user(db, user.id)
        if member is None:
            raise NotFound("No membership record for this account")
        result = await db.execute(
            select(Subscription)
            .where(Subscription.member_id == member.id, Subscription.status.in_(PAYABLE_STATUSES))
            .order_by(Subscription.due_date, Subscription.id)
            .limit(1)
            .execution_options(populate_existing=True)
        )
        subscription = result.scalar_one_or_none()
        if subscription is None:
            raise InvalidState("There is no subscription awaiting payment")
        outstanding = max(Decimal("0.00"), to_money(subscription.amount_due) - to_money(subscription.amount_paid))
        if outstanding <= 0:
            raise InvalidState("There is no outstanding balance")
        return member, subscription, outstanding

    @staticmethod
    async def start_stripe_checkout(
        db: AsyncSession,
        user: User,
        policy: MembershipPolicy,
        stripe: StripeGateway,
    ) -> Dict[str, Any]:
        if not policy.method_enabled("stripe_checkout"):
            raise InvalidState("Card checkout is disabled")
        member, subscription, outstanding = await GatewayPaymentService.payment_context(db, user)

        try:
            session = await stripe.create_checkout_session({
                "amount_cents": int((outstanding * 100).to_integral_value()),
                "currency": policy.currency,
                "description": "Membership Payment",
                "customer_email": user.email,
                "success_url": f"{policy.portal_url}?payment=success",
                "cancel_url": f"{policy.portal_url}?payment=cancelled",
                "metadata": {
                    "subscription_id": subscription.id,
                    "member_id": member.id,
                    "user_id": user.id,
                },
            })
        except GatewayFailure:
            await ActivityLogger.log_member_event(db, member.id, "stripe_checkout_create_failed", {
                "subscription_id": subscription.id,
            }, user.id, member.application_id, commit=True)
            raise

        await PaymentActivationService.record_payment_attempt(
            db, member, subscription.id, "stripe", "stripe", session["id"],
            PaymentStatus.PENDING, outstanding, policy.currency,
        )
        await db.commit()
        log.info(f"Stripe checkout session {session['id']} created for subscription {subscription.id}")
        return session

    @staticmethod
    async def create_paypal_order(
        db: AsyncSession,
        user: User,
        policy: MembershipPolicy,
        paypal: PayPalGateway,
    ) -> Dict[str, Any]:
        if not policy.method_enabled("paypal_smart_buttons"):
            raise InvalidState("PayPal is disabled")
        member, subscription, outstanding = await GatewayPaymentService.payment_context(db, user)

        try:
            order = await paypal.create_order({
                "amount": outstanding,
                "currency": policy.currency,
                "invoice_id": invoice_id_for(subscription.id),
                "custom_id": str(subscription.id),
                "description": "Membership Payment",
                "return_url": f"{policy.portal_url}?payment=success",
                "cancel_url": f"{policy.portal_url}?payment=cancelled",
            })
            if not order.get("id"):
                raise GatewayFailure("PayPal returned an order without an id")
        except GatewayFailure:
            await ActivityLogger.log_member_event(db, member.id, "paypal_order_create_failed", {
                "subscription_id": subscription.id,
            }, user.id, member.application_id, commit=True)
            raise

        await PaymentActivationService.record_payment_attempt(
            db, member, subscription.id, "paypal", "paypal", order["id"],
            PaymentStatus.PENDING, outstanding, policy.currency,
        )
        await db.commit()
        log.info(f"PayPal order {order['id']} created for subscription {subscription.id}")
        return order

    @staticmethod
    async def _hydrate_from_order(paypal: PayPalGateway, order_id: str, details: Dict[str, Any]) -> Dict[str, Any]:
        order = await paypal.get_order(order_id)
        units = order.get("purchase_units") or [{}]
        unit = units[0] if isinstance(units[0], dict) else {}
        if not details["subscription_id"]:
            details["subscription_id"] = (
                _positive_int(unit.get("custom_id")) or subscription_id_from_invoice(unit.get("invoice_id"))
            )
        amount = unit.get("amount") or {}
        if details["amount"] <= 0:
            details["amount"] = to_money(amount.get("value", 0))
        if not details["currency"]:
            details["currency"] = str(amount.get("currency_code") or "").upper()
        return details

    @staticmethod
    async def capture_paypal_order(
        db: AsyncSession,
        user: User,
        order_id: str,
        policy: MembershipPolicy,
        mailer: Mailer,
        paypal: PayPalGateway,
    ) -> ReconcileResult:
        order_id = (order_id or "").strip()
        if not order_id:
            raise InvalidState("Order ID is required")
        member, _subscription, _outstanding = await GatewayPaymentService.payment_context(db, user)

        try:
            capture = await paypal.capture_order(order_id)
        except GatewayFailure:
            await ActivityLogger.log_member_event(db, member.id, "paypal_capture_failed", {
                "order_id": order_id,
            }, user.id, member.application_id, commit=True)
            raise

        if str(capture.get("status", "")).upper() != "COMPLETED":
            await ActivityLogger.log_member_event(db, member.id, "paypal_capture_not_completed", {
                "order_id": order_id,
                "status": capture.get("status"),
            }, user.id, member.application_id, commit=True)
            raise InvalidState("Payment was not completed")

        details = extract_paypal_capture_details(capture, policy.currency)
        if not details["subscription_id"]:
            details = await GatewayPaymentService._hydrate_from_order(paypal, order_id, details)

        return await PaymentActivationService.reconcile(
            db, details["subscription_id"], details["amount"], details["currency"], "paypal",
            details["reference"], policy, mailer, actor_id=user.id, meta={"source": "paypal_capture"},
        )

    @staticmethod
    async def _reconcile_from_webhook(
        db: AsyncSession,
        details: Dict[str, Any],
        gateway: str,
        source: str,
        policy: MembershipPolicy,
        mailer: Mailer,
    ) -> None:
        try:
            await PaymentActivationService.reconcile(
                db, details["subscription_id"], details["amount"], details["currency"] or policy.currency,
                gateway, details["reference"], policy, mailer, meta={"source": source},
            )
        except (NotFound, AmountMismatch, InvalidState) as e:
            # Redelivery cannot fix these; the audit trail and staff take over
            log.warning(f"{source} for subscription {details['subscription_id']} not applied: {e.message}")

    @staticmethod
    async def handle_stripe_webhook(
        db: AsyncSession,
        raw_payload: bytes,
        signature: Optional[str],
        policy: MembershipPolicy,
        mailer: Mailer,
        stripe: StripeGateway,
    ) -> Dict[str, Any]:
        event = stripe.construct_verified_event(raw_payload, signature)
        if event is None:
            log.warning("Ignoring Stripe webhook that failed verification")
            return ACK
        if event.get("type") != "checkout.session.completed":
            return ACK

        session = (event.get("data") or {}).get("object") or {}
        metadata = session.get("metadata") or {}
        subscription_id = _positive_int(metadata.get("subscription_id"))
        if not subscription_id or session.get("payment_status") != "paid":
            return ACK

        details = {
            "subscription_id": subscription_id,
            "amount": to_money(Decimal(_positive_int(session.get("amount_total"))) / 100),
            "currency": str(session.get("currency") or policy.currency).upper(),
            "reference": str(session.get("id") or ""),
        }
        await GatewayPaymentService._reconcile_from_webhook(db, details, "stripe", "stripe_webhook", policy, mailer)
        return ACK

    @staticmethod
    async def handle_paypal_webhook(
        db: AsyncSession,
        raw_payload: bytes,
        headers: Mapping[str, str],
        policy: MembershipPolicy,
        mailer: Mailer,
        paypal: PayPalGateway,
    ) -> Dict[str, Any]:
        try:
            event = json.loads(raw_payload or b"")
        except ValueError:
            event = None
        if not isinstance(event, dict):
            log.warning("Ignoring malformed PayPal webhook")
            return ACK
        if not await paypal.verify_webhook(headers, event):
            log.warning("Ignoring PayPal webhook that failed verification")
            return ACK
        if event.get("event_type") != "PAYMENT.CAPTURE.COMPLETED":
            return ACK

        resource = event.get("resource") or {}
        amount = resource.get("amount") or {}
        details = {
            "subscription_id": _positive_int(resource.get("custom_id"))
            or subscription_id_from_invoice(resource.get("invoice_id")),
            "amount": to_money(amount.get("value", 0)),
            "currency": str(amount.get("currency_code") or policy.currency).upper(),
            "reference": str(resource.get("id") or ""),
        }
        if not details["subscription_id"]:
            order_id = (((resource.get("supplementary_data") or {}).get("related_ids") or {}).get("order_id") or "")
            if order_id:
                details = await GatewayPaymentService._hydrate_from_order(paypal, order_id, details)

        if details["subscription_id"]:
            await GatewayPaymentService._reconcile_from_webhook(
                db, details, "paypal", "paypal_webhook", policy, mailer
            )
        return ACK
