"""
Payment Activation Service - Idempotent payment reconciliation and member activation

Every payment channel (card gateway webhook, PayPal capture, manual bank
transfer) ends in ``PaymentActivationService.reconcile``. A gateway reference
that is already recorded as paid returns before any mutation, so redelivered
webhooks produce one paid Payment row and one activation.
"""

import logging
import re
from datetime import date, datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Optional

from sqlalchemy import Integer, String, case, cast, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

import crud
from activity_log_service import ActivityLogger
from board_decision_service import BoardDecisionService
from config import MembershipPolicy
from exceptions import AmountMismatch, InvalidState, NotFound
from models import AppSetting, Member, MemberStatus, MembershipRole, Payment, PaymentStatus, Subscription, SubscriptionStatus
from notification_templates import MembershipActivated
from schemas import ReconcileResult
from ses_service import Mailer

log = logging.getLogger(__name__)

NEXT_MEMBERSHIP_NUMBER_KEY = "next_membership_number"
MEMBERSHIP_NUMBER_ATTEMPTS = 5
AMOUNT_TOLERANCE = Decimal("0.01")
CENT = Decimal("0.01")
_NUMBER_SUFFIX = re.compile(r"(\d+)$")


def to_money(value: Any) -> Decimal:
    return Decimal(str(value or 0)).quantize(CENT, rounding=ROUND_HALF_UP)


def normalize_subscription_dates(subscription: Subscription, today: Optional[date] = None) -> tuple:
    """Keep valid ordered dates, otherwise derive the July 1 - June 30 cycle from membership_year."""
    start, end = subscription.start_date, subscription.end_date
    if start is not None and end is not None and start <= end:
        return start, end
    year = subscription.membership_year or (today or date.today()).year
    return date(year - 1, 7, 1), date(year, 6, 30)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class PaymentActivationService:
    """Marks subscriptions paid and moves members to active"""

    @staticmethod
    async def reconcile(
        db: AsyncSession,
        subscription_id: int,
        amount: Any,
        currency: str,
        gateway: str,
        gateway_reference: Optional[str],
        policy: MembershipPolicy,
        mailer: Mailer,
        actor_id: Optional[int] = None,
        meta: Optional[Dict[str, Any]] = None,
        reference: Optional[str] = None,
    ) -> ReconcileResult:
        meta = meta or {}
        amount = to_money(amount)
        currency = (currency or policy.currency).upper()
        gateway = (gateway or "bank_transfer").strip().lower()
        gateway_reference = (gateway_reference or "").strip() or None
        payment_method = meta.get("payment_method", gateway)
        source = meta.get("source", "")

        subscription = await crud.get_subscription(db, subscription_id)
        if subscription is None:
            raise NotFound(f"Subscription {subscription_id} not found")
        member = await crud.get_member(db, subscription.member_id)
        if member is None:
            raise NotFound(f"Member for subscription {subscription_id} not found")

        if gateway_reference:
            recorded = await crud.get_payment_by_reference(db, gateway_reference)
            if recorded is not None and recorded.subscription_id != subscription_id:
                await ActivityLogger.log_member_event(db, member.id, "payment_reference_conflict", {
                    "subscription_id": subscription_id,
                    "recorded_subscription_id": recorded.subscription_id,
                    "payment_id": recorded.id,
                    "gateway": gateway,
                    "gateway_reference": gateway_reference,
                    "source": source,
                }, actor_id, member.application_id, commit=True)
                log.warning(
                    f"Payment {gateway_reference} belongs to subscription {recorded.subscription_id}, "
                    f"not {subscription_id}; not applied"
                )
                raise InvalidState(f"Payment reference {gateway_reference} is recorded against another subscription")
            if recorded is not None and recorded.status == PaymentStatus.PAID.value:
                await ActivityLogger.log_member_event(db, member.id, "payment_duplicate_ignored", {
                    "subscription_id": subscription_id,
                    "payment_id": recorded.id,
                    "gateway": gateway,
                    "gateway_reference": gateway_reference,
                    "source": source,
                }, actor_id, member.application_id, commit=True)
                log.info(f"Payment {gateway_reference} already recorded; replay ignored")
                return ReconcileResult(
                    payment_id=recorded.id, member_id=member.id, subscription_id=subscription_id,
                    membership_number=member.membership_number, already_paid=True,
                )

        if gateway_reference:
            reference_text = f"{gateway.upper()}:{gateway_reference}"
        else:
            reference_text = (reference or "").strip()

        if subscription.status == SubscriptionStatus.ACTIVE.value:
            return await PaymentActivationService._replay(
                db, member, subscription, amount, currency, gateway, payment_method,
                gateway_reference, reference_text, actor_id, source,
            )

        expected = max(Decimal("0.00"), to_money(subscription.amount_due) - to_money(subscription.amount_paid))
        if expected > 0 and abs(expected - amount) > AMOUNT_TOLERANCE:
            payment = await PaymentActivationService.record_payment_attempt(
                db, member, subscription_id, payment_method, gateway, gateway_reference,
                PaymentStatus.FAILED, amount, currency, reference_text,
            )
            await ActivityLogger.log_member_event(db, member.id, "payment_amount_mismatch", {
                "subscription_id": subscription_id,
                "expected": expected,
                "received": amount,
                "gateway": gateway,
                "gateway_reference": gateway_reference,
                "source": source,
            }, actor_id, member.application_id)
            await db.commit()
            log.warning(f"Payment for subscription {subscription_id} rejected: expected {expected}, received {amount}")
            raise AmountMismatch(expected, amount, payment.id)

        now = _now()
        start_date, end_date = normalize_subscription_dates(subscription)
        result = await db.execute(
            update(Subscription)
            .where(
                Subscription.id == subscription_id,
                Subscription.status != SubscriptionStatus.ACTIVE.value,
            )
            .values(
                status=SubscriptionStatus.ACTIVE.value,
                amount_paid=subscription.amount_due,
                paid_at=now,
                start_date=start_date,
                end_date=end_date,
                grace_until=None,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            # A concurrent reconcile activated it first
            await db.rollback()
            await db.refresh(subscription)
            await db.refresh(member)
            return await PaymentActivationService._replay(
                db, member, subscription, amount, currency, gateway, payment_method,
                gateway_reference, reference_text, actor_id, source,
            )

        payment = await PaymentActivationService._upsert_paid_payment(
            db, member, subscription_id, amount, currency, payment_method, gateway,
            gateway_reference, reference_text, now,
        )
        membership_number = await PaymentActivationService.ensure_membership_number(db, member, policy)
        member.status = MemberStatus.ACTIVE.value
        if member.activated_at is None:
            member.activated_at = now
        user = await crud.get_user(db, member.user_id)
        if user is not None:
            await BoardDecisionService.assign_role(
                db, user, MembershipRole.MEMBER, actor_id, member.application_id, member.id
            )
        await db.commit()
        await db.refresh(subscription)
        log.info(f"Subscription {subscription_id} paid via {gateway}; member {member.id} active as {membership_number}")

        email_sent = False
        if user is not None:
            email_sent = await mailer.send_notification(user.email, MembershipActivated(
                member_name=user.full_name or user.email,
                membership_number=membership_number,
                amount=amount,
                currency=currency,
                start_date=start_date,
                end_date=end_date,
                portal_url=policy.portal_url,
            ))

        await ActivityLogger.log_member_event(db, member.id, "payment_marked_paid", {
            "subscription_id": subscription_id,
            "payment_id": payment.id,
            "amount": amount,
            "reference_provided": bool(reference_text),
        }, actor_id, member.application_id)
        await ActivityLogger.log_member_event(db, member.id, "payment_recorded", {
            "subscription_id": subscription_id,
            "payment_id": payment.id,
            "gateway": gateway,
            "gateway_reference": gateway_reference or "",
            "source": source,
        }, actor_id, member.application_id)
        await ActivityLogger.log_member_event(db, member.id, "member_activated_after_payment", {
            "membership_number": membership_number,
            "subscription_id": subscription_id,
            "email_sent": email_sent,
        }, actor_id, member.application_id)
        await ActivityLogger.log_member_event(db, member.id, "membership_activated", {
            "membership_number": membership_number,
            "subscription_id": subscription_id,
        }, actor_id, member.application_id)
        await db.commit()

        return ReconcileResult(
            payment_id=payment.id, member_id=member.id, subscription_id=subscription_id,
            membership_number=membership_number, email_sent=email_sent,
        )

    @staticmethod
    async def _replay(
        db: AsyncSession,
        member: Member,
        subscription: Subscription,
        amount: Decimal,
        currency: str,
        gateway: str,
        payment_method: str,
        gateway_reference: Optional[str],
        reference_text: str,
        actor_id: Optional[int],
        source: str,
    ) -> ReconcileResult:
        """Subscription already active: make sure the payment is on record, change nothing else."""
        payment = await PaymentActivationService._upsert_paid_payment(
            db, member, subscription.id, amount, currency, payment_method, gateway,
            gateway_reference, reference_text, _now(),
        )
        await ActivityLogger.log_member_event(db, member.id, "payment_duplicate_ignored", {
            "subscription_id": subscription.id,
            "payment_id": payment.id,
            "gateway": gateway,
            "gateway_reference": gateway_reference or "",
            "source": source,
        }, actor_id, member.application_id)
        await db.commit()
        log.info(f"Subscription {subscription.id} already active; payment via {gateway} treated as replay")
        return ReconcileResult(
            payment_id=payment.id, member_id=member.id, subscription_id=subscription.id,
            membership_number=member.membership_number, already_paid=True,
        )

    @staticmethod
    async def _upsert_paid_payment(
        db: AsyncSession,
        member: Member,
        subscription_id: int,
        amount: Decimal,
        currency: str,
        payment_method: str,
        gateway: str,
        gateway_reference: Optional[str],
        reference_text: str,
        received_at: datetime,
    ) -> Payment:
        if gateway_reference:
            existing = await crud.get_payment_by_reference(db, gateway_reference)
            if existing is not None:
                # A pending or failed attempt under the same reference has now completed
                if existing.status != PaymentStatus.PAID.value:
                    existing.status = PaymentStatus.PAID.value
                    existing.amount = amount
                    existing.received_at = received_at
                    existing.reference = reference_text
                    await db.flush()
                return existing

        result = await db.execute(
            select(Payment)
            .where(Payment.subscription_id == subscription_id, Payment.status == PaymentStatus.PAID.value)
            .order_by(Payment.id.desc())
            .limit(1)
        )
        existing = result.scalar_one_or_none()
        if existing is not None:
            return existing

        payment = Payment(
            member_id=member.id,
            subscription_id=subscription_id,
            application_id=member.application_id,
            amount=amount,
            currency=currency,
            payment_method=payment_method,
            gateway=gateway,
            gateway_transaction_id=gateway_reference,
            status=PaymentStatus.PAID.value,
            reference=reference_text,
            received_at=received_at,
        )
        db.add(payment)
        await db.flush()
        return payment

    @staticmethod
    async def record_payment_attempt(
        db: AsyncSession,
        member: Member,
        subscription_id: int,
        payment_method: str,
        gateway: str,
        gateway_reference: Optional[str],
        status: PaymentStatus,
        amount: Any,
        currency: str,
        reference_text: Optional[str] = None,
    ) -> Payment:
        """Insert or update the Payment row for a gateway attempt, keyed by its gateway reference."""
        if gateway_reference:
            existing = await crud.get_payment_by_reference(db, gateway_reference)
            if existing is not None:
                existing.status = status.value
                existing.amount = to_money(amount)
                existing.currency = currency.upper()
                await db.flush()
                return existing

        payment = Payment(
            member_id=member.id,
            subscription_id=subscription_id,
            application_id=member.application_id,
            amount=to_money(amount),
            currency=currency.upper(),
            payment_method=payment_method,
            gateway=gateway,
            gateway_transaction_id=gateway_reference,
            status=status.value,
            reference=reference_text or gateway_reference or "",
            received_at=_now() if status == PaymentStatus.PAID else None,
        )
        db.add(payment)
        await db.flush()
        return payment

    @staticmethod
    async def next_membership_number(db: AsyncSession, policy: MembershipPolicy) -> str:
        """
        Allocate the next membership number.

        Uses the larger of the stored counter and the highest existing suffix + 1
        so a stale or lowered counter never reissues a number, then stores
        next + 1 as the new counter. The counter moves in a single UPDATE, so
        the row lock serializes concurrent activations until they commit.
        """
        stored = await crud.get_setting(db, NEXT_MEMBERSHIP_NUMBER_KEY)
        if stored is None or not stored.strip().isdigit():
            await crud.set_setting(db, NEXT_MEMBERSHIP_NUMBER_KEY, "1")

        result = await db.execute(select(Member.membership_number).where(Member.membership_number.is_not(None)))
        highest = 0
        for number in result.scalars().all():
            match = _NUMBER_SUFFIX.search(number or "")
            if match:
                highest = max(highest, int(match.group(1)))
        floor = highest + 1

        counter = cast(AppSetting.value, Integer)
        result = await db.execute(
            update(AppSetting)
            .where(AppSetting.key == NEXT_MEMBERSHIP_NUMBER_KEY)
            .values(value=cast(case((counter >= floor, counter + 1), else_=floor + 1), String))
            .returning(AppSetting.value)
            .execution_options(synchronize_session=False)
        )
        next_number = int(result.scalar_one()) - 1
        return f"{policy.membership_number_prefix}{next_number:0{policy.membership_number_width}d}"

    @staticmethod
    async def ensure_membership_number(db: AsyncSession, member: Member, policy: MembershipPolicy) -> str:
        current = (member.membership_number or "").strip()
        if current:
            return current

        for _ in range(MEMBERSHIP_NUMBER_ATTEMPTS):
            number = await PaymentActivationService.next_membership_number(db, policy)
            try:
                async with db.begin_nested():
                    result = await db.execute(
                        update(Member)
                        .where(
                            Member.id == member.id,
                            or_(Member.membership_number.is_(None), Member.membership_number == ""),
                        )
                        .values(membership_number=number)
                        .execution_options(synchronize_session=False)
                    )
            except IntegrityError:
                log.warning(f"Membership number {number} is already taken; allocating another for member {member.id}")
                continue
            await db.refresh(member)
            if result.rowcount == 0:
                log.info(f"Member {member.id} was numbered concurrently as {member.membership_number}")
            return member.membership_number

        raise InvalidState(f"Could not allocate a unique membership number for member {member.id}")

    @staticmethod
    async def mark_paid(
        db: AsyncSession,
        subscription_id: int,
        actor_id: int,
        policy: MembershipPolicy,
        mailer: Mailer,
        reference: Optional[str] = None,
    ) -> ReconcileResult:
        """Manual bank transfer: settle the outstanding balance with no gateway reference."""
        subscription = await crud.get_subscription(db, subscription_id)
        if subscription is None:
            raise NotFound(f"Subscription {subscription_id} not found")
        outstanding = max(Decimal("0.00"), to_money(subscription.amount_due) - to_money(subscription.amount_paid))
        return await PaymentActivationService.reconcile(
            db, subscription_id, outstanding, policy.currency, "bank_transfer", None, policy, mailer,
            actor_id=actor_id, meta={"source": "manual_mark_paid", "payment_method": "bank_transfer"},
            reference=reference,
        )
