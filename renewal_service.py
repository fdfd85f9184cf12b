"""
Renewal Service - Daily subscription maintenance

Run once a day by an external timer (see run_daily_maintenance.py):

* renewal issuance: in the weeks before July 1, active members get a
  pending_payment subscription for the next membership year;
* overdue marking: on July 1, unpaid renewals due that day become overdue
  with a grace deadline, except renewals issued that same day;
* lapse marking: overdue subscriptions past their grace deadline lapse and
  the member lapses with them.

Every transition is a conditional update on the expected prior status, so
overlapping or repeated runs change nothing and send nothing twice.
"""

import logging
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from activity_log_service import ActivityLogger
from board_decision_service import BoardDecisionService
from config import MembershipPolicy
from models import Member, MemberStatus, MembershipRole, Subscription, SubscriptionStatus, User
from notification_templates import MembershipLapsed, RenewalDue, SubscriptionOverdue
from schemas import MaintenanceReport
from ses_service import Mailer

log = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def next_cycle_start(today: date) -> date:
    """The July 1 on or after ``today``."""
    july_1 = date(today.year, 7, 1)
    return july_1 if today <= july_1 else date(today.year + 1, 7, 1)


def grace_deadline(subscription: Subscription, grace_period_days: int) -> Optional[date]:
    if subscription.grace_until is not None:
        return subscription.grace_until
    if subscription.due_date is not None:
        return subscription.due_date + timedelta(days=grace_period_days)
    return None


class RenewalService:
    """Time-driven subscription transitions"""

    @staticmethod
    async def run_daily_maintenance(
        db: AsyncSession,
        policy: MembershipPolicy,
        mailer: Mailer,
        today: Optional[date] = None,
    ) -> MaintenanceReport:
        today = today or date.today()
        report = MaintenanceReport(
            renewals_created=await RenewalService.issue_renewals(db, policy, mailer, today),
            marked_overdue=await RenewalService.mark_unpaid_renewals_overdue(db, policy, mailer, today),
            marked_lapsed=await RenewalService.mark_overdue_as_lapsed(db, policy, mailer, today),
        )
        log.info(f"Daily maintenance for {today.isoformat()}: {report.model_dump()}")
        return report

    @staticmethod
    async def issue_renewals(db: AsyncSession, policy: MembershipPolicy, mailer: Mailer, today: date) -> int:
        cycle_start = next_cycle_start(today)
        if (cycle_start - today).days > policy.renewal_notice_days:
            return 0

        renewal_year = cycle_start.year + 1
        current_end = date(cycle_start.year, 6, 30)
        renewal = aliased(Subscription)
        renewal_exists = (
            select(renewal.id)
            .where(renewal.member_id == Member.id, renewal.membership_year == renewal_year)
            .exists()
        )
        result = await db.execute(
            select(Member, User)
            .join(User, User.id == Member.user_id)
            .join(Subscription, Subscription.member_id == Member.id)
            .where(
                Member.status == MemberStatus.ACTIVE.value,
                Subscription.status == SubscriptionStatus.ACTIVE.value,
                Subscription.end_date == current_end,
                ~renewal_exists,
            )
            .order_by(Member.id)
            .execution_options(populate_existing=True)
        )
        # Plain values only; a rollback below expires every loaded instance
        candidates = [
            (member.id, member.application_id, member.membership_type, user.email, user.full_name or user.email)
            for member, user in result.unique().all()
        ]

        created = 0
        for member_id, application_id, membership_type, email, member_name in candidates:
            amount_due = policy.price_for(membership_type)
            db.add(Subscription(
                member_id=member_id,
                membership_year=renewal_year,
                start_date=cycle_start,
                end_date=date(renewal_year, 6, 30),
                amount_due=amount_due,
                amount_paid=Decimal("0.00"),
                status=SubscriptionStatus.PENDING_PAYMENT.value,
                due_date=cycle_start,
                issued_on=today,
            ))
            try:
                await db.flush()
            except IntegrityError:
                # Issued by an overlapping run
                await db.rollback()
                continue
            await ActivityLogger.log_member_event(db, member_id, "renewal_subscription_created", {
                "membership_year": renewal_year,
                "amount_due": amount_due,
                "due_date": cycle_start,
            }, None, application_id)
            await db.commit()
            created += 1

            await mailer.send_notification(email, RenewalDue(
                member_name=member_name,
                membership_year=renewal_year,
                amount_due=amount_due,
                currency=policy.currency,
                due_date=cycle_start,
                portal_url=policy.portal_url,
            ))
        return created

    @staticmethod
    async def mark_unpaid_renewals_overdue(
        db: AsyncSession,
        policy: MembershipPolicy,
        mailer: Mailer,
        today: date,
    ) -> int:
        if (today.month, today.day) != (7, 1):
            return 0

        grace_until = today + timedelta(days=policy.grace_period_days)
        result = await db.execute(
            select(Subscription, Member, User)
            .join(Member, Member.id == Subscription.member_id)
            .join(User, User.id == Member.user_id)
            .where(
                Subscription.status == SubscriptionStatus.PENDING_PAYMENT.value,
                func.coalesce(Subscription.amount_paid, 0) < func.coalesce(Subscription.amount_due, 0),
                # Renewals issued today are not yet overdue
                or_(Subscription.issued_on.is_(None), Subscription.issued_on < today),
            )
            .order_by(Subscription.id)
            .execution_options(populate_existing=True)
        )
        rows = [
            (subscription, member, user) for subscription, member, user in result.all()
            if subscription.due_date is not None and (subscription.due_date.month, subscription.due_date.day) == (7, 1)
        ]

        marked = 0
        for subscription, member, user in rows:
            subscription_id, member_id, application_id = subscription.id, member.id, member.application_id
            amount_due, due_date = subscription.amount_due, subscription.due_date
            updated = await db.execute(
                update(Subscription)
                .where(
                    Subscription.id == subscription_id,
                    Subscription.status == SubscriptionStatus.PENDING_PAYMENT.value,
                )
                .values(status=SubscriptionStatus.OVERDUE.value, grace_until=grace_until)
                .execution_options(synchronize_session=False)
            )
            if updated.rowcount == 0:
                continue

            # Members keep access through the grace period
            if member.status == MemberStatus.ACTIVE.value:
                await BoardDecisionService.assign_role(db, user, MembershipRole.MEMBER, None, application_id, member_id)
            await ActivityLogger.log_member_event(db, member_id, "subscription_marked_overdue", {
                "subscription_id": subscription_id,
                "due_date": due_date,
                "grace_until": grace_until,
            }, None, application_id)
            await db.commit()
            marked += 1
            log.info(f"Subscription {subscription_id} overdue; grace until {grace_until.isoformat()}")

            await mailer.send_notification(user.email, SubscriptionOverdue(
                member_name=user.full_name or user.email,
                amount_due=amount_due,
                currency=policy.currency,
                grace_until=grace_until,
                portal_url=policy.portal_url,
            ))
        return marked

    @staticmethod
    async def mark_overdue_as_lapsed(
        db: AsyncSession,
        policy: MembershipPolicy,
        mailer: Mailer,
        today: date,
    ) -> int:
        result = await db.execute(
            select(Subscription, Member, User)
            .join(Member, Member.id == Subscription.member_id)
            .join(User, User.id == Member.user_id)
            .where(Subscription.status == SubscriptionStatus.OVERDUE.value)
            .order_by(Subscription.id)
            .execution_options(populate_existing=True)
        )
        rows = result.all()

        lapsed = 0
        for subscription, member, user in rows:
            deadline = grace_deadline(subscription, policy.grace_period_days)
            if deadline is None or today <= deadline:
                continue

            subscription_id, member_id, application_id = subscription.id, member.id, member.application_id
            updated = await db.execute(
                update(Subscription)
                .where(
                    Subscription.id == subscription_id,
                    Subscription.status == SubscriptionStatus.OVERDUE.value,
                )
                .values(status=SubscriptionStatus.LAPSED.value)
                .execution_options(synchronize_session=False)
            )
            if updated.rowcount == 0:
                continue

            member.status = MemberStatus.LAPSED.value
            member.lapsed_at = _now()
            await BoardDecisionService.assign_role(
                db, user, MembershipRole.PENDING_PAYMENT, None, application_id, member_id
            )
            await ActivityLogger.log_member_event(db, member_id, "subscription_lapsed_after_grace", {
                "subscription_id": subscription_id,
                "grace_until": deadline,
            }, None, application_id)
            await db.commit()
            lapsed += 1
            log.info(f"Subscription {subscription_id} lapsed after grace; member {member_id} lapsed")

            await mailer.send_notification(user.email, MembershipLapsed(
                member_name=user.full_name or user.email,
                portal_url=policy.portal_url,
            ))
        return lapsed
