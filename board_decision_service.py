"""
Board Decision Service - Quorum evaluation and finalization of board votes

After every vote write the application's approve/reject counts are compared
with the configured thresholds. Finalization is a conditional update on
status = pending_board_approval so that exactly one caller performs the
side effects when two deciding votes land together.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from sqlalchemy import case, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

import crud
from activity_log_service import ActivityLogger
from auth_utils import password_setup_link
from config import MembershipPolicy
from models import (
    Application, ApplicationStatus, ApplicationVote, Member, MemberStatus, MembershipRole,
    Subscription, SubscriptionStatus, User, VoteChoice,
)
from notification_templates import ApplicationApproved, ApplicationRejectedByBoard, ApprovalOfficerNotice
from schemas import BoardOutcome
from ses_service import Mailer

log = logging.getLogger(__name__)

CENT = Decimal("0.01")


@dataclass(frozen=True)
class ProrataQuote:
    membership_year: int
    start_date: date
    end_date: date
    due_date: date
    amount_due: Decimal
    months_charged: int


def cycle_end_for(today: date) -> date:
    """June 30 that closes the membership cycle containing ``today``."""
    june_30 = date(today.year, 6, 30)
    return june_30 if today <= june_30 else date(today.year + 1, 6, 30)


def calculate_prorata(base_price: Decimal, today: date, cutoff_days: int) -> ProrataQuote:
    """
    Price a first subscription joined mid-cycle.

    More than ``cutoff_days`` before cycle end: charge the remaining months
    (current month included) of the cycle. Otherwise charge the full price
    and run the subscription through the end of the following cycle.
    """
    base_price = Decimal(base_price)
    cycle_end = cycle_end_for(today)
    days_remaining = (cycle_end - today).days

    if days_remaining > cutoff_days:
        months = (cycle_end.year - today.year) * 12 + (cycle_end.month - today.month) + 1
        months = max(1, min(12, months))
        amount = (base_price * months / 12).quantize(CENT, rounding=ROUND_HALF_UP)
        end_date = cycle_end
    else:
        months = 12
        amount = base_price.quantize(CENT, rounding=ROUND_HALF_UP)
        end_date = date(cycle_end.year + 1, 6, 30)

    return ProrataQuote(
        membership_year=end_date.year,
        start_date=today,
        end_date=end_date,
        due_date=today,
        amount_due=amount,
        months_charged=months,
    )


def _now() -> datetime:
    return datetime.now(timezone.utc)


class BoardDecisionService:
    """Counts board votes and finalizes applications that reach a threshold"""

    @staticmethod
    async def vote_counts(db: AsyncSession, application_id: int) -> tuple:
        result = await db.execute(
            select(
                func.coalesce(func.sum(case((ApplicationVote.vote == VoteChoice.APPROVED.value, 1), else_=0)), 0),
                func.coalesce(func.sum(case((ApplicationVote.vote == VoteChoice.REJECTED.value, 1), else_=0)), 0),
            ).where(ApplicationVote.application_id == application_id)
        )
        approvals, rejections = result.one()
        return int(approvals), int(rejections)

    @staticmethod
    async def evaluate_after_vote(
        db: AsyncSession,
        application_id: int,
        actor_id: Optional[int],
        policy: MembershipPolicy,
        mailer: Mailer,
        today: Optional[date] = None,
    ) -> BoardOutcome:
        result = await db.execute(select(Application).where(Application.id == application_id))
        application = result.scalar_one_or_none()
        if application is None:
            return BoardOutcome(finalized=False, status="")
        # Another vote may have finalized it since the caller loaded it
        await db.refresh(application)
        if application.status != ApplicationStatus.PENDING_BOARD_APPROVAL.value:
            return BoardOutcome(finalized=False, status=application.status)

        approvals, rejections = await BoardDecisionService.vote_counts(db, application_id)
        await ActivityLogger.log_application_event(db, application_id, "board_vote_counts_recomputed", {
            "approvals": approvals,
            "rejections": rejections,
            "approval_threshold": policy.approval_threshold,
            "rejection_threshold": policy.rejection_threshold,
        }, actor_id)
        await db.commit()

        if approvals >= policy.approval_threshold:
            finalized = await BoardDecisionService._finalize_approved(
                db, application, actor_id, policy, mailer, today or date.today()
            )
            status = ApplicationStatus.APPROVED.value
        elif rejections >= policy.rejection_threshold:
            finalized = await BoardDecisionService._finalize_rejected(db, application, actor_id, mailer)
            status = ApplicationStatus.REJECTED_BOARD.value
        else:
            return BoardOutcome(
                finalized=False, status=ApplicationStatus.PENDING_BOARD_APPROVAL.value,
                approvals=approvals, rejections=rejections,
            )

        if not finalized:
            await db.refresh(application)
            status = application.status
        return BoardOutcome(finalized=finalized, status=status, approvals=approvals, rejections=rejections)

    @staticmethod
    async def _claim_finalization(db: AsyncSession, application_id: int, status: ApplicationStatus) -> bool:
        result = await db.execute(
            update(Application)
            .where(
                Application.id == application_id,
                Application.status == ApplicationStatus.PENDING_BOARD_APPROVAL.value,
            )
            .values(status=status.value, board_finalised_at=_now())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            await db.rollback()
            log.info(f"Application {application_id} already finalized by a concurrent vote")
            return False
        return True

    @staticmethod
    async def _finalize_approved(
        db: AsyncSession,
        application: Application,
        actor_id: Optional[int],
        policy: MembershipPolicy,
        mailer: Mailer,
        today: date,
    ) -> bool:
        application_id = application.id
        if not await BoardDecisionService._claim_finalization(db, application_id, ApplicationStatus.APPROVED):
            return False

        await ActivityLogger.log_application_event(db, application_id, "board_application_approved", {
            "status": ApplicationStatus.APPROVED.value,
        }, actor_id)

        user = await crud.get_or_create_user(
            db, application.applicant_email,
            first_name=application.applicant_first_name,
            last_name=application.applicant_last_name,
        )
        await BoardDecisionService.assign_role(db, user, MembershipRole.PENDING_PAYMENT, actor_id, application_id)

        member, is_new_member = await BoardDecisionService._ensure_member(db, application, user)

        quote = calculate_prorata(policy.price_for(application.membership_type), today, policy.prorata_cutoff_days)
        created = False
        amount_due = Decimal("0.00")
        existing = await crud.get_subscription_for_year(db, member.id, quote.membership_year)
        if existing is not None:
            amount_due = max(Decimal("0.00"), Decimal(existing.amount_due) - Decimal(existing.amount_paid or 0))
        elif is_new_member:
            db.add(Subscription(
                member_id=member.id,
                membership_year=quote.membership_year,
                start_date=quote.start_date,
                end_date=quote.end_date,
                amount_due=quote.amount_due,
                amount_paid=Decimal("0.00"),
                status=SubscriptionStatus.PENDING_PAYMENT.value,
                due_date=quote.due_date,
            ))
            created = True
            amount_due = quote.amount_due

        await ActivityLogger.log_application_event(db, application_id, "subscription_pending_payment_prepared", {
            "created": created,
            "membership_year": quote.membership_year,
            "amount_due": amount_due,
            "months_charged": quote.months_charged,
        }, actor_id)
        await db.commit()
        await db.refresh(application)
        log.info(f"Application {application_id} approved by the board; member {member.id} pending payment of {amount_due}")

        applicant_sent = await mailer.send_notification(user.email, ApplicationApproved(
            applicant_name=application.applicant_full_name,
            amount_due=amount_due,
            currency=policy.currency,
            start_date=quote.start_date,
            end_date=quote.end_date,
            password_setup_link=password_setup_link(policy.password_setup_url, user.email),
            portal_url=policy.portal_url,
            bank_transfer_instructions=policy.bank_transfer_instructions if policy.method_enabled("bank_transfer") else "",
        ))
        officer_emails = await crud.get_officer_emails(db) or [policy.site_admin_email]
        officer_sent_count = 0
        for email in officer_emails:
            sent = await mailer.send_notification(email, ApprovalOfficerNotice(
                application_id=application_id,
                applicant_name=application.applicant_full_name,
                amount_due=amount_due,
                currency=policy.currency,
            ))
            officer_sent_count += int(sent)

        await ActivityLogger.log_application_event(db, application_id, "approval_notifications_sent", {
            "applicant_sent": applicant_sent,
            "officer_recipients": len(officer_emails),
            "officer_sent_count": officer_sent_count,
        }, actor_id, commit=True)
        return True

    @staticmethod
    async def _ensure_member(db: AsyncSession, application: Application, user: User) -> tuple:
        member = await crud.get_member_by_user(db, user.id)
        now = _now()
        if member is not None:
            member.application_id = application.id
            member.membership_type = application.membership_type
            member.status = MemberStatus.PENDING_PAYMENT.value
            if member.approved_at is None:
                member.approved_at = now
            await db.flush()
            return member, False

        member = Member(
            user_id=user.id,
            application_id=application.id,
            membership_type=application.membership_type,
            status=MemberStatus.PENDING_PAYMENT.value,
            approved_at=now,
        )
        db.add(member)
        await db.flush()
        return member, True

    @staticmethod
    async def assign_role(
        db: AsyncSession,
        user: User,
        role: MembershipRole,
        actor_id: Optional[int] = None,
        application_id: Optional[int] = None,
        member_id: Optional[int] = None,
    ) -> None:
        if user.role == role.value:
            return
        previous = user.role
        user.role = role.value
        await ActivityLogger.log_event(db, "role_assigned", {
            "user_id": user.id,
            "role": role.value,
            "previous_role": previous,
        }, actor_id=actor_id, application_id=application_id, member_id=member_id)

    @staticmethod
    async def _finalize_rejected(
        db: AsyncSession,
        application: Application,
        actor_id: Optional[int],
        mailer: Mailer,
    ) -> bool:
        application_id = application.id
        if not await BoardDecisionService._claim_finalization(db, application_id, ApplicationStatus.REJECTED_BOARD):
            return False

        await ActivityLogger.log_application_event(db, application_id, "board_application_rejected", {
            "status": ApplicationStatus.REJECTED_BOARD.value,
        }, actor_id)
        await db.commit()
        await db.refresh(application)
        log.info(f"Application {application_id} rejected by the board")

        sent = await mailer.send_notification(application.applicant_email, ApplicationRejectedByBoard(
            applicant_name=application.applicant_full_name,
        ))
        await ActivityLogger.log_application_event(db, application_id, "board_rejection_email_processed", {
            "sent": sent,
        }, actor_id, commit=True)
        return True
