"""
Staff Query Service - Read-only views behind the officer screens

Application queue with status counts and the board vote table, member
search with payment history, subscriptions by payment state and the
dashboard tiles with the needs-attention list. Nothing here writes.
"""

import logging
from datetime import date, datetime, timedelta
from typing import Dict, List, Optional

from sqlalchemy import String, case, cast, desc, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

import crud
from config import MembershipPolicy
from exceptions import NotFound
from models import (
    ActivityLog,
    Application,
    ApplicationFile,
    ApplicationStatus,
    ApplicationVote,
    Member,
    MemberStatus,
    Payment,
    Subscription,
    SubscriptionStatus,
    User,
    VoteChoice,
)
import schemas

log = logging.getLogger(__name__)

APPLICATION_LIST_LIMIT = 200
MEMBER_LIST_LIMIT = 500
SUBSCRIPTION_LIST_LIMIT = 500
PAYMENT_HISTORY_LIMIT = 200
ACTIVITY_LIMIT = 50
RECENT_ACTIVITY_LIMIT = 10
ATTENTION_PER_KIND = 4
ATTENTION_LIMIT = 10

OUTSTANDING_STATUSES = [
    SubscriptionStatus.PENDING_PAYMENT.value,
    SubscriptionStatus.OVERDUE.value,
    SubscriptionStatus.LAPSED.value,
]
SUBSCRIPTION_VIEWS = {
    "outstanding": OUTSTANDING_STATUSES,
    "completed": [SubscriptionStatus.ACTIVE.value],
    "all": OUTSTANDING_STATUSES + [SubscriptionStatus.ACTIVE.value],
}
MEMBER_STATUS_FILTERS = {
    MemberStatus.PENDING_PAYMENT.value,
    MemberStatus.ACTIVE.value,
    MemberStatus.LAPSED.value,
}


def _contains(search: str) -> str:
    """LIKE pattern matching ``search`` anywhere, with wildcards escaped."""
    escaped = search.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def _age_days(moment, today: date) -> int:
    if moment is None:
        return 0
    day = moment.date() if isinstance(moment, datetime) else moment
    return max(0, (today - day).days)


def _applicant_name(application: Optional[Application]) -> str:
    if application is None:
        return ""
    return f"{application.applicant_first_name or ''} {application.applicant_last_name or ''}".strip()


def _member_summary(
    member: Member,
    user: Optional[User],
    application: Optional[Application],
    subscription: Optional[Subscription],
) -> schemas.MemberSummary:
    return schemas.MemberSummary(
        id=member.id,
        membership_number=member.membership_number,
        membership_type=member.membership_type,
        status=member.status,
        full_name=(user.full_name if user else None) or _applicant_name(application) or None,
        email=(user.email if user else None) or (application.applicant_email if application else None),
        application_id=member.application_id,
        approved_at=member.approved_at,
        activated_at=member.activated_at,
        lapsed_at=member.lapsed_at,
        subscription_status=subscription.status if subscription else None,
        membership_year=subscription.membership_year if subscription else None,
    )


def _latest_subscription_id():
    return (
        select(Subscription.id)
        .where(Subscription.member_id == Member.id)
        .order_by(Subscription.membership_year.desc(), Subscription.id.desc())
        .limit(1)
        .correlate(Member)
        .scalar_subquery()
    )


class StaffQueryService:
    """Listings and detail views for membership officers"""

    # ==================== APPLICATIONS ====================

    @staticmethod
    async def list_applications(
        db: AsyncSession,
        status: Optional[str] = None,
        search: str = "",
    ) -> List[Application]:
        """Newest first. An unknown status is ignored rather than matching nothing."""
        query = select(Application)
        if status and status in {s.value for s in ApplicationStatus}:
            query = query.where(Application.status == status)
        search = (search or "").strip()
        if search:
            pattern = _contains(search)
            query = query.where(or_(
                Application.applicant_email.ilike(pattern, escape="\\"),
                Application.applicant_first_name.ilike(pattern, escape="\\"),
                Application.applicant_last_name.ilike(pattern, escape="\\"),
                Application.public_token.ilike(pattern, escape="\\"),
            ))
        result = await db.execute(
            query.order_by(Application.submitted_at.desc(), Application.id.desc()).limit(APPLICATION_LIST_LIMIT)
        )
        return list(result.scalars().all())

    @staticmethod
    async def application_status_counts(db: AsyncSession) -> Dict[str, int]:
        result = await db.execute(
            select(Application.status, func.count(Application.id)).group_by(Application.status)
        )
        return {status: int(total) for status, total in result.all()}

    @staticmethod
    async def application_detail(db: AsyncSession, application_id: int) -> schemas.ApplicationDetail:
        application = await crud.get_application(db, application_id)

        director = aliased(User)
        resetter = aliased(User)
        result = await db.execute(
            select(ApplicationVote, director, resetter.full_name)
            .outerjoin(director, director.id == ApplicationVote.director_id)
            .outerjoin(resetter, resetter.id == ApplicationVote.reset_by)
            .where(ApplicationVote.application_id == application_id)
            .order_by(director.full_name, ApplicationVote.id)
        )
        votes = [
            schemas.VoteRow(
                director_id=vote.director_id,
                director_name=user.full_name if user else None,
                director_email=user.email if user else None,
                vote=vote.vote,
                viewed_at=vote.viewed_at,
                voted_at=vote.voted_at,
                note=vote.note,
                reset_by=vote.reset_by,
                reset_by_name=reset_by_name,
                reset_at=vote.reset_at,
            )
            for vote, user, reset_by_name in result.all()
        ]

        result = await db.execute(
            select(ApplicationFile)
            .where(ApplicationFile.application_id == application_id)
            .order_by(ApplicationFile.id)
        )
        files = [schemas.ApplicationFileInfo.model_validate(f) for f in result.scalars().all()]

        activity = await StaffQueryService.recent_activity(
            db, ActivityLog.application_id == application_id, limit=ACTIVITY_LIMIT
        )
        return schemas.ApplicationDetail(
            application=schemas.ApplicationRecord.model_validate(application, from_attributes=True),
            votes=votes,
            files=files,
            activity=activity,
        )

    # ==================== MEMBERS ====================

    @staticmethod
    def _member_query():
        latest = aliased(Subscription)
        query = (
            select(Member, User, Application, latest)
            .outerjoin(User, User.id == Member.user_id)
            .outerjoin(Application, Application.id == Member.application_id)
            .outerjoin(latest, latest.id == _latest_subscription_id())
        )
        return query

    @staticmethod
    async def list_members(
        db: AsyncSession,
        search: str = "",
        status: Optional[str] = None,
    ) -> List[schemas.MemberSummary]:
        query = StaffQueryService._member_query()
        if status and status in MEMBER_STATUS_FILTERS:
            query = query.where(Member.status == status)
        search = (search or "").strip()
        if search:
            pattern = _contains(search)
            query = query.where(or_(
                Member.membership_number.ilike(pattern, escape="\\"),
                User.full_name.ilike(pattern, escape="\\"),
                User.email.ilike(pattern, escape="\\"),
                Application.applicant_first_name.ilike(pattern, escape="\\"),
                Application.applicant_last_name.ilike(pattern, escape="\\"),
                Application.applicant_email.ilike(pattern, escape="\\"),
            ))
        result = await db.execute(
            query
            .order_by(func.coalesce(Member.updated_at, Member.created_at).desc(), Member.id.desc())
            .limit(MEMBER_LIST_LIMIT)
        )
        return [_member_summary(*row) for row in result.all()]

    @staticmethod
    async def member_detail(db: AsyncSession, member_id: int) -> schemas.MemberDetail:
        result = await db.execute(StaffQueryService._member_query().where(Member.id == member_id))
        row = result.first()
        if row is None:
            raise NotFound(f"Member {member_id} not found")
        member, user, application, subscription = row

        result = await db.execute(
            select(Payment)
            .where(Payment.member_id == member_id)
            .order_by(func.coalesce(Payment.received_at, Payment.created_at).desc(), Payment.id.desc())
            .limit(PAYMENT_HISTORY_LIMIT)
        )
        payments = [schemas.Payment.model_validate(p) for p in result.scalars().all()]

        criteria = [ActivityLog.member_id == member_id]
        if member.application_id:
            criteria.append(ActivityLog.application_id == member.application_id)
        activity = await StaffQueryService.recent_activity(db, or_(*criteria), limit=ACTIVITY_LIMIT)

        return schemas.MemberDetail(
            member=_member_summary(member, user, application, subscription),
            latest_subscription=schemas.Subscription.model_validate(subscription) if subscription else None,
            payments=payments,
            activity=activity,
        )

    # ==================== SUBSCRIPTIONS ====================

    @staticmethod
    async def list_subscriptions(
        db: AsyncSession,
        view: str = "outstanding",
        search: str = "",
    ) -> List[schemas.SubscriptionRow]:
        """
        Subscriptions for one payment view: ``outstanding`` (pending, overdue,
        lapsed), ``completed`` (active) or ``all``. Unknown views fall back to
        outstanding. Each row carries the reference of its latest payment.
        """
        statuses = SUBSCRIPTION_VIEWS.get(view, OUTSTANDING_STATUSES)
        last_payment = aliased(Payment)
        last_payment_id = (
            select(Payment.id)
            .where(Payment.subscription_id == Subscription.id)
            .order_by(Payment.received_at.desc().nulls_last(), Payment.id.desc())
            .limit(1)
            .correlate(Subscription)
            .scalar_subquery()
        )
        query = (
            select(Subscription, Member, User, last_payment.reference)
            .join(Member, Member.id == Subscription.member_id)
            .outerjoin(User, User.id == Member.user_id)
            .outerjoin(last_payment, last_payment.id == last_payment_id)
            .where(Subscription.status.in_(statuses))
        )
        search = (search or "").strip()
        if search:
            pattern = _contains(search)
            query = query.where(or_(
                User.full_name.ilike(pattern, escape="\\"),
                User.email.ilike(pattern, escape="\\"),
                Member.membership_number.ilike(pattern, escape="\\"),
                last_payment.reference.ilike(pattern, escape="\\"),
                cast(Subscription.id, String).ilike(pattern, escape="\\"),
            ))
        result = await db.execute(
            query
            .order_by(Subscription.due_date.asc().nulls_last(), Subscription.id.asc())
            .limit(SUBSCRIPTION_LIST_LIMIT)
        )
        return [
            schemas.SubscriptionRow(
                subscription_id=subscription.id,
                subscription_status=subscription.status,
                membership_year=subscription.membership_year,
                amount_due=subscription.amount_due,
                amount_paid=subscription.amount_paid,
                paid_at=subscription.paid_at,
                member_id=member.id,
                membership_number=member.membership_number,
                full_name=user.full_name if user else None,
                email=user.email if user else None,
                last_payment_reference=reference,
            )
            for subscription, member, user, reference in result.all()
        ]

    # ==================== DASHBOARD ====================

    @staticmethod
    def _overdue_within_grace(policy: MembershipPolicy, today: date) -> list:
        """Underpaid subscriptions past their due date but still inside the grace period."""
        return [
            func.coalesce(Subscription.amount_paid, 0) < func.coalesce(Subscription.amount_due, 0),
            Subscription.due_date < today,
            Subscription.due_date >= today - timedelta(days=policy.grace_period_days),
        ]

    @staticmethod
    async def dashboard(
        db: AsyncSession,
        policy: MembershipPolicy,
        today: Optional[date] = None,
    ) -> schemas.Dashboard:
        today = today or date.today()
        counts = await StaffQueryService.application_status_counts(db)
        payment_pending = await db.scalar(
            select(func.count(Member.id)).where(Member.status == MemberStatus.PENDING_PAYMENT.value)
        )
        overdue = await db.scalar(
            select(func.count(Subscription.id)).where(*StaffQueryService._overdue_within_grace(policy, today))
        )
        tiles = schemas.DashboardTiles(
            pending_preapproval=counts.get(ApplicationStatus.PENDING_PREAPPROVAL.value, 0),
            pending_board_approval=counts.get(ApplicationStatus.PENDING_BOARD_APPROVAL.value, 0),
            payment_pending=payment_pending or 0,
            overdue_within_grace=overdue or 0,
        )
        return schemas.Dashboard(
            tiles=tiles,
            needs_attention=await StaffQueryService.needs_attention(db, policy, today),
            recent_activity=await StaffQueryService.recent_activity(db, limit=RECENT_ACTIVITY_LIMIT),
        )

    @staticmethod
    async def needs_attention(db: AsyncSession, policy: MembershipPolicy, today: date) -> List[schemas.AttentionItem]:
        """
        The oldest items waiting on staff: pre-approvals, board applications
        with the most unanswered votes and overdue members closest to lapsing.
        Ordered by kind, then oldest first.
        """
        items = []

        result = await db.execute(
            select(Application)
            .where(Application.status == ApplicationStatus.PENDING_PREAPPROVAL.value)
            .order_by(Application.submitted_at.asc(), Application.id.asc())
            .limit(ATTENTION_PER_KIND)
        )
        for application in result.scalars().all():
            items.append(schemas.AttentionItem(
                priority=1,
                type="preapproval",
                label=_applicant_name(application) or f"#{application.id}",
                detail="Oldest pending pre-approval",
                age_days=_age_days(application.submitted_at, today),
                application_id=application.id,
            ))

        unanswered = func.sum(case((ApplicationVote.vote == VoteChoice.UNANSWERED.value, 1), else_=0)).label("unanswered")
        result = await db.execute(
            select(Application, unanswered)
            .outerjoin(ApplicationVote, ApplicationVote.application_id == Application.id)
            .where(Application.status == ApplicationStatus.PENDING_BOARD_APPROVAL.value)
            .group_by(Application.id)
            .order_by(desc("unanswered"), Application.submitted_at.asc())
            .limit(ATTENTION_PER_KIND)
        )
        for application, count in result.all():
            items.append(schemas.AttentionItem(
                priority=2,
                type="board",
                label=_applicant_name(application) or f"#{application.id}",
                detail=f"Unanswered votes: {int(count or 0)}",
                age_days=_age_days(application.submitted_at, today),
                application_id=application.id,
            ))

        result = await db.execute(
            select(Subscription, Member, User)
            .join(Member, Member.id == Subscription.member_id)
            .outerjoin(User, User.id == Member.user_id)
            .where(*StaffQueryService._overdue_within_grace(policy, today))
            .order_by(Subscription.due_date.asc(), Subscription.id.asc())
            .limit(ATTENTION_PER_KIND)
        )
        for subscription, member, user in result.all():
            days_left = (subscription.due_date + timedelta(days=policy.grace_period_days) - today).days
            items.append(schemas.AttentionItem(
                priority=3,
                type="overdue",
                label=(user.full_name if user else None) or f"Member #{member.id}",
                detail=f"Grace days left: {days_left}",
                age_days=_age_days(subscription.due_date, today),
                subscription_id=subscription.id,
            ))

        items.sort(key=lambda item: (item.priority, -item.age_days))
        return items[:ATTENTION_LIMIT]

    # ==================== ACTIVITY ====================

    @staticmethod
    async def recent_activity(db: AsyncSession, *criteria, limit: int = ACTIVITY_LIMIT) -> List[schemas.ActivityEntry]:
        """Newest first."""
        result = await db.execute(
            select(ActivityLog)
            .where(*criteria)
            .order_by(ActivityLog.id.desc())
            .limit(limit)
        )
        return [schemas.ActivityEntry.model_validate(e) for e in result.scalars().all()]
