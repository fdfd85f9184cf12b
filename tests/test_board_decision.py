"""
Quorum evaluation, board finalization and first-year pro-rata pricing.
"""

from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import update

import crud
import models
from application_service import ApplicationService
from board_decision_service import BoardDecisionService, calculate_prorata, cycle_end_for
from config import MembershipPolicy
from exceptions import InvalidState
from notification_templates import ApplicationApproved, ApplicationRejectedByBoard, ApprovalOfficerNotice

PRICE = Decimal("145.00")


async def cast_votes(db, application_id, directors, choice):
    """Write votes directly so evaluation can be driven with a fixed date."""
    for director in directors:
        await db.execute(
            update(models.ApplicationVote)
            .where(
                models.ApplicationVote.application_id == application_id,
                models.ApplicationVote.director_id == director.id,
            )
            .values(vote=choice)
        )
    await db.commit()


@pytest.mark.parametrize("today, amount, months, end_date, year", [
    (date(2025, 1, 15), "72.50", 6, date(2025, 6, 30), 2025),
    (date(2025, 6, 14), "12.08", 1, date(2025, 6, 30), 2025),
    (date(2025, 6, 15), "145.00", 12, date(2026, 6, 30), 2026),
    (date(2025, 6, 30), "145.00", 12, date(2026, 6, 30), 2026),
    (date(2025, 7, 1), "145.00", 12, date(2026, 6, 30), 2026),
    (date(2025, 12, 1), "84.58", 7, date(2026, 6, 30), 2026),
])
def test_prorata_quote(today, amount, months, end_date, year):
    quote = calculate_prorata(PRICE, today, 15)

    assert quote.amount_due == Decimal(amount)
    assert quote.months_charged == months
    assert quote.end_date == end_date
    assert quote.membership_year == year
    assert quote.start_date == today
    assert quote.due_date == today


def test_prorata_uses_type_price():
    assert calculate_prorata(Decimal("70.00"), date(2025, 1, 15), 15).amount_due == Decimal("35.00")


def test_cycle_end():
    assert cycle_end_for(date(2025, 6, 30)) == date(2025, 6, 30)
    assert cycle_end_for(date(2025, 7, 1)) == date(2026, 6, 30)


async def test_vote_counts(db, directors, board_application):
    await cast_votes(db, board_application.id, directors[:2], "approved")
    await cast_votes(db, board_application.id, directors[2:3], "rejected")

    assert await BoardDecisionService.vote_counts(db, board_application.id) == (2, 1)


async def test_below_threshold_stays_pending(db, policy, mailer, directors, board_application):
    await cast_votes(db, board_application.id, directors[:2], "approved")
    await cast_votes(db, board_application.id, directors[2:4], "rejected")

    outcome = await BoardDecisionService.evaluate_after_vote(db, board_application.id, None, policy, mailer)

    assert outcome.finalized is False
    assert outcome.status == models.ApplicationStatus.PENDING_BOARD_APPROVAL.value
    assert (outcome.approvals, outcome.rejections) == (2, 2)


async def test_approval_quorum_creates_member_and_prorated_subscription(
    db, policy, mailer, officer, directors, board_application, events
):
    await cast_votes(db, board_application.id, directors[:3], "approved")

    outcome = await BoardDecisionService.evaluate_after_vote(
        db, board_application.id, directors[2].id, policy, mailer, today=date(2025, 1, 15)
    )

    assert outcome.finalized is True
    assert outcome.status == models.ApplicationStatus.APPROVED.value
    application = await crud.get_application(db, board_application.id)
    assert application.status == models.ApplicationStatus.APPROVED.value
    assert application.board_finalised_at is not None

    user = await crud.get_user_by_email(db, "jane.citizen@example.com")
    assert user.role == models.MembershipRole.PENDING_PAYMENT.value
    assert user.full_name == "Jane Citizen"
    member = await crud.get_member_by_user(db, user.id)
    assert member.status == models.MemberStatus.PENDING_PAYMENT.value
    assert member.application_id == board_application.id
    assert member.membership_number is None

    subscription = await crud.get_subscription_for_year(db, member.id, 2025)
    assert subscription.status == models.SubscriptionStatus.PENDING_PAYMENT.value
    assert subscription.amount_due == Decimal("72.50")
    assert subscription.amount_paid == Decimal("0.00")
    assert (subscription.start_date, subscription.end_date) == (date(2025, 1, 15), date(2025, 6, 30))

    approved = mailer.of_type(ApplicationApproved)
    assert len(approved) == 1
    to, notice = approved[0]
    assert to == "jane.citizen@example.com"
    assert notice.amount_due == Decimal("72.50")
    assert notice.password_setup_link.startswith(policy.password_setup_url)
    assert "BSB 062-000" in notice.render()[1]
    assert [to for to, _ in mailer.of_type(ApprovalOfficerNotice)] == ["officer@example.org"]

    trail = await events(application_id=board_application.id)
    assert "board_application_approved" in trail
    assert "role_assigned" in trail
    assert trail[-1] == "approval_notifications_sent"


async def test_late_june_approval_charges_next_full_year(db, policy, mailer, directors, board_application):
    await cast_votes(db, board_application.id, directors[:3], "approved")

    await BoardDecisionService.evaluate_after_vote(
        db, board_application.id, None, policy, mailer, today=date(2025, 6, 20)
    )

    user = await crud.get_user_by_email(db, "jane.citizen@example.com")
    member = await crud.get_member_by_user(db, user.id)
    subscription = await crud.get_subscription_for_year(db, member.id, 2026)
    assert subscription.amount_due == Decimal("145.00")
    assert subscription.end_date == date(2026, 6, 30)


async def test_second_evaluation_does_not_finalize_again(db, policy, mailer, directors, board_application, count_rows):
    await cast_votes(db, board_application.id, directors[:3], "approved")
    await BoardDecisionService.evaluate_after_vote(db, board_application.id, None, policy, mailer, today=date(2025, 1, 15))

    await cast_votes(db, board_application.id, directors[3:], "approved")
    outcome = await BoardDecisionService.evaluate_after_vote(
        db, board_application.id, None, policy, mailer, today=date(2025, 1, 15)
    )

    assert outcome.finalized is False
    assert outcome.status == models.ApplicationStatus.APPROVED.value
    assert len(mailer.of_type(ApplicationApproved)) == 1
    assert await count_rows(models.Member) == 1
    assert await count_rows(models.Subscription) == 1


async def test_rejection_quorum(db, policy, mailer, directors, board_application, count_rows, events):
    await cast_votes(db, board_application.id, directors[:3], "rejected")

    outcome = await BoardDecisionService.evaluate_after_vote(db, board_application.id, None, policy, mailer)

    assert outcome.finalized is True
    assert outcome.status == models.ApplicationStatus.REJECTED_BOARD.value
    assert [to for to, _ in mailer.of_type(ApplicationRejectedByBoard)] == ["jane.citizen@example.com"]
    assert await count_rows(models.Member) == 0
    assert (await events(application_id=board_application.id))[-2:] == [
        "board_application_rejected", "board_rejection_email_processed",
    ]


async def test_approval_takes_precedence_when_both_thresholds_met(db, mailer, directors, board_application):
    policy = MembershipPolicy(approval_threshold=2, rejection_threshold=2)
    await cast_votes(db, board_application.id, directors[:2], "approved")
    await cast_votes(db, board_application.id, directors[2:4], "rejected")

    outcome = await BoardDecisionService.evaluate_after_vote(
        db, board_application.id, None, policy, mailer, today=date(2025, 1, 15)
    )

    assert outcome.status == models.ApplicationStatus.APPROVED.value


async def test_existing_identity_is_reused(db, policy, mailer, make_user, directors, board_application, count_rows):
    existing = await make_user("jane.citizen@example.com", full_name="Jane C.")
    await cast_votes(db, board_application.id, directors[:3], "approved")

    await BoardDecisionService.evaluate_after_vote(db, board_application.id, None, policy, mailer, today=date(2025, 1, 15))

    assert await count_rows(models.User, models.User.email == "jane.citizen@example.com") == 1
    member = await crud.get_member_by_user(db, existing.id)
    assert member is not None
    assert member.application_id == board_application.id


async def test_existing_member_reports_outstanding_amount(
    db, policy, mailer, make_member, directors, board_application, count_rows
):
    _, member, _ = await make_member(email="jane.citizen@example.com", amount_due="72.50", amount_paid="20.00")
    await cast_votes(db, board_application.id, directors[:3], "approved")

    await BoardDecisionService.evaluate_after_vote(db, board_application.id, None, policy, mailer, today=date(2025, 1, 15))

    assert await count_rows(models.Subscription) == 1
    assert mailer.of_type(ApplicationApproved)[0][1].amount_due == Decimal("52.50")


async def test_vote_after_finalization_rejected_through_service(db, policy, mailer, directors, board_application):
    await cast_votes(db, board_application.id, directors[:3], "rejected")
    await BoardDecisionService.evaluate_after_vote(db, board_application.id, None, policy, mailer)

    with pytest.raises(InvalidState):
        await ApplicationService.record_vote(db, board_application.id, directors[4].id, "approved", None, policy, mailer)


async def test_assign_role_only_logs_changes(db, make_user, events):
    user = await make_user("someone@example.org")

    await BoardDecisionService.assign_role(db, user, models.MembershipRole.MEMBER)
    await BoardDecisionService.assign_role(db, user, models.MembershipRole.MEMBER)
    await db.commit()

    assert user.role == models.MembershipRole.MEMBER.value
    assert await events(event_type="role_assigned") == ["role_assigned"]


async def test_finalization_claimed_by_concurrent_vote_is_not_repeated(
    db, policy, mailer, directors, board_application, count_rows, monkeypatch
):
    await cast_votes(db, board_application.id, directors[:3], "approved")
    count_votes = BoardDecisionService.vote_counts

    async def counts_then_rival_finalizes(db, application_id):
        counts = await count_votes(db, application_id)
        # A concurrent vote finalizes the application after our status check passed
        await db.execute(
            update(models.Application)
            .where(models.Application.id == application_id)
            .values(status=models.ApplicationStatus.APPROVED.value)
            .execution_options(synchronize_session=False)
        )
        return counts

    monkeypatch.setattr(BoardDecisionService, "vote_counts", staticmethod(counts_then_rival_finalizes))

    outcome = await BoardDecisionService.evaluate_after_vote(
        db, board_application.id, None, policy, mailer, today=date(2025, 1, 15)
    )

    assert outcome.finalized is False
    assert outcome.status == models.ApplicationStatus.APPROVED.value
    assert mailer.of_type(ApplicationApproved) == []
    assert await count_rows(models.Member) == 0
    assert await count_rows(models.Subscription) == 0
