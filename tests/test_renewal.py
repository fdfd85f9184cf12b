"""
Daily maintenance: renewal issuance, overdue marking and lapsing after grace.
"""

from datetime import date
from decimal import Decimal

import pytest

import crud
import models
from notification_templates import MembershipLapsed, RenewalDue, SubscriptionOverdue
from payment_activation_service import PaymentActivationService
from renewal_service import RenewalService, grace_deadline, next_cycle_start


@pytest.fixture
def active_member(make_member):
    """A paid-up member whose 2025 subscription ends on June 30"""
    async def factory(email="member@example.org", membership_number="IEI-000001"):
        return await make_member(
            email=email,
            member_status=models.MemberStatus.ACTIVE.value,
            role=models.MembershipRole.MEMBER.value,
            membership_number=membership_number,
            membership_year=2025,
            amount_due="145.00",
            amount_paid="145.00",
            subscription_status=models.SubscriptionStatus.ACTIVE.value,
            start_date=date(2024, 7, 1),
            end_date=date(2025, 6, 30),
            due_date=date(2024, 7, 1),
        )
    return factory


@pytest.fixture
def overdue_member(make_member):
    async def factory(grace_until=date(2025, 7, 31)):
        return await make_member(
            member_status=models.MemberStatus.ACTIVE.value,
            role=models.MembershipRole.MEMBER.value,
            membership_number="IEI-000001",
            membership_year=2026,
            amount_due="145.00",
            subscription_status=models.SubscriptionStatus.OVERDUE.value,
            start_date=date(2025, 7, 1),
            end_date=date(2026, 6, 30),
            due_date=date(2025, 7, 1),
            grace_until=grace_until,
        )
    return factory


def test_next_cycle_start():
    assert next_cycle_start(date(2025, 6, 10)) == date(2025, 7, 1)
    assert next_cycle_start(date(2025, 7, 1)) == date(2025, 7, 1)
    assert next_cycle_start(date(2025, 7, 2)) == date(2026, 7, 1)


def test_grace_deadline_falls_back_to_due_date():
    subscription = models.Subscription(due_date=date(2025, 7, 1))
    assert grace_deadline(subscription, 30) == date(2025, 7, 31)
    subscription.grace_until = date(2025, 8, 15)
    assert grace_deadline(subscription, 30) == date(2025, 8, 15)
    assert grace_deadline(models.Subscription(), 30) is None


async def test_renewal_issued_inside_notice_window(db, policy, mailer, active_member, events):
    _, member, _ = await active_member()

    created = await RenewalService.issue_renewals(db, policy, mailer, date(2025, 6, 10))

    assert created == 1
    renewal = await crud.get_subscription_for_year(db, member.id, 2026)
    assert renewal.status == models.SubscriptionStatus.PENDING_PAYMENT.value
    assert renewal.amount_due == Decimal("145.00")
    assert renewal.amount_paid == Decimal("0.00")
    assert (renewal.start_date, renewal.end_date) == (date(2025, 7, 1), date(2026, 6, 30))
    assert renewal.due_date == date(2025, 7, 1)

    [(to, notice)] = mailer.of_type(RenewalDue)
    assert to == "member@example.org"
    assert notice.membership_year == 2026
    assert (await events(member_id=member.id)) == ["renewal_subscription_created"]


async def test_renewal_issued_once(db, policy, mailer, active_member, count_rows):
    await active_member()

    await RenewalService.issue_renewals(db, policy, mailer, date(2025, 6, 10))
    again = await RenewalService.issue_renewals(db, policy, mailer, date(2025, 6, 11))

    assert again == 0
    assert await count_rows(models.Subscription) == 2
    assert len(mailer.of_type(RenewalDue)) == 1


async def test_no_renewal_outside_notice_window(db, policy, mailer, active_member):
    await active_member()

    assert await RenewalService.issue_renewals(db, policy, mailer, date(2025, 5, 1)) == 0
    assert mailer.notifications == []


async def test_no_renewal_for_inactive_member(db, policy, mailer, make_member):
    await make_member(
        member_status=models.MemberStatus.LAPSED.value,
        subscription_status=models.SubscriptionStatus.ACTIVE.value,
        start_date=date(2024, 7, 1), end_date=date(2025, 6, 30),
    )

    assert await RenewalService.issue_renewals(db, policy, mailer, date(2025, 6, 10)) == 0


async def test_unpaid_renewal_goes_overdue_on_july_first(db, policy, mailer, active_member, events):
    _, member, _ = await active_member()
    await RenewalService.issue_renewals(db, policy, mailer, date(2025, 6, 10))

    marked = await RenewalService.mark_unpaid_renewals_overdue(db, policy, mailer, date(2025, 7, 1))

    assert marked == 1
    renewal = await crud.get_subscription_for_year(db, member.id, 2026)
    assert renewal.status == models.SubscriptionStatus.OVERDUE.value
    assert renewal.grace_until == date(2025, 7, 31)
    await db.refresh(member)
    assert member.status == models.MemberStatus.ACTIVE.value
    [(_, notice)] = mailer.of_type(SubscriptionOverdue)
    assert notice.grace_until == date(2025, 7, 31)
    assert (await events(member_id=member.id))[-1] == "subscription_marked_overdue"

    assert await RenewalService.mark_unpaid_renewals_overdue(db, policy, mailer, date(2025, 7, 1)) == 0
    assert len(mailer.of_type(SubscriptionOverdue)) == 1


async def test_overdue_marking_only_runs_on_july_first(db, policy, mailer, active_member):
    await active_member()
    await RenewalService.issue_renewals(db, policy, mailer, date(2025, 6, 10))

    assert await RenewalService.mark_unpaid_renewals_overdue(db, policy, mailer, date(2025, 7, 2)) == 0
    assert await RenewalService.mark_unpaid_renewals_overdue(db, policy, mailer, date(2025, 6, 30)) == 0


async def test_first_year_subscription_due_mid_cycle_never_goes_overdue(db, policy, mailer, make_member):
    await make_member(due_date=date(2025, 1, 15))

    assert await RenewalService.mark_unpaid_renewals_overdue(db, policy, mailer, date(2025, 7, 1)) == 0


async def test_overdue_lapses_after_grace(db, policy, mailer, overdue_member, events):
    user, member, subscription = await overdue_member()

    assert await RenewalService.mark_overdue_as_lapsed(db, policy, mailer, date(2025, 7, 31)) == 0
    lapsed = await RenewalService.mark_overdue_as_lapsed(db, policy, mailer, date(2025, 8, 1))

    assert lapsed == 1
    await db.refresh(subscription)
    await db.refresh(member)
    await db.refresh(user)
    assert subscription.status == models.SubscriptionStatus.LAPSED.value
    assert member.status == models.MemberStatus.LAPSED.value
    assert member.lapsed_at is not None
    assert member.membership_number == "IEI-000001"
    assert user.role == models.MembershipRole.PENDING_PAYMENT.value
    assert [to for to, _ in mailer.of_type(MembershipLapsed)] == ["member@example.org"]
    assert (await events(member_id=member.id))[-1] == "subscription_lapsed_after_grace"

    assert await RenewalService.mark_overdue_as_lapsed(db, policy, mailer, date(2025, 8, 2)) == 0
    assert len(mailer.of_type(MembershipLapsed)) == 1


async def test_lapse_uses_due_date_when_grace_missing(db, policy, mailer, overdue_member):
    await overdue_member(grace_until=None)

    assert await RenewalService.mark_overdue_as_lapsed(db, policy, mailer, date(2025, 7, 31)) == 0
    assert await RenewalService.mark_overdue_as_lapsed(db, policy, mailer, date(2025, 8, 1)) == 1


async def test_daily_run_is_repeatable(db, policy, mailer, active_member):
    await active_member()

    first = await RenewalService.run_daily_maintenance(db, policy, mailer, date(2025, 7, 1))
    second = await RenewalService.run_daily_maintenance(db, policy, mailer, date(2025, 7, 1))

    assert (first.renewals_created, first.marked_overdue, first.marked_lapsed) == (1, 0, 0)
    assert (second.renewals_created, second.marked_overdue, second.marked_lapsed) == (0, 0, 0)


async def test_renewal_issued_on_july_first_gets_a_single_notice(db, policy, mailer, active_member, events):
    _, member, _ = await active_member()

    report = await RenewalService.run_daily_maintenance(db, policy, mailer, date(2025, 7, 1))

    assert (report.renewals_created, report.marked_overdue) == (1, 0)
    renewal = await crud.get_subscription_for_year(db, member.id, 2026)
    assert renewal.status == models.SubscriptionStatus.PENDING_PAYMENT.value
    assert renewal.issued_on == date(2025, 7, 1)
    assert renewal.grace_until is None
    assert len(mailer.of_type(RenewalDue)) == 1
    assert mailer.of_type(SubscriptionOverdue) == []
    assert "subscription_marked_overdue" not in await events(member_id=member.id)


async def test_paying_lapsed_renewal_restores_membership(db, policy, mailer, active_member):
    user, member, _ = await active_member()
    for today in (date(2025, 6, 10), date(2025, 7, 1), date(2025, 8, 1)):
        await RenewalService.run_daily_maintenance(db, policy, mailer, today)
    renewal = await crud.get_subscription_for_year(db, member.id, 2026)
    assert renewal.status == models.SubscriptionStatus.LAPSED.value

    result = await PaymentActivationService.reconcile(
        db, renewal.id, "145.00", "AUD", "paypal", "CAPTURE-77", policy, mailer
    )

    assert result.membership_number == "IEI-000001"
    await db.refresh(member)
    await db.refresh(user)
    assert member.status == models.MemberStatus.ACTIVE.value
    assert user.role == models.MembershipRole.MEMBER.value
