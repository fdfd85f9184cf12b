"""
Officer read views: application queue, member search, subscription views
and the dashboard.
"""

from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

import models
from application_service import ApplicationService
from exceptions import NotFound
from file_storage_service import UploadedDocument
from staff_query_service import StaffQueryService


async def test_application_queue_filters_and_counts(db, policy, mailer, storage, officer, directors, submission):
    ruth = await ApplicationService.submit(
        db, submission(applicant_email="ruth@example.com", applicant_first_name="Ruth"), [], policy, mailer, storage
    )
    bob = await ApplicationService.submit(
        db, submission(applicant_email="bob@example.com", applicant_first_name="Bob"), [], policy, mailer, storage
    )
    await ApplicationService.decide(db, bob.id, "preapprove", officer.id, mailer)

    listed = await StaffQueryService.list_applications(db)
    assert [a.id for a in listed] == [bob.id, ruth.id]

    board = await StaffQueryService.list_applications(db, status=models.ApplicationStatus.PENDING_BOARD_APPROVAL.value)
    assert [a.id for a in board] == [bob.id]

    unknown = await StaffQueryService.list_applications(db, status="archived")
    assert len(unknown) == 2

    assert [a.id for a in await StaffQueryService.list_applications(db, search="RUTH")] == [ruth.id]
    assert await StaffQueryService.list_applications(db, search="%") == []

    counts = await StaffQueryService.application_status_counts(db)
    assert counts == {
        models.ApplicationStatus.PENDING_PREAPPROVAL.value: 1,
        models.ApplicationStatus.PENDING_BOARD_APPROVAL.value: 1,
    }


async def test_application_detail_lists_votes_files_and_activity(db, policy, mailer, storage, officer, directors,
                                                                   submission):
    resume = UploadedDocument(label="Resume", filename="resume.pdf", content=b"%PDF-1.4", mime_type="application/pdf")
    application = await ApplicationService.submit(db, submission(), [resume], policy, mailer, storage)
    await ApplicationService.decide(db, application.id, "preapprove", officer.id, mailer)

    detail = await StaffQueryService.application_detail(db, application.id)

    assert detail.application.address_line_1 == "1 Collins Street"
    assert detail.application.preapproval_officer_id == officer.id
    assert [v.director_name for v in detail.votes] == [f"Director {i}" for i in range(1, 6)]
    assert all(v.vote == models.VoteChoice.UNANSWERED.value for v in detail.votes)
    assert [(f.file_label, f.original_filename) for f in detail.files] == [("Resume", "resume.pdf")]
    types = [e.event_type for e in detail.activity]
    assert types[0] == "board_review_notification_sent"
    assert types.index("director_votes_prepared") < types.index("application_preapproved")


async def test_application_detail_unknown(db):
    with pytest.raises(NotFound):
        await StaffQueryService.application_detail(db, 999)


async def test_member_listing_search_and_latest_subscription(db, make_member):
    _, ann, _ = await make_member(email="ann@example.org", membership_number="IEI-000010",
                                  member_status=models.MemberStatus.ACTIVE.value,
                                  subscription_status=models.SubscriptionStatus.ACTIVE.value)
    _, ben, _ = await make_member(email="ben@example.org")
    db.add(models.Subscription(
        member_id=ann.id, membership_year=2026, amount_due=Decimal("145.00"), amount_paid=Decimal("0.00"),
        status=models.SubscriptionStatus.PENDING_PAYMENT.value, due_date=date(2025, 7, 1),
    ))
    await db.commit()

    members = await StaffQueryService.list_members(db)
    assert [m.id for m in members] == [ben.id, ann.id]
    latest = {m.id: (m.membership_year, m.subscription_status) for m in members}
    assert latest[ann.id] == (2026, models.SubscriptionStatus.PENDING_PAYMENT.value)
    assert latest[ben.id] == (2025, models.SubscriptionStatus.PENDING_PAYMENT.value)

    assert [m.email for m in await StaffQueryService.list_members(db, search="IEI-000010")] == ["ann@example.org"]
    assert [m.full_name for m in await StaffQueryService.list_members(db, search="ben")] == ["Ben"]
    active = await StaffQueryService.list_members(db, status=models.MemberStatus.ACTIVE.value)
    assert [m.id for m in active] == [ann.id]
    assert len(await StaffQueryService.list_members(db, status="retired")) == 2


async def test_member_detail_includes_payments_and_application_activity(db, make_member, board_application):
    _, member, subscription = await make_member()
    member.application_id = board_application.id
    for reference, day in (("EFT 1", 10), ("EFT 2", 20)):
        db.add(models.Payment(
            member_id=member.id, subscription_id=subscription.id, amount=Decimal("72.50"), currency="AUD",
            payment_method="bank_transfer", gateway="manual", status=models.PaymentStatus.PAID.value,
            reference=reference, received_at=datetime(2025, 1, day, tzinfo=timezone.utc),
        ))
    db.add(models.ActivityLog(event_type="membership_note", member_id=member.id, context={}))
    await db.commit()

    detail = await StaffQueryService.member_detail(db, member.id)

    assert detail.member.email == "member@example.org"
    assert detail.latest_subscription.id == subscription.id
    assert [p.reference for p in detail.payments] == ["EFT 2", "EFT 1"]
    assert detail.activity[0].event_type == "membership_note"
    assert "application_preapproved" in [e.event_type for e in detail.activity]


async def test_member_detail_unknown(db):
    with pytest.raises(NotFound):
        await StaffQueryService.member_detail(db, 999)


async def test_subscription_views(db, make_member):
    _, pending, pending_sub = await make_member(email="pending@example.org", due_date=date(2025, 3, 1))
    _, _, active_sub = await make_member(
        email="active@example.org", member_status=models.MemberStatus.ACTIVE.value,
        subscription_status=models.SubscriptionStatus.ACTIVE.value, amount_paid="72.50",
    )
    _, _, lapsed_sub = await make_member(
        email="lapsed@example.org", member_status=models.MemberStatus.LAPSED.value,
        subscription_status=models.SubscriptionStatus.LAPSED.value, due_date=date(2024, 7, 1),
    )
    db.add(models.Payment(
        member_id=pending.id, subscription_id=pending_sub.id, amount=Decimal("10.00"), currency="AUD",
        payment_method="bank_transfer", gateway="manual", status=models.PaymentStatus.PAID.value,
        reference="PART-PAYMENT", received_at=datetime(2025, 2, 1, tzinfo=timezone.utc),
    ))
    await db.commit()

    outstanding = await StaffQueryService.list_subscriptions(db)
    assert [r.subscription_id for r in outstanding] == [lapsed_sub.id, pending_sub.id]
    assert outstanding[1].last_payment_reference == "PART-PAYMENT"

    completed = await StaffQueryService.list_subscriptions(db, view="completed")
    assert [r.subscription_id for r in completed] == [active_sub.id]

    assert len(await StaffQueryService.list_subscriptions(db, view="all")) == 3
    assert len(await StaffQueryService.list_subscriptions(db, view="everything")) == 2

    found = await StaffQueryService.list_subscriptions(db, view="all", search="part-pay")
    assert [r.email for r in found] == ["pending@example.org"]


async def test_dashboard_tiles_and_attention(db, policy, mailer, storage, make_member, board_application,
                                             submission):
    waiting = await ApplicationService.submit(
        db, submission(applicant_email="new@example.com", applicant_first_name="Nina"), [], policy, mailer, storage
    )
    _, _, overdue = await make_member(due_date=date(2025, 1, 15))
    await make_member(email="old@example.org", due_date=date(2024, 11, 1))

    dashboard = await StaffQueryService.dashboard(db, policy, today=date(2025, 2, 1))

    assert dashboard.tiles.pending_preapproval == 1
    assert dashboard.tiles.pending_board_approval == 1
    assert dashboard.tiles.payment_pending == 2
    assert dashboard.tiles.overdue_within_grace == 1

    attention = [(item.type, item.detail) for item in dashboard.needs_attention]
    assert attention == [
        ("preapproval", "Oldest pending pre-approval"),
        ("board", "Unanswered votes: 5"),
        ("overdue", "Grace days left: 13"),
    ]
    assert dashboard.needs_attention[0].application_id == waiting.id
    assert dashboard.needs_attention[1].application_id == board_application.id
    assert dashboard.needs_attention[2].subscription_id == overdue.id
    assert dashboard.needs_attention[2].age_days == 17
    assert dashboard.recent_activity
