"""
Application submission, officer pre-approval and director vote handling.
"""

import pytest
from sqlalchemy import select

import crud
import models
from application_service import ApplicationService, validate_submission
from exceptions import InvalidState, NotFound, StorageFailure, ValidationError
from file_storage_service import UploadedDocument
from notification_templates import BoardReviewRequested, DirectorVoteReminder, PreapprovalRequested


def pdf(label="Resume", filename="resume.pdf", size=1024):
    return UploadedDocument(label=label, filename=filename, content=b"%" * size, mime_type="application/pdf")


async def test_submit_creates_pending_application_and_notifies_officers(
    db, policy, mailer, storage, officer, submission, events
):
    application = await ApplicationService.submit(
        db, submission(application_notes="Happy to help"), [pdf()], policy, mailer, storage
    )

    assert application.status == models.ApplicationStatus.PENDING_PREAPPROVAL.value
    assert application.applicant_email == "jane.citizen@example.com"
    assert application.public_token

    notices = mailer.of_type(PreapprovalRequested)
    assert len(notices) == 1
    assert notices[0][0] == ["officer@example.org"]

    trail = await events(application_id=application.id)
    assert trail == [
        "application_submitted",
        "application_notes_submitted",
        "application_files_saved",
        "preapproval_notification_sent",
    ]

    result = await db.execute(select(models.ApplicationFile).where(models.ApplicationFile.application_id == application.id))
    stored = result.scalars().all()
    assert len(stored) == 1
    assert stored[0].original_filename == "resume.pdf"
    assert (storage.base_dir / stored[0].storage_filename).read_bytes() == b"%" * 1024


async def test_submit_without_officers_falls_back_to_site_admin(db, policy, mailer, storage, submission):
    await ApplicationService.submit(db, submission(), [], policy, mailer, storage)

    assert mailer.of_type(PreapprovalRequested)[0][0] == ["admin@example.org"]


async def test_submit_reports_every_error_and_writes_nothing(db, policy, mailer, storage, submission, count_rows):
    data = submission(
        applicant_email="not-an-email",
        applicant_first_name="",
        state="XX",
        mobile="",
        signature_text="",
    )

    with pytest.raises(ValidationError) as exc_info:
        await ApplicationService.submit(db, data, [pdf(filename="virus.exe")], policy, mailer, storage)

    errors = exc_info.value.errors
    assert "First name is required." in errors
    assert "Please select a valid Australian state." in errors
    assert "Please provide at least a phone or mobile number." in errors
    assert "A valid email address is required." in errors
    assert "Signature is required." in errors
    assert any("virus.exe" in e for e in errors)
    assert await count_rows(models.Application) == 0
    assert mailer.notifications == []


async def test_honeypot_rejects_submission(db, policy, mailer, storage, submission, count_rows):
    with pytest.raises(ValidationError):
        await ApplicationService.submit(db, submission(website="http://spam.example"), [], policy, mailer, storage)
    assert await count_rows(models.Application) == 0


def test_nomination_by_member_requires_nominator(submission):
    errors = validate_submission(submission(nomination_status="nominated_by_member"))
    assert "Nominating member number is required when nominated by a member." in errors
    assert "Nominating member name is required when nominated by a member." in errors


async def test_too_many_or_oversized_files_rejected(db, policy, mailer, storage, submission):
    files = [pdf(filename=f"doc{i}.pdf") for i in range(policy.max_upload_files + 1)]
    files.append(pdf(filename="huge.pdf", size=policy.max_upload_bytes + 1))

    with pytest.raises(ValidationError) as exc_info:
        await ApplicationService.submit(db, submission(), files, policy, mailer, storage)

    assert any("at most" in e for e in exc_info.value.errors)
    assert any("huge.pdf" in e for e in exc_info.value.errors)


async def test_storage_failure_keeps_application_and_still_notifies(
    db, policy, mailer, failing_storage, officer, submission, events, count_rows
):
    with pytest.raises(StorageFailure):
        await ApplicationService.submit(db, submission(), [pdf()], policy, mailer, failing_storage)

    assert await count_rows(models.Application) == 1
    assert len(mailer.of_type(PreapprovalRequested)) == 1
    trail = await events()
    assert "application_file_store_failed" in trail
    assert "application_files_saved" not in trail
    assert trail[-1] == "preapproval_notification_sent"


async def test_preapprove_prepares_votes_for_enabled_directors_only(
    db, policy, mailer, storage, officer, directors, submission, events
):
    directors[4].director_disabled = True
    await db.commit()
    application = await ApplicationService.submit(db, submission(), [], policy, mailer, storage)

    decided = await ApplicationService.decide(db, application.id, "preapprove", officer.id, mailer)

    assert decided.status == models.ApplicationStatus.PENDING_BOARD_APPROVAL.value
    assert decided.preapproval_officer_id == officer.id
    votes = await crud.get_votes(db, application.id)
    assert sorted(v.director_id for v in votes) == sorted(d.id for d in directors[:4])
    assert all(v.vote == models.VoteChoice.UNANSWERED.value for v in votes)
    assert sorted(to for to, _ in mailer.of_type(BoardReviewRequested)) == sorted(d.email for d in directors[:4])
    assert (await events(application_id=application.id))[-3:] == [
        "application_preapproved",
        "director_votes_prepared",
        "board_review_notification_sent",
    ]


async def test_reject_at_preapproval_ends_application(db, policy, mailer, storage, officer, directors, submission, count_rows):
    application = await ApplicationService.submit(db, submission(), [], policy, mailer, storage)

    decided = await ApplicationService.decide(db, application.id, "reject", officer.id, mailer)

    assert decided.status == models.ApplicationStatus.REJECTED_PREAPPROVAL.value
    assert await count_rows(models.ApplicationVote) == 0
    assert mailer.of_type(BoardReviewRequested) == []


async def test_second_decision_is_refused_and_logged(db, mailer, officer, board_application, events):
    with pytest.raises(InvalidState):
        await ApplicationService.decide(db, board_application.id, "reject", officer.id, mailer)

    assert (await events(application_id=board_application.id))[-1] == "application_decision_rejected"
    application = await crud.get_application(db, board_application.id)
    assert application.status == models.ApplicationStatus.PENDING_BOARD_APPROVAL.value


async def test_unknown_decision_rejected(db, mailer, officer, board_application):
    with pytest.raises(ValidationError):
        await ApplicationService.decide(db, board_application.id, "maybe", officer.id, mailer)


async def test_decision_on_missing_application(db, mailer, officer):
    with pytest.raises(NotFound):
        await ApplicationService.decide(db, 9999, "preapprove", officer.id, mailer)


async def test_record_vote_stores_choice_without_finalizing(db, policy, mailer, directors, board_application):
    outcome = await ApplicationService.record_vote(
        db, board_application.id, directors[0].id, "approved", "  Strong candidate ", policy, mailer
    )

    assert outcome.finalized is False
    assert outcome.approvals == 1
    vote = await crud.get_vote(db, board_application.id, directors[0].id)
    assert vote.vote == models.VoteChoice.APPROVED.value
    assert vote.note == "Strong candidate"
    assert vote.voted_at is not None


async def test_invalid_vote_value_rejected(db, policy, mailer, directors, board_application):
    with pytest.raises(ValidationError):
        await ApplicationService.record_vote(db, board_application.id, directors[0].id, "abstain", None, policy, mailer)


async def test_disabled_director_cannot_vote(db, policy, mailer, directors, board_application):
    directors[1].director_disabled = True
    await db.commit()

    with pytest.raises(InvalidState):
        await ApplicationService.record_vote(db, board_application.id, directors[1].id, "approved", None, policy, mailer)


async def test_reset_vote_returns_to_unanswered(db, policy, mailer, officer, directors, board_application, events):
    await ApplicationService.record_vote(db, board_application.id, directors[0].id, "rejected", "No", policy, mailer)

    await ApplicationService.reset_vote(db, board_application.id, directors[0].id, officer.id)

    vote = await crud.get_vote(db, board_application.id, directors[0].id)
    assert vote.vote == models.VoteChoice.UNANSWERED.value
    assert vote.note is None
    assert vote.reset_by == officer.id
    assert (await events(application_id=board_application.id))[-1] == "director_vote_reset"


async def test_votes_and_resets_refused_once_board_has_decided(db, policy, mailer, officer, directors, board_application):
    for director in directors[:3]:
        await ApplicationService.record_vote(db, board_application.id, director.id, "approved", None, policy, mailer)

    with pytest.raises(InvalidState):
        await ApplicationService.record_vote(db, board_application.id, directors[3].id, "rejected", None, policy, mailer)
    with pytest.raises(InvalidState):
        await ApplicationService.reset_vote(db, board_application.id, directors[0].id, officer.id)


async def test_reminder_counts_all_non_responders_but_skips_disabled(
    db, policy, mailer, officer, directors, board_application
):
    await ApplicationService.record_vote(db, board_application.id, directors[0].id, "approved", None, policy, mailer)
    directors[4].director_disabled = True
    await db.commit()

    result = await ApplicationService.send_reminder(db, board_application.id, officer.id, mailer)

    assert result.non_responder_count == 4
    assert result.sent_count == 3
    reminded = sorted(to for to, _ in mailer.of_type(DirectorVoteReminder))
    assert reminded == sorted(d.email for d in directors[1:4])


async def test_mark_viewed_records_first_and_last_view(db, directors, board_application):
    await ApplicationService.mark_viewed(db, board_application.id, directors[0].id)
    vote = await ApplicationService.mark_viewed(db, board_application.id, directors[0].id)

    assert vote.viewed_at is not None
    assert vote.last_viewed_at is not None
    result = await db.execute(
        select(models.ActivityLog.context)
        .where(models.ActivityLog.event_type == "director_application_viewed")
        .order_by(models.ActivityLog.id)
    )
    assert [c["first_view"] for c in result.scalars().all()] == [True, False]


async def test_pending_list_for_director(db, directors, board_application):
    pairs = await ApplicationService.list_pending_for_director(db, directors[2].id)

    assert [(a.id, v.director_id) for a, v in pairs] == [(board_application.id, directors[2].id)]
