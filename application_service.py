"""
Application Service - Public submission, officer pre-approval and board vote handling
"""

import logging
from datetime import datetime, timezone
from typing import List, Optional, Sequence

from email_validator import EmailNotValidError, validate_email
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

import crud
from activity_log_service import ActivityLogger
from board_decision_service import BoardDecisionService
from config import MembershipPolicy
from exceptions import InvalidState, NotFound, StorageFailure, ValidationError
from file_storage_service import FileStorage, UploadedDocument, present_uploads, validate_uploads
from models import (
    Application, ApplicationVote, ApplicationStatus, MembershipType, NominationStatus, User, VoteChoice,
)
from notification_templates import BoardReviewRequested, DirectorVoteReminder, PreapprovalRequested
from schemas import ApplicationSubmission, BoardOutcome, ReminderResult
from ses_service import Mailer

log = logging.getLogger(__name__)

AUSTRALIAN_STATES = ("ACT", "NSW", "NT", "QLD", "SA", "TAS", "VIC", "WA")
DECISIONS = ("preapprove", "reject")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _clean(value: Optional[str]) -> str:
    return (value or "").strip()


def validate_submission(data: ApplicationSubmission) -> List[str]:
    """Check the applicant fields and return every error found."""
    errors = []
    if not _clean(data.applicant_first_name):
        errors.append("First name is required.")
    if not _clean(data.applicant_last_name):
        errors.append("Last name is required.")
    if not _clean(data.address_line_1):
        errors.append("Address Line 1 is required.")
    if not _clean(data.suburb):
        errors.append("Suburb is required.")
    if _clean(data.state).upper() not in AUSTRALIAN_STATES:
        errors.append("Please select a valid Australian state.")
    if not _clean(data.postcode):
        errors.append("Postcode is required.")
    if not _clean(data.phone) and not _clean(data.mobile):
        errors.append("Please provide at least a phone or mobile number.")
    try:
        validate_email(_clean(data.applicant_email), check_deliverability=False)
    except EmailNotValidError:
        errors.append("A valid email address is required.")
    if data.membership_type not in [t.value for t in MembershipType]:
        errors.append("Please select a valid membership type.")
    if data.nomination_status not in [n.value for n in NominationStatus]:
        errors.append("Please select a valid nomination status.")
    elif data.nomination_status == NominationStatus.NOMINATED_BY_MEMBER.value:
        if not _clean(data.nominating_member_number):
            errors.append("Nominating member number is required when nominated by a member.")
        if not _clean(data.nominating_member_name):
            errors.append("Nominating member name is required when nominated by a member.")
    if not _clean(data.signature_text):
        errors.append("Signature is required.")
    return errors


def _vote_window_open(application_id: int):
    """SQL condition: the application is still collecting board votes."""
    return (
        select(Application.id)
        .where(
            Application.id == application_id,
            Application.status == ApplicationStatus.PENDING_BOARD_APPROVAL.value,
        )
        .exists()
    )


class ApplicationService:
    """Drives an application from submission through pre-approval and board voting"""

    @staticmethod
    async def submit(
        db: AsyncSession,
        data: ApplicationSubmission,
        files: Sequence[UploadedDocument],
        policy: MembershipPolicy,
        mailer: Mailer,
        storage: FileStorage,
        actor_id: Optional[int] = None,
    ) -> Application:
        """
        Persist a new application in pending_preapproval, store its attachments
        and notify pre-approval officers.

        Raises ValidationError before any write. Raises StorageFailure after the
        application is saved and officers are notified when an attachment could
        not be stored.
        """
        if _clean(data.website):
            log.warning("Application submission rejected by honeypot")
            raise ValidationError(["Spam check failed."])

        files = present_uploads(files)
        errors = validate_submission(data) + validate_uploads(files, policy)
        if errors:
            raise ValidationError(errors)

        nominated = data.nomination_status == NominationStatus.NOMINATED_BY_MEMBER.value
        application = Application(
            applicant_email=_clean(data.applicant_email).lower(),
            applicant_first_name=_clean(data.applicant_first_name),
            applicant_middle_name=_clean(data.applicant_middle_name) or None,
            applicant_last_name=_clean(data.applicant_last_name),
            address_line_1=_clean(data.address_line_1),
            address_line_2=_clean(data.address_line_2) or None,
            suburb=_clean(data.suburb),
            state=_clean(data.state).upper(),
            postcode=_clean(data.postcode),
            phone=_clean(data.phone) or None,
            mobile=_clean(data.mobile) or None,
            employer=_clean(data.employer) or None,
            job_position=_clean(data.job_position) or None,
            membership_type=data.membership_type,
            nomination_status=data.nomination_status,
            nominating_member_number=_clean(data.nominating_member_number) if nominated else None,
            nominating_member_name=_clean(data.nominating_member_name) if nominated else None,
            signature_text=_clean(data.signature_text),
            application_notes=_clean(data.application_notes) or None,
            status=ApplicationStatus.PENDING_PREAPPROVAL.value,
            submitted_at=_now(),
        )
        db.add(application)
        await db.flush()

        await ActivityLogger.log_application_event(db, application.id, "application_submitted", {
            "email": application.applicant_email,
            "membership_type": application.membership_type,
            "file_count": len(files),
        }, actor_id)
        if application.application_notes:
            await ActivityLogger.log_application_event(db, application.id, "application_notes_submitted", {
                "length": len(application.application_notes),
            }, actor_id)
        await db.commit()
        log.info(f"Application {application.id} submitted by {application.applicant_email}")

        storage_error = None
        stored = 0
        for upload in files:
            try:
                await storage.store(db, application.id, upload, uploaded_by=actor_id)
                await db.commit()
                stored += 1
            except StorageFailure as e:
                storage_error = e
                await db.rollback()
                await db.refresh(application)
                await ActivityLogger.log_application_event(db, application.id, "application_file_store_failed", {
                    "file_label": upload.label,
                    "filename": upload.filename,
                }, actor_id, commit=True)
                break
        if storage_error is None and stored:
            await ActivityLogger.log_application_event(db, application.id, "application_files_saved", {
                "file_count": stored,
            }, actor_id, commit=True)

        recipients = await crud.get_officer_emails(db) or [policy.site_admin_email]
        sent = await mailer.send_notification(recipients, PreapprovalRequested(
            application_id=application.id,
            applicant_name=application.applicant_full_name,
            membership_type=application.membership_type,
        ))
        await ActivityLogger.log_application_event(db, application.id, "preapproval_notification_sent", {
            "recipient_count": len(recipients),
            "sent": sent,
        }, actor_id, commit=True)

        if storage_error is not None:
            raise storage_error
        return application

    @staticmethod
    async def decide(
        db: AsyncSession,
        application_id: int,
        decision: str,
        officer_id: int,
        mailer: Mailer,
    ) -> Application:
        """Officer pre-approval step: 'preapprove' opens board voting, 'reject' ends the application."""
        if decision not in DECISIONS:
            raise ValidationError([f"Decision must be one of: {', '.join(DECISIONS)}."])

        application = await crud.get_application(db, application_id)
        if application.status != ApplicationStatus.PENDING_PREAPPROVAL.value:
            await ActivityLogger.log_application_event(db, application_id, "application_decision_rejected", {
                "decision": decision,
                "status": application.status,
            }, officer_id, commit=True)
            log.warning(f"Decision '{decision}' on application {application_id} refused in status {application.status}")
            raise InvalidState(f"Application is {application.status}, not pending pre-approval")

        new_status = (
            ApplicationStatus.PENDING_BOARD_APPROVAL if decision == "preapprove"
            else ApplicationStatus.REJECTED_PREAPPROVAL
        )
        now = _now()
        result = await db.execute(
            update(Application)
            .where(
                Application.id == application_id,
                Application.status == ApplicationStatus.PENDING_PREAPPROVAL.value,
            )
            .values(status=new_status.value, preapproval_officer_id=officer_id, preapproval_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            await db.rollback()
            raise InvalidState("Application was decided by another officer")

        if new_status == ApplicationStatus.REJECTED_PREAPPROVAL:
            await ActivityLogger.log_application_event(
                db, application_id, "application_rejected_preapproval", {}, officer_id
            )
            await db.commit()
            await db.refresh(application)
            log.info(f"Application {application_id} rejected at pre-approval by officer {officer_id}")
            return application

        await ActivityLogger.log_application_event(db, application_id, "application_preapproved", {}, officer_id)
        directors = await crud.get_enabled_directors(db)
        for director in directors:
            await ApplicationService._prepare_vote(db, application_id, director.id)
        await ActivityLogger.log_application_event(db, application_id, "director_votes_prepared", {
            "director_count": len(directors),
        }, officer_id)
        await db.commit()
        await db.refresh(application)
        log.info(f"Application {application_id} pre-approved; {len(directors)} director votes prepared")

        sent_count = 0
        for director in directors:
            sent = await mailer.send_notification(director.email, BoardReviewRequested(
                application_id=application_id,
                applicant_name=application.applicant_full_name,
                director_name=director.full_name or "",
            ))
            sent_count += int(sent)
        await ActivityLogger.log_application_event(db, application_id, "board_review_notification_sent", {
            "recipient_count": len(directors),
            "sent_count": sent_count,
        }, officer_id, commit=True)
        return application

    @staticmethod
    async def _prepare_vote(db: AsyncSession, application_id: int, director_id: int) -> None:
        vote = await crud.get_vote(db, application_id, director_id)
        if vote is None:
            db.add(ApplicationVote(
                application_id=application_id,
                director_id=director_id,
                vote=VoteChoice.UNANSWERED.value,
            ))
            return
        vote.vote = VoteChoice.UNANSWERED.value
        vote.viewed_at = None
        vote.last_viewed_at = None
        vote.responded_at = None
        vote.voted_at = None
        vote.note = None
        vote.reset_by = None
        vote.reset_at = None

    @staticmethod
    async def _require_board_stage(db: AsyncSession, application_id: int) -> Application:
        application = await crud.get_application(db, application_id)
        if application.status != ApplicationStatus.PENDING_BOARD_APPROVAL.value:
            raise InvalidState(f"Application is {application.status}, not pending board approval")
        return application

    @staticmethod
    async def reset_vote(db: AsyncSession, application_id: int, director_id: int, officer_id: int) -> None:
        """Return a director's vote to unanswered while the board is still deciding."""
        await ApplicationService._require_board_stage(db, application_id)
        if await crud.get_vote(db, application_id, director_id) is None:
            raise NotFound(f"No vote for director {director_id} on application {application_id}")

        result = await db.execute(
            update(ApplicationVote)
            .where(
                ApplicationVote.application_id == application_id,
                ApplicationVote.director_id == director_id,
                _vote_window_open(application_id),
            )
            .values(
                vote=VoteChoice.UNANSWERED.value,
                note=None,
                responded_at=None,
                voted_at=None,
                reset_by=officer_id,
                reset_at=_now(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            await db.rollback()
            raise InvalidState("Board voting has already closed")

        await ActivityLogger.log_application_event(db, application_id, "director_vote_reset", {
            "director_user_id": director_id,
        }, officer_id)
        await db.commit()
        log.info(f"Vote of director {director_id} on application {application_id} reset by {officer_id}")

    @staticmethod
    async def send_reminder(
        db: AsyncSession,
        application_id: int,
        officer_id: int,
        mailer: Mailer,
    ) -> ReminderResult:
        """Email every enabled director whose vote is still unanswered."""
        application = await ApplicationService._require_board_stage(db, application_id)
        result = await db.execute(
            select(ApplicationVote, User)
            .join(User, User.id == ApplicationVote.director_id)
            .where(
                ApplicationVote.application_id == application_id,
                ApplicationVote.vote == VoteChoice.UNANSWERED.value,
            )
            .order_by(ApplicationVote.id)
        )
        non_responders = result.all()

        sent_count = 0
        for _vote, director in non_responders:
            if director.director_disabled:
                continue
            sent = await mailer.send_notification(director.email, DirectorVoteReminder(
                application_id=application_id,
                applicant_name=application.applicant_full_name,
                director_name=director.full_name or "",
            ))
            sent_count += int(sent)

        reminder = ReminderResult(non_responder_count=len(non_responders), sent_count=sent_count)
        await ActivityLogger.log_application_event(
            db, application_id, "director_reminder_sent", reminder.model_dump(), officer_id, commit=True
        )
        return reminder

    @staticmethod
    async def record_vote(
        db: AsyncSession,
        application_id: int,
        director_id: int,
        vote: str,
        comment: Optional[str],
        policy: MembershipPolicy,
        mailer: Mailer,
    ) -> BoardOutcome:
        """Store a director's vote and let the board engine re-evaluate the application."""
        if vote not in (VoteChoice.APPROVED.value, VoteChoice.REJECTED.value):
            raise ValidationError(["Vote must be approved or rejected."])

        director = await crud.get_user(db, director_id)
        if director is None or director.director_disabled:
            raise InvalidState("Director is not allowed to vote")
        await ApplicationService._require_board_stage(db, application_id)
        if await crud.get_vote(db, application_id, director_id) is None:
            raise NotFound(f"Director {director_id} has no vote on application {application_id}")

        now = _now()
        result = await db.execute(
            update(ApplicationVote)
            .where(
                ApplicationVote.application_id == application_id,
                ApplicationVote.director_id == director_id,
                _vote_window_open(application_id),
            )
            .values(vote=vote, note=_clean(comment) or None, responded_at=now, voted_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            await db.rollback()
            raise InvalidState("Board voting has already closed")

        await ActivityLogger.log_application_event(db, application_id, "director_vote_submitted", {
            "director_user_id": director_id,
            "vote": vote,
        }, director_id)
        await db.commit()
        log.info(f"Director {director_id} voted {vote} on application {application_id}")

        return await BoardDecisionService.evaluate_after_vote(db, application_id, director_id, policy, mailer)

    @staticmethod
    async def mark_viewed(db: AsyncSession, application_id: int, director_id: int) -> ApplicationVote:
        vote = await crud.get_vote(db, application_id, director_id)
        if vote is None:
            raise NotFound(f"Director {director_id} has no vote on application {application_id}")
        now = _now()
        first_view = vote.viewed_at is None
        if first_view:
            vote.viewed_at = now
        vote.last_viewed_at = now
        await ActivityLogger.log_application_event(db, application_id, "director_application_viewed", {
            "director_user_id": director_id,
            "first_view": first_view,
        }, director_id)
        await db.commit()
        return vote

    @staticmethod
    async def list_pending_for_director(db: AsyncSession, director_id: int) -> List[tuple]:
        """(application, vote) pairs still in board review for this director, oldest first."""
        result = await db.execute(
            select(Application, ApplicationVote)
            .join(ApplicationVote, ApplicationVote.application_id == Application.id)
            .where(
                ApplicationVote.director_id == director_id,
                Application.status == ApplicationStatus.PENDING_BOARD_APPROVAL.value,
            )
            .order_by(Application.submitted_at, Application.id)
        )
        return [tuple(row) for row in result.all()]
