import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import FileResponse
from starlette.datastructures import UploadFile as FormFile

from activity_log_service import ActivityLogger
from application_service import ApplicationService
from config import MembershipPolicy
from deps import CurrentUserDep, MailerDep, OfficerDep, PolicyDep, SessionDep, StorageDep, require_submission_token
from exceptions import AuthorizationError, NotFound
from file_storage_service import (
    UploadedDocument,
    can_access_application_files,
    content_disposition_for,
    get_file_record,
)
from staff_query_service import StaffQueryService
import schemas

log = logging.getLogger(__name__)

applications_router = APIRouter(prefix="/api/v1/applications", tags=["applications"])


async def _read_uploads(files: list, labels: List[str], policy: MembershipPolicy) -> List[UploadedDocument]:
    """
    Collect the attachment parts, reading at most one byte past the size limit
    and one part past the count limit so validation can still reject them.
    """
    uploads = []
    for index, upload in enumerate(files):
        if not isinstance(upload, FormFile) or not upload.filename:
            continue
        if len(uploads) > policy.max_upload_files:
            break
        label = labels[index].strip() if index < len(labels) and labels[index].strip() else "Supporting document"
        uploads.append(UploadedDocument(
            label=label,
            filename=upload.filename,
            content=await upload.read(policy.max_upload_bytes + 1),
            mime_type=upload.content_type,
        ))
    return uploads


@applications_router.post(
    "",
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_submission_token("submit_application", bind_user=False))],
)
async def submit_application(
    request: Request,
    db_session: SessionDep,
    policy: PolicyDep,
    mailer: MailerDep,
    storage: StorageDep,
):
    """
    Public membership application (multipart form).

    Applicant fields are plain form fields; attachments are sent as repeated
    ``files`` parts with an optional matching ``file_labels`` list.
    """
    form = await request.form()
    fields = {k: v for k, v in form.items() if isinstance(v, str) and k in schemas.ApplicationSubmission.model_fields}
    data = schemas.ApplicationSubmission(**fields)
    uploads = await _read_uploads(form.getlist("files"), [str(v) for v in form.getlist("file_labels")], policy)

    application = await ApplicationService.submit(db_session, data, uploads, policy, mailer, storage)
    return {
        "id": application.id,
        "public_token": application.public_token,
        "status": application.status,
    }


@applications_router.post(
    "/{application_id}/decision",
    response_model=schemas.Application,
    dependencies=[Depends(require_submission_token("application_decision"))],
)
async def decide_application(
    application_id: int,
    request: schemas.DecisionRequest,
    db_session: SessionDep,
    officer: OfficerDep,
    mailer: MailerDep,
):
    return await ApplicationService.decide(db_session, application_id, request.decision, officer.id, mailer)


@applications_router.post(
    "/{application_id}/votes/{director_id}/reset",
    dependencies=[Depends(require_submission_token("vote_reset"))],
)
async def reset_director_vote(
    application_id: int,
    director_id: int,
    db_session: SessionDep,
    officer: OfficerDep,
):
    await ApplicationService.reset_vote(db_session, application_id, director_id, officer.id)
    return {"status": "success"}


@applications_router.post(
    "/{application_id}/reminders",
    response_model=schemas.ReminderResult,
    dependencies=[Depends(require_submission_token("send_reminder"))],
)
async def send_director_reminders(
    application_id: int,
    db_session: SessionDep,
    officer: OfficerDep,
    mailer: MailerDep,
):
    return await ApplicationService.send_reminder(db_session, application_id, officer.id, mailer)


@applications_router.get("", response_model=schemas.ApplicationListing)
async def list_applications(
    db_session: SessionDep,
    officer: OfficerDep,
    status: Optional[str] = None,
    search: str = "",
):
    """Officer queue, newest first, with a count per status."""
    return schemas.ApplicationListing(
        status_counts=await StaffQueryService.application_status_counts(db_session),
        applications=await StaffQueryService.list_applications(db_session, status=status, search=search),
    )


@applications_router.get("/{application_id}", response_model=schemas.ApplicationDetail)
async def application_detail(application_id: int, db_session: SessionDep, officer: OfficerDep):
    return await StaffQueryService.application_detail(db_session, application_id)


@applications_router.get("/{application_id}/activity", response_model=List[schemas.ActivityEntry])
async def application_activity(application_id: int, db_session: SessionDep, officer: OfficerDep):
    return await ActivityLogger.entries_for(db_session, application_id=application_id)


@applications_router.get("/{application_id}/files/{file_id}")
async def download_application_file(
    application_id: int,
    file_id: int,
    db_session: SessionDep,
    current_user: CurrentUserDep,
    storage: StorageDep,
):
    """Stream an attachment to staff or to a director assigned to vote on the application."""
    record = await get_file_record(db_session, file_id)
    if record.application_id != application_id:
        raise NotFound(f"File {file_id} not found")
    if not await can_access_application_files(db_session, current_user, application_id):
        raise AuthorizationError("You cannot view files for this application")

    path = await storage.resolve_path(db_session, file_id)
    if not path.is_file():
        log.error(f"Attachment {file_id} for application {application_id} is missing from storage")
        raise NotFound(f"File {file_id} not found")
    return FileResponse(
        path,
        media_type=record.mime_type or "application/octet-stream",
        filename=record.original_filename,
        content_disposition_type=content_disposition_for(record),
    )
