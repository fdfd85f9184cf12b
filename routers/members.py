from typing import List, Optional

from fastapi import APIRouter, Depends, File, UploadFile

from deps import AdminDep, OfficerDep, PolicyDep, SessionDep, require_submission_token
from member_import_service import MemberImportService
from staff_query_service import StaffQueryService
import schemas

members_router = APIRouter(prefix="/api/v1/members", tags=["members"])


@members_router.get("", response_model=List[schemas.MemberSummary])
async def list_members(
    db_session: SessionDep,
    officer: OfficerDep,
    search: str = "",
    status: Optional[str] = None,
):
    return await StaffQueryService.list_members(db_session, search=search, status=status)


@members_router.get("/{member_id}", response_model=schemas.MemberDetail)
async def member_detail(member_id: int, db_session: SessionDep, officer: OfficerDep):
    return await StaffQueryService.member_detail(db_session, member_id)


@members_router.post(
    "/import",
    response_model=schemas.ImportReport,
    dependencies=[Depends(require_submission_token("import_members"))],
)
async def import_members(
    db_session: SessionDep,
    admin: AdminDep,
    policy: PolicyDep,
    members_csv: UploadFile = File(...),
):
    content = await members_csv.read()
    return await MemberImportService.import_members_csv(db_session, content, admin.id, policy)
