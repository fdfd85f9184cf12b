from fastapi import APIRouter

from deps import OfficerDep, PolicyDep, SessionDep
from staff_query_service import StaffQueryService
import schemas

dashboard_router = APIRouter(prefix="/api/v1/dashboard", tags=["dashboard"])


@dashboard_router.get("", response_model=schemas.Dashboard)
async def officer_dashboard(db_session: SessionDep, officer: OfficerDep, policy: PolicyDep):
    """Queue tiles, the items waiting longest on staff and the latest activity."""
    return await StaffQueryService.dashboard(db_session, policy)
