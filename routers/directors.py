from typing import List

from fastapi import APIRouter, Depends, status

from deps import AdminDep, MailerDep, PolicyDep, SessionDep, require_submission_token
from director_service import DirectorService
import schemas

directors_router = APIRouter(prefix="/api/v1/directors", tags=["directors"])


@directors_router.get("", response_model=List[schemas.Director])
async def list_directors(db_session: SessionDep, admin: AdminDep):
    return await DirectorService.list_directors(db_session)


@directors_router.post(
    "",
    response_model=schemas.Director,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_submission_token("manage_directors"))],
)
async def add_director(
    request: schemas.DirectorCreate,
    db_session: SessionDep,
    admin: AdminDep,
    policy: PolicyDep,
    mailer: MailerDep,
):
    return await DirectorService.add_director(
        db_session, request.email, request.full_name, admin.id, policy, mailer
    )


@directors_router.post(
    "/{user_id}/toggle",
    response_model=schemas.Director,
    dependencies=[Depends(require_submission_token("manage_directors"))],
)
async def toggle_director(user_id: int, db_session: SessionDep, admin: AdminDep):
    """Flip a director between enabled and disabled."""
    director = await DirectorService.get_director(db_session, user_id)
    return await DirectorService.set_director_disabled(
        db_session, user_id, not director.director_disabled, admin.id
    )
