from typing import List

from fastapi import APIRouter, Depends

import crud
from application_service import ApplicationService
from deps import DirectorDep, MailerDep, PolicyDep, SessionDep, require_submission_token
import schemas

board_router = APIRouter(prefix="/api/v1/board", tags=["board"])


@board_router.get("/applications", response_model=List[schemas.BoardApplication])
async def pending_applications(db_session: SessionDep, director: DirectorDep):
    """Applications awaiting the board, with the caller's own vote."""
    pairs = await ApplicationService.list_pending_for_director(db_session, director.id)
    return [
        schemas.BoardApplication(
            application=schemas.Application.model_validate(application),
            my_vote=schemas.Vote.model_validate(vote),
        )
        for application, vote in pairs
    ]


@board_router.get("/applications/{application_id}", response_model=schemas.BoardApplication)
async def view_application(application_id: int, db_session: SessionDep, director: DirectorDep):
    application = await crud.get_application(db_session, application_id)
    vote = await ApplicationService.mark_viewed(db_session, application_id, director.id)
    return schemas.BoardApplication(
        application=schemas.Application.model_validate(application),
        my_vote=schemas.Vote.model_validate(vote),
    )


@board_router.post(
    "/applications/{application_id}/vote",
    response_model=schemas.BoardOutcome,
    dependencies=[Depends(require_submission_token("director_vote"))],
)
async def cast_vote(
    application_id: int,
    request: schemas.VoteRequest,
    db_session: SessionDep,
    director: DirectorDep,
    policy: PolicyDep,
    mailer: MailerDep,
):
    return await ApplicationService.record_vote(
        db_session, application_id, director.id, request.vote, request.comment, policy, mailer
    )
