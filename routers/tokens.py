from typing import Annotated, Optional

from fastapi import APIRouter, Depends, HTTPException, status

import auth_utils
from deps import SessionDep, get_current_user, oauth2_scheme
from schemas import SubmissionToken

tokens_router = APIRouter(prefix="/api/v1/tokens", tags=["tokens"])

PUBLIC_ACTIONS = {"submit_application"}
SIGNED_IN_ACTIONS = {
    "application_decision",
    "vote_reset",
    "send_reminder",
    "director_vote",
    "mark_paid",
    "stripe_checkout",
    "paypal_order",
    "paypal_capture",
    "manage_directors",
    "import_members",
}


@tokens_router.get("/{action}", response_model=SubmissionToken)
async def issue_submission_token(
    action: str,
    db: SessionDep,
    token: Annotated[Optional[str], Depends(oauth2_scheme)] = None,
):
    """Short-lived token for one mutating action; signed-in actions are bound to the caller."""
    if action in PUBLIC_ACTIONS:
        return SubmissionToken(action=action, token=auth_utils.create_submission_token(action))
    if action not in SIGNED_IN_ACTIONS:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unknown action")

    user = await get_current_user(db, token)
    return SubmissionToken(action=action, token=auth_utils.create_submission_token(action, user.id))
