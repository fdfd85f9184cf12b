import logging
from datetime import timedelta
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.security import OAuth2PasswordRequestForm

import auth_utils
import crud
from activity_log_service import ActivityLogger
from config import settings
from deps import SessionDep
from schemas import PasswordSetupRequest, Token

log = logging.getLogger(__name__)

auth_router = APIRouter(prefix="/auth", tags=["auth"])


@auth_router.post("/token", response_model=Token)
async def login_for_access_token(
    form_data: Annotated[OAuth2PasswordRequestForm, Depends()],
    db_session: SessionDep,
):
    user = await crud.get_user_by_email(db_session, form_data.username)
    if not user or not user.is_active or not auth_utils.verify_password(form_data.password, user.hashed_password):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect username or password",
            headers={"WWW-Authenticate": "Bearer"},
        )

    access_token = auth_utils.create_access_token(
        data={"sub": user.email},
        expires_delta=timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES),
    )
    return Token(access_token=access_token, token_type="bearer")


@auth_router.post("/set-password")
async def set_password(request: PasswordSetupRequest, db_session: SessionDep):
    """Complete the password-setup link sent on approval or director invitation."""
    email = auth_utils.decode_password_setup_token(request.token)
    user = await crud.get_user_by_email(db_session, email) if email else None
    if user is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid or expired link")

    user.hashed_password = auth_utils.get_password_hash(request.password)
    await ActivityLogger.log_event(db_session, "password_set", {"user_id": user.id}, actor_id=user.id)
    await db_session.commit()
    log.info(f"Password set for user {user.id}")
    return {"status": "success"}
