# deps.py
# Dependency injections for routes: sessions, authentication, capabilities and collaborators.

import logging
from pathlib import Path
from typing import Annotated, AsyncGenerator, Optional

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.ext.asyncio import AsyncSession

import auth_utils
import crud
from config import MembershipPolicy, settings
from database import SessionLocal
from exceptions import AuthorizationError
from file_storage_service import FileStorage, LocalFileStorage
from models import MembershipRole, User
from paypal_gateway_service import PayPalGateway
from ses_service import Mailer, get_mailer as get_ses_mailer
from stripe_gateway_service import StripeGateway

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/token", auto_error=False)


# -----------------------
#  DATABASE DEPENDENCY
# -----------------------
async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async with SessionLocal() as session:
        yield session

SessionDep = Annotated[AsyncSession, Depends(get_db)]


# -----------------------
#  COLLABORATORS
# -----------------------
def get_policy() -> MembershipPolicy:
    return settings.policy()


def get_mailer() -> Mailer:
    return get_ses_mailer()


def get_storage() -> FileStorage:
    return LocalFileStorage(Path(settings.UPLOAD_DIR))


def get_stripe() -> StripeGateway:
    return StripeGateway.from_settings()


def get_paypal() -> PayPalGateway:
    return PayPalGateway.from_settings()

PolicyDep = Annotated[MembershipPolicy, Depends(get_policy)]
MailerDep = Annotated[Mailer, Depends(get_mailer)]
StorageDep = Annotated[FileStorage, Depends(get_storage)]
StripeDep = Annotated[StripeGateway, Depends(get_stripe)]
PayPalDep = Annotated[PayPalGateway, Depends(get_paypal)]


# ------------------------------------------------
#  BEARER TOKEN AUTHENTICATION
# ------------------------------------------------
async def get_current_user(
    db: SessionDep,
    token: Annotated[Optional[str], Depends(oauth2_scheme)] = None,
) -> User:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    if token is None:
        logging.warning("Authentication failed: No token provided.")
        raise credentials_exception

    email = auth_utils.decode_access_token(token)
    if email is None:
        logging.warning("Authentication failed: Invalid or expired token.")
        raise credentials_exception

    user = await crud.get_user_by_email(db, email)
    if user is None or not user.is_active:
        logging.warning(f"Authentication failed: User {email} not found or inactive.")
        raise credentials_exception
    return user

CurrentUserDep = Annotated[User, Depends(get_current_user)]


# -----------------------
#  CAPABILITY CHECKS
# -----------------------
async def require_officer(current_user: CurrentUserDep) -> User:
    if not (current_user.is_officer or current_user.is_admin):
        raise AuthorizationError("Membership officer access required")
    return current_user


async def require_director(current_user: CurrentUserDep) -> User:
    if current_user.role != MembershipRole.DIRECTOR.value or current_user.director_disabled:
        raise AuthorizationError("Board director access required")
    return current_user


async def require_admin(current_user: CurrentUserDep) -> User:
    if not current_user.is_admin:
        raise AuthorizationError("Administrator access required")
    return current_user

OfficerDep = Annotated[User, Depends(require_officer)]
DirectorDep = Annotated[User, Depends(require_director)]
AdminDep = Annotated[User, Depends(require_admin)]


# -----------------------
#  SUBMISSION TOKENS
# -----------------------
def require_submission_token(action: str, bind_user: bool = True):
    """
    Build a dependency that checks the X-Submission-Token header for ``action``.

    With ``bind_user`` the token must have been issued to the signed-in user;
    public actions pass ``bind_user=False``.
    """
    if bind_user:
        async def checker(
            current_user: CurrentUserDep,
            x_submission_token: Annotated[Optional[str], Header()] = None,
        ) -> None:
            if not auth_utils.verify_submission_token(x_submission_token, action, current_user.id):
                logging.warning(f"Rejected {action}: invalid submission token for user {current_user.id}")
                raise AuthorizationError("Invalid or expired submission token")
    else:
        async def checker(x_submission_token: Annotated[Optional[str], Header()] = None) -> None:
            if not auth_utils.verify_submission_token(x_submission_token, action):
                logging.warning(f"Rejected {action}: invalid submission token")
                raise AuthorizationError("Invalid or expired submission token")
    return checker
