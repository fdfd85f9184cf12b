from datetime import datetime, timedelta, timezone
from typing import Optional
from urllib.parse import urlencode
import secrets

from passlib.context import CryptContext
from jose import JWTError, jwt

from config import settings

# Password hashing context
pwd_context = CryptContext(schemes=["argon2"], deprecated="auto")

SUBMISSION_PURPOSE = "submission"
PASSWORD_SETUP_PURPOSE = "password_setup"


def get_password_hash(password: str) -> str:
    """
    Hashes a password using the configured password context (argon2).
    """
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    try:
        return pwd_context.verify(plain_password, hashed_password)
    except (ValueError, TypeError):
        return False


def generate_unusable_password() -> str:
    """Random secret for identities created on approval; the member sets a real one via the setup link."""
    return secrets.token_urlsafe(32)


# -------------------------
# JWT Utilities
# -------------------------
def _encode(data: dict, expires_delta: timedelta) -> str:
    to_encode = data.copy()
    to_encode.update({"exp": datetime.now(timezone.utc) + expires_delta})
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def _decode(token: str) -> Optional[dict]:
    try:
        return jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except JWTError:
        return None


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """
    Create JWT access token.
    """
    return _encode(data, expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES))


def decode_access_token(token: str) -> Optional[str]:
    """
    Decode JWT access token and return the user's email (subject).
    """
    payload = _decode(token)
    if payload is None or payload.get("purpose"):
        return None
    return payload.get("sub")


def create_submission_token(action: str, user_id: Optional[int] = None) -> str:
    """
    Short-lived token scoped to one action name. Mutating endpoints require it
    in the X-Submission-Token header.
    """
    data = {"purpose": SUBMISSION_PURPOSE, "action": action, "jti": secrets.token_hex(8)}
    if user_id is not None:
        data["uid"] = user_id
    return _encode(data, timedelta(minutes=settings.SUBMISSION_TOKEN_EXPIRE_MINUTES))


def verify_submission_token(token: Optional[str], action: str, user_id: Optional[int] = None) -> bool:
    if not token:
        return False
    payload = _decode(token)
    if payload is None:
        return False
    if payload.get("purpose") != SUBMISSION_PURPOSE or payload.get("action") != action:
        return False
    # Tokens issued to a signed-in user are only valid for that user
    if payload.get("uid") != user_id:
        return False
    return True


def create_password_setup_token(email: str) -> str:
    return _encode(
        {"sub": email, "purpose": PASSWORD_SETUP_PURPOSE},
        timedelta(hours=settings.PASSWORD_SETUP_EXPIRE_HOURS),
    )


def decode_password_setup_token(token: str) -> Optional[str]:
    payload = _decode(token)
    if payload is None or payload.get("purpose") != PASSWORD_SETUP_PURPOSE:
        return None
    return payload.get("sub")


def password_setup_link(base_url: str, email: str) -> str:
    query = urlencode({"token": create_password_setup_token(email)})
    separator = "&" if "?" in base_url else "?"
    return f"{base_url}{separator}{query}"
