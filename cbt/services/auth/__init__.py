from datetime import datetime, timedelta, timezone

from fastapi import Depends, HTTPException
from fastapi.security import OAuth2PasswordBearer
from passlib.context import CryptContext
from jose import jwt, JWTError
from pydantic import BaseModel

from cbt.models.user import User
from cbt.utils.config import settings


pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/users/login")

ACCESS = "access"
REFRESH = "refresh"


class TokenPair(BaseModel):
    """Pair of JWT tokens used by the client for auth and refresh."""
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    role: str | None = None


class InvalidToken(Exception):
    pass


def verify_password(plain: str, hashed: str) -> bool:
    return pwd_context.verify(plain, hashed)


def hash_password(plain: str) -> str:
    return pwd_context.hash(plain)


def create_token(subject: str, token_version: str, expires_delta: timedelta, token_type: str) -> str:
    """Create a signed JWT with subject, token version, expiration and type."""
    now = datetime.now(timezone.utc)
    payload = {
        "sub": subject,
        "iat": int(now.timestamp()),
        "exp": int((now + expires_delta).timestamp()),
        "tv": token_version,
        "typ": token_type,
    }
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def create_tokens(user: User) -> TokenPair:
    access = create_token(
        subject=str(user.id),
        token_version=user.token_version,
        expires_delta=timedelta(minutes=settings.access_token_expires_minutes),
        token_type=ACCESS,
    )
    refresh = create_token(
        subject=str(user.id),
        token_version=user.token_version,
        expires_delta=timedelta(days=settings.refresh_token_expires_days),
        token_type=REFRESH,
    )
    return TokenPair(access_token=access, refresh_token=refresh, role=user.role)


def user_from_token(token: str, token_type: str = ACCESS) -> User:
    """Decode `token` and load its user.

    Raises InvalidToken for bad signatures, the wrong token type, unknown
    users and tokens issued before the user's last logout.
    """
    try:
        payload = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except JWTError as exc:
        raise InvalidToken() from exc

    user_id = payload.get("sub")
    token_version = payload.get("tv")
    if user_id is None or token_version is None or payload.get("typ") != token_type:
        raise InvalidToken()

    user = User.objects(id=user_id).first()
    if not user or user.token_version != token_version:
        raise InvalidToken()
    return user


def get_current_user(token: str = Depends(oauth2_scheme)) -> User:
    """Auth dependency that validates an access token and returns the user."""
    try:
        return user_from_token(token)
    except InvalidToken:
        raise HTTPException(status_code=401, detail="Could not validate credentials")
