from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional
import hmac
import uuid

import jwt
from fastapi import Depends, Header
from sqlalchemy.orm import Session

from .config import settings
from .db import get_db
from .exceptions import AuthenticationError, InvalidTokenError, PermissionDenied, TokenExpiredError
from .models import User


@dataclass
class Caller:
    """Who is calling: a signed-in user or the scheduler holding the service key."""
    user: Optional[User] = None
    is_service: bool = False

    @property
    def is_admin(self) -> bool:
        return self.user is not None and self.user.is_admin

    @property
    def sees_all_jobs(self) -> bool:
        return self.is_service or self.is_admin


def create_access_token(sub: str, expires_minutes: int = None) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": sub,
        "exp": now + timedelta(minutes=expires_minutes or settings.jwt_expiration_minutes),
        "iat": now,
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> uuid.UUID:
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        raise TokenExpiredError()
    except jwt.PyJWTError as e:
        raise InvalidTokenError(str(e))
    try:
        return uuid.UUID(payload["sub"])
    except (KeyError, ValueError):
        raise InvalidTokenError("missing subject")


def _bearer_token(authorization: Optional[str]) -> str:
    if not authorization or not authorization.startswith("Bearer "):
        raise AuthenticationError("Authentication required")
    return authorization[len("Bearer "):].strip()


def _load_user(db: Session, token: str) -> User:
    user = db.get(User, decode_access_token(token))
    if not user:
        raise InvalidTokenError("unknown user")
    return user


def get_current_user(
    authorization: Optional[str] = Header(None),
    db: Session = Depends(get_db),
) -> User:
    return _load_user(db, _bearer_token(authorization))


def require_admin(user: User = Depends(get_current_user)) -> User:
    if not user.is_admin:
        raise PermissionDenied("Admin role required")
    return user


def get_caller(
    authorization: Optional[str] = Header(None),
    db: Session = Depends(get_db),
) -> Caller:
    """Resolve either the scheduler (service key) or a user token."""
    token = _bearer_token(authorization)
    if settings.service_key and hmac.compare_digest(token, settings.service_key):
        return Caller(is_service=True)
    return Caller(user=_load_user(db, token))
