from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request
import jwt

from .config import settings
from .identity import user_key
from .middleware import ClientBlockedError, get_tracker, mark_auth_blocked, mark_auth_failed, mark_auth_succeeded

ACCOUNT_BLOCKED_MESSAGE = "Too many failed attempts. This account has been temporarily blocked. Please try again later."


@dataclass(frozen=True)
class AuthContext:
    user_id: str
    is_admin: bool


class AuthenticationError(HTTPException):
    def __init__(self, detail: str, reason: str) -> None:
        super().__init__(status_code=401, detail=detail)
        self.reason = reason


def create_access_token(user_id: str, is_admin: bool = False, expires_minutes: Optional[int] = None) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": user_id,
        "is_admin": is_admin,
        "iat": now,
        "exp": now + timedelta(minutes=expires_minutes if expires_minutes is not None else settings.jwt_exp_minutes),
    }
    return jwt.encode(payload, settings.secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> AuthContext:
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError as exc:
        raise AuthenticationError("Token expired", "token_expired") from exc
    except jwt.InvalidTokenError as exc:
        raise AuthenticationError("Invalid token", "invalid_token") from exc

    user_id = payload.get("sub")
    if not user_id:
        raise AuthenticationError("Malformed token payload", "invalid_token")

    return AuthContext(user_id=str(user_id), is_admin=bool(payload.get("is_admin", False)))


def get_bearer_token(authorization: Optional[str]) -> str:
    if not authorization:
        raise AuthenticationError("Missing Authorization header", "missing_token")

    parts = authorization.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise AuthenticationError("Invalid Authorization header", "invalid_token")
    return parts[1].strip()


def auth_context(request: Request, authorization: Optional[str] = Header(default=None)) -> AuthContext:
    """Bearer-token dependency that reports its outcome to the abuse guard."""
    try:
        auth = decode_token(get_bearer_token(authorization))
    except AuthenticationError as exc:
        mark_auth_failed(request, exc.reason)
        raise

    tracker = get_tracker(request)
    key = user_key(auth.user_id)
    if tracker.is_blocked(key):
        mark_auth_blocked(request)
        blocked = ClientBlockedError(key, tracker.blocked_until(key), message=ACCOUNT_BLOCKED_MESSAGE)
        raise HTTPException(status_code=403, detail=blocked.message, headers=blocked.headers(tracker.now()))

    mark_auth_succeeded(request, auth.user_id)
    return auth


def admin_context(auth: AuthContext = Depends(auth_context)) -> AuthContext:
    if not auth.is_admin:
        raise HTTPException(status_code=403, detail="Admin privileges required")
    return auth
