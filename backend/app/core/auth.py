"""FastAPI dependencies for bearer-token authentication."""
from datetime import datetime
from typing import Callable

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from app.core.clock import utc_now
from app.core.config import Settings, get_settings
from app.database import get_db
from app.models.user import User
from app.services.session_guard import AuthError, SessionGuard, UnknownSessionError

bearer_scheme = HTTPBearer(auto_error=False)


def get_clock() -> Callable[[], datetime]:
    """Clock used for session expiry; overridden in tests."""
    return utc_now


def get_session_guard(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> SessionGuard:
    return SessionGuard(db, settings, clock=clock)


def get_bearer_token(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> str | None:
    """Raw token from ``Authorization: Bearer <token>``, or None."""
    if credentials is None or credentials.scheme.lower() != "bearer":
        return None
    return credentials.credentials


def auth_http_error(error: AuthError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"error": error.code, "message": error.message},
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_current_user_id(
    token: str | None = Depends(get_bearer_token),
    guard: SessionGuard = Depends(get_session_guard),
) -> int:
    """Authenticate the request and return the caller's user id."""
    try:
        return guard.authenticate(token)
    except AuthError as exc:
        raise auth_http_error(exc) from exc


def get_current_user(
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
) -> User:
    user = db.query(User).filter(User.id == user_id).first()
    if user is None:
        raise auth_http_error(UnknownSessionError())
    return user
