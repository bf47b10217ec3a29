"""Bearer token validation against server-side sessions.

Tokens are signed (authenticity needs no lookup) but every use is re-checked
against the ``sessions`` table, which is what makes logout immediate. The
record's ``expires_at`` is the source of truth for expiry: an expired record
is deleted the first time it is presented, and a periodic sweep removes the
rest.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from sqlalchemy.orm import Session

from app.core.clock import as_utc, utc_now
from app.core.config import Settings
from app.core.security import TokenDecodeError, create_access_token, decode_access_token
from app.database import storage_guard
from app.models.user import User, UserSession

logger = logging.getLogger(__name__)


class AuthError(Exception):
    """Base class for authentication failures.

    Attributes:
        code: Stable machine-readable reason returned to clients.
    """
    code = "unauthenticated"
    message = "Authentication required"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.message)
        if message:
            self.message = message


class MissingTokenError(AuthError):
    code = "missing_token"
    message = "Bearer token required"


class InvalidTokenError(AuthError):
    code = "invalid_token"
    message = "Invalid token"


class UnknownSessionError(AuthError):
    code = "unknown_session"
    message = "Session not found"


class ExpiredSessionError(AuthError):
    code = "expired_session"
    message = "Session expired"


@dataclass
class IssuedSession:
    token: str
    expires_at: datetime


class SessionGuard:
    """Issues, validates and revokes sessions."""

    def __init__(self, db: Session, settings: Settings, clock: Callable[[], datetime] = utc_now):
        self.db = db
        self.settings = settings
        self.clock = clock

    def issue(self, user: User) -> IssuedSession:
        """Create a session for ``user`` and return its token.

        The caller owns the transaction; registration commits the user and
        its first session together.
        """
        now = self.clock()
        expires_at = now + self.settings.session_ttl
        token = create_access_token(user.id, now, expires_at, self.settings)
        with storage_guard(self.db):
            self.db.add(UserSession(user_id=user.id, session_token=token, expires_at=expires_at))
            self.db.flush()
        logger.debug("Issued session for user %s expiring %s", user.id, expires_at.isoformat())
        return IssuedSession(token=token, expires_at=expires_at)

    def authenticate(self, raw_token: str | None) -> int:
        """Return the user id bound to ``raw_token``.

        Raises:
            MissingTokenError: No token supplied.
            InvalidTokenError: Signature/structure check failed, or the token
                and its session disagree on the user.
            UnknownSessionError: Token was never issued or has been revoked.
            ExpiredSessionError: Session is past ``expires_at``; the record
                has been deleted.
        """
        if not raw_token:
            raise MissingTokenError()

        try:
            user_id = decode_access_token(raw_token, self.settings)
        except TokenDecodeError as exc:
            logger.debug("Rejected token: %s", exc)
            raise InvalidTokenError() from exc

        with storage_guard(self.db):
            session = self.db.query(UserSession).filter(
                UserSession.session_token == raw_token
            ).first()

            if session is None:
                raise UnknownSessionError()

            owner_id = session.user_id
            if self.clock() >= as_utc(session.expires_at):
                self._delete_token(raw_token)
                self.db.commit()
                logger.info("Deleted expired session for user %s", owner_id)
                raise ExpiredSessionError()

        if owner_id != user_id:
            logger.warning(
                "Token subject %s does not match session owner %s", user_id, owner_id
            )
            raise InvalidTokenError()

        return user_id

    def revoke(self, raw_token: str | None) -> bool:
        """Delete the session for ``raw_token`` if it exists (logout)."""
        if not raw_token:
            return False
        with storage_guard(self.db):
            deleted = self._delete_token(raw_token)
            self.db.commit()
        if deleted:
            logger.info("Revoked session")
        return deleted > 0

    def revoke_all(self, user_id: int, keep_token: str | None = None) -> int:
        """Delete every session of a user except ``keep_token``."""
        with storage_guard(self.db):
            query = self.db.query(UserSession).filter(UserSession.user_id == user_id)
            if keep_token:
                query = query.filter(UserSession.session_token != keep_token)
            deleted = query.delete(synchronize_session=False)
            self.db.commit()
        return deleted

    def _delete_token(self, raw_token: str) -> int:
        # Delete-if-exists: the sweep may have removed the row already
        return self.db.query(UserSession).filter(
            UserSession.session_token == raw_token
        ).delete(synchronize_session=False)


def sweep_expired_sessions(db: Session, now: datetime | None = None) -> int:
    """Delete every session whose expiry has passed.

    Best-effort maintenance; access-time checks do not depend on it.

    Returns:
        Number of rows removed.
    """
    cutoff = now or utc_now()
    with storage_guard(db):
        deleted = db.query(UserSession).filter(
            UserSession.expires_at < cutoff
        ).delete(synchronize_session=False)
        db.commit()
    logger.info("Swept %d expired sessions", deleted)
    return deleted
