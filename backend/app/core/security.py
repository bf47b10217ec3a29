"""Password hashing and signed session tokens."""
import secrets
from datetime import datetime

from jose import JWTError, jwt
from passlib.context import CryptContext

from app.core.config import Settings, get_settings

pwd_context = CryptContext(
    schemes=["bcrypt"],
    deprecated="auto",
    bcrypt__rounds=get_settings().bcrypt_rounds,
)


class TokenDecodeError(Exception):
    """The token is not a well-formed token signed with our key."""
    pass


def get_password_hash(password: str) -> str:
    """Hash a password using bcrypt."""
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Check a password against its stored hash."""
    return pwd_context.verify(plain_password, hashed_password)


def create_access_token(user_id: int, issued_at: datetime, expires_at: datetime, settings: Settings) -> str:
    """Create a signed token binding a user id and an expiry.

    ``jti`` makes every token unique, even for two logins in the same second.
    """
    claims = {
        "sub": str(user_id),
        "iat": int(issued_at.timestamp()),
        "exp": int(expires_at.timestamp()),
        "jti": secrets.token_hex(16),
    }
    return jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str, settings: Settings) -> int:
    """Verify the token signature and return the embedded user id.

    Expiry is not enforced here; the server-side session record decides
    whether the token is still usable.

    Raises:
        TokenDecodeError: On a bad signature, bad structure or bad subject.
    """
    try:
        claims = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
            options={"verify_exp": False, "verify_aud": False},
        )
    except JWTError as exc:
        raise TokenDecodeError(str(exc)) from exc

    subject = claims.get("sub")
    if not isinstance(subject, str) or not subject.isdigit():
        raise TokenDecodeError("Token subject is not a user id")
    return int(subject)
