import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from app.core.auth import get_bearer_token, get_current_user, get_session_guard
from app.core.security import get_password_hash, verify_password
from app.database import get_db, storage_guard
from app.models.user import User
from app.schemas.user import AuthResponse, PasswordChange, UserCreate, UserLogin, UserResponse
from app.services.session_guard import SessionGuard

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["authentication"])


@router.post("/register", response_model=AuthResponse, status_code=status.HTTP_201_CREATED)
def register(
    user: UserCreate,
    db: Session = Depends(get_db),
    guard: SessionGuard = Depends(get_session_guard),
):
    email = user.email.lower()
    with storage_guard(db):
        if db.query(User).filter(User.email == email).first():
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="Email already registered"
            )

        db_user = User(
            email=email,
            hashed_password=get_password_hash(user.password),
            name=user.name,
            company_name=user.company_name,
        )
        db.add(db_user)
        db.flush()

        session = guard.issue(db_user)
        db.commit()
        db.refresh(db_user)

    logger.info("Registered user %s", db_user.id)
    return AuthResponse(
        message="User registered successfully",
        user=UserResponse.model_validate(db_user),
        token=session.token,
        expires_at=session.expires_at,
    )


@router.post("/login", response_model=AuthResponse)
def login(
    user: UserLogin,
    db: Session = Depends(get_db),
    guard: SessionGuard = Depends(get_session_guard),
):
    with storage_guard(db):
        db_user = db.query(User).filter(User.email == user.email.lower()).first()
    if not db_user or not verify_password(user.password, db_user.hashed_password):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect email or password",
            headers={"WWW-Authenticate": "Bearer"},
        )

    session = guard.issue(db_user)
    with storage_guard(db):
        db.commit()

    return AuthResponse(
        message="Login successful",
        user=UserResponse.model_validate(db_user),
        token=session.token,
        expires_at=session.expires_at,
    )


@router.post("/logout")
def logout(
    token: str | None = Depends(get_bearer_token),
    guard: SessionGuard = Depends(get_session_guard),
):
    guard.revoke(token)
    return {"message": "Logged out"}


@router.get("/me", response_model=UserResponse)
def get_current_user_info(current_user: User = Depends(get_current_user)):
    return current_user


@router.post("/change-password")
def change_password(
    request: PasswordChange,
    current_user: User = Depends(get_current_user),
    token: str | None = Depends(get_bearer_token),
    db: Session = Depends(get_db),
    guard: SessionGuard = Depends(get_session_guard),
):
    if not verify_password(request.current_password, current_user.hashed_password):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Current password is incorrect",
        )

    with storage_guard(db):
        current_user.hashed_password = get_password_hash(request.new_password)
        db.commit()
    # Other devices must log in again with the new password
    revoked = guard.revoke_all(current_user.id, keep_token=token)
    logger.info("Password changed for user %s; revoked %d other sessions", current_user.id, revoked)
    return {"message": "Password updated successfully"}
