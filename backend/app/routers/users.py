import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from app.core.auth import get_current_user
from app.database import get_db, storage_guard
from app.models.user import User
from app.schemas.alert import AlertListResponse, AlertResponse, IntegrationResponse
from app.schemas.user import ProfileUpdate, UserResponse, UserStats
from app.services import alerts as alert_service
from app.services.entitlements import user_stats
from app.services.integrations import list_integrations

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/users", tags=["users"])


@router.get("/profile", response_model=UserResponse)
def get_profile(current_user: User = Depends(get_current_user)):
    return current_user


@router.put("/profile", response_model=UserResponse)
def update_profile(
    request: ProfileUpdate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    if request.name is not None:
        current_user.name = request.name
    if request.company_name is not None:
        current_user.company_name = request.company_name
    with storage_guard(db):
        db.commit()
        db.refresh(current_user)
    return current_user


@router.get("/stats", response_model=UserStats)
def get_stats(current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    with storage_guard(db):
        return user_stats(db, current_user)


@router.get("/alerts", response_model=AlertListResponse)
def get_alerts(
    unread_only: bool = False,
    limit: int = 50,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    limit = min(max(limit, 1), 200)
    with storage_guard(db):
        return AlertListResponse(
            alerts=alert_service.list_alerts(db, current_user.id, unread_only=unread_only, limit=limit),
            unread_count=alert_service.count_unread(db, current_user.id),
        )


# Declared before /alerts/{alert_id}/read so "read-all" is not parsed as an id
@router.put("/alerts/read-all")
def mark_all_alerts_read(current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    updated = alert_service.mark_all_read(db, current_user.id)
    return {"message": "All alerts marked as read", "updated": updated}


@router.put("/alerts/{alert_id}/read", response_model=AlertResponse)
def mark_alert_read(
    alert_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    alert = alert_service.mark_alert_read(db, current_user.id, alert_id)
    if alert is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Alert not found")
    return alert


@router.delete("/alerts/{alert_id}")
def delete_alert(
    alert_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    if not alert_service.delete_alert(db, current_user.id, alert_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Alert not found")
    return {"message": "Alert deleted"}


@router.get("/integrations", response_model=list[IntegrationResponse])
def get_integrations(current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return list_integrations(db, current_user.id)


@router.delete("/account")
def delete_account(current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    """Delete the account; sessions, subscriptions, alerts and integrations go with it."""
    user_id = current_user.id
    with storage_guard(db):
        db.delete(current_user)
        db.commit()
    logger.info("Deleted account %s", user_id)
    return {"message": "Account deleted"}
