"""User alerts: write contract for emitters and read helpers for the API."""
import enum
import logging
from typing import Any

from sqlalchemy.orm import Session

from app.models.alert import Alert

logger = logging.getLogger(__name__)


class AlertKind(str, enum.Enum):
    """Alert types emitted by billing reconciliation. Clients switch on these."""
    subscription_created = "subscription_created"
    subscription_updated = "subscription_updated"
    subscription_canceled = "subscription_canceled"
    payment_succeeded = "payment_succeeded"
    payment_failed = "payment_failed"
    trial_ending = "trial_ending"


class AlertSeverity(str, enum.Enum):
    info = "info"
    success = "success"
    warning = "warning"
    error = "error"


BILLING_ALERT_KINDS = tuple(kind.value for kind in AlertKind)


def emit_alert(
    db: Session,
    user_id: int,
    kind: AlertKind,
    title: str,
    message: str,
    severity: AlertSeverity = AlertSeverity.info,
    data: dict[str, Any] | None = None,
) -> Alert:
    """Append an unread alert.

    Note:
        This function does NOT commit. The alert is stored atomically with
        whatever state change caused it.
    """
    alert = Alert(
        user_id=user_id,
        alert_type=kind.value,
        title=title,
        message=message,
        severity=severity.value,
        data=data,
        is_read=False,
    )
    db.add(alert)
    logger.info("Alert %s for user %s: %s", kind.value, user_id, title)
    return alert


def list_alerts(db: Session, user_id: int, unread_only: bool = False, limit: int = 50) -> list[Alert]:
    query = db.query(Alert).filter(Alert.user_id == user_id)
    if unread_only:
        query = query.filter(Alert.is_read.is_(False))
    return query.order_by(Alert.created_at.desc(), Alert.id.desc()).limit(limit).all()


def count_unread(db: Session, user_id: int) -> int:
    return db.query(Alert).filter(Alert.user_id == user_id, Alert.is_read.is_(False)).count()


def mark_alert_read(db: Session, user_id: int, alert_id: int) -> Alert | None:
    """Mark one of the user's alerts read; None if it is not theirs."""
    alert = db.query(Alert).filter(Alert.id == alert_id, Alert.user_id == user_id).first()
    if alert is None:
        return None
    alert.is_read = True
    db.commit()
    db.refresh(alert)
    return alert


def mark_all_read(db: Session, user_id: int) -> int:
    updated = db.query(Alert).filter(
        Alert.user_id == user_id, Alert.is_read.is_(False)
    ).update({Alert.is_read: True}, synchronize_session=False)
    db.commit()
    return updated


def delete_alert(db: Session, user_id: int, alert_id: int) -> bool:
    deleted = db.query(Alert).filter(
        Alert.id == alert_id, Alert.user_id == user_id
    ).delete(synchronize_session=False)
    db.commit()
    return deleted > 0


def recent_billing_alerts(db: Session, user_id: int, limit: int = 20) -> list[Alert]:
    """Latest billing alerts, a readable trail of processed webhooks."""
    return db.query(Alert).filter(
        Alert.user_id == user_id,
        Alert.alert_type.in_(BILLING_ALERT_KINDS),
    ).order_by(Alert.created_at.desc(), Alert.id.desc()).limit(limit).all()
