"""Integration helpers used by billing and the users API."""
import logging
from typing import Iterable

from sqlalchemy.orm import Session

from app.models.integration import Integration

logger = logging.getLogger(__name__)


def list_integrations(db: Session, user_id: int) -> list[Integration]:
    return db.query(Integration).filter(
        Integration.user_id == user_id
    ).order_by(Integration.created_at.desc(), Integration.id.desc()).all()


def deactivate_premium_integrations(db: Session, user_id: int, premium_types: Iterable[str]) -> int:
    """Switch off premium-only integrations after a downgrade to free.

    Does not commit; runs inside the reconciler's transaction.
    """
    premium_types = tuple(premium_types)
    if not premium_types:
        return 0
    updated = db.query(Integration).filter(
        Integration.user_id == user_id,
        Integration.integration_type.in_(premium_types),
        Integration.is_active.is_(True),
    ).update({Integration.is_active: False}, synchronize_session=False)
    if updated:
        logger.info("Deactivated %d premium integrations for user %s", updated, user_id)
    return updated
