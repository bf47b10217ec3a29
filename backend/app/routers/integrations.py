from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.core.auth import get_current_user
from app.database import get_db, storage_guard
from app.models.user import User
from app.schemas.alert import IntegrationLimitsResponse
from app.services.entitlements import integration_limits

router = APIRouter(prefix="/api/integrations", tags=["integrations"])


@router.get("/limits", response_model=IntegrationLimitsResponse)
def get_integration_limits(current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    """Integration allowance of the caller's current plan."""
    with storage_guard(db):
        return integration_limits(db, current_user)
