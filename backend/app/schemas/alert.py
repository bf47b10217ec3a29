from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel


class AlertResponse(BaseModel):
    id: int
    alert_type: str
    title: str
    message: str
    severity: str
    data: Optional[dict[str, Any]] = None
    is_read: bool
    created_at: datetime

    class Config:
        from_attributes = True


class AlertListResponse(BaseModel):
    alerts: list[AlertResponse]
    unread_count: int


class IntegrationResponse(BaseModel):
    id: int
    integration_type: str
    integration_name: str
    is_active: bool
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class IntegrationLimits(BaseModel):
    max_integrations: int
    available_types: list[str]
    features: list[str]


class IntegrationLimitsResponse(BaseModel):
    subscription_status: str
    plan: str
    limits: IntegrationLimits
    current_integrations: int
    can_add_more: bool
