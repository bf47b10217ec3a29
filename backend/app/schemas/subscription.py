"""Schemas for plans, subscriptions and webhook acknowledgements."""
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class PlanResponse(BaseModel):
    id: str
    name: str
    price: int
    currency: str
    interval: str
    features: list[str]
    price_formatted: str


class PlanListResponse(BaseModel):
    plans: list[PlanResponse]


class SubscriptionResponse(BaseModel):
    id: int
    stripe_subscription_id: Optional[str] = None
    plan_type: str
    plan_name: str
    status: str
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool
    price: int
    price_formatted: str
    features: list[str]


class CurrentSubscriptionResponse(BaseModel):
    subscription: Optional[SubscriptionResponse] = None
    plan: str
    status: str


class SubscribeRequest(BaseModel):
    plan_type: str = Field(..., pattern="^(pro|business)$")


class PlanChangeRequest(BaseModel):
    plan_type: str = Field(..., pattern="^(pro|business)$")


class CancelRequest(BaseModel):
    immediate: bool = False


class SubscriptionActionResponse(BaseModel):
    message: str
    subscription_id: str
    status: str
    plan_type: Optional[str] = None
    cancel_at_period_end: Optional[bool] = None
    client_secret: Optional[str] = None
    trial_end: Optional[datetime] = None


class WebhookAck(BaseModel):
    received: bool = True
    outcome: str
    event_type: Optional[str] = None


class InvoicePreviewResponse(BaseModel):
    plan_type: str
    plan_name: str
    amount: int
    currency: str
    amount_formatted: str
    trial_days: int
    next_payment_date: datetime
    estimated: bool  # True when computed locally instead of by Stripe
