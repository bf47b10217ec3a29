"""Entitlement reads derived from subscription state."""
from sqlalchemy.orm import Session

from app.models.alert import Alert
from app.models.integration import Integration
from app.models.subscription import Subscription
from app.models.user import SubscriptionStatus, User

FREE_PLAN = "free"

# Statuses that still grant the plan's features
ACTIVE_LIKE_STATUSES = ("active", "trialing", "past_due")

UNLIMITED_INTEGRATIONS = 999

FREE_PLAN_LIMITS = {
    "max_integrations": 2,
    "available_types": ["stripe"],
    "features": ["basic_analytics"],
}

PLANS = {
    "pro": {
        "name": "Pro",
        "price": 995,  # cents
        "currency": "eur",
        "interval": "month",
        "features": [
            "Unlimited connections",
            "Smart alerts",
            "AI analysis",
            "Priority support",
        ],
        "limits": {
            "max_integrations": UNLIMITED_INTEGRATIONS,
            "available_types": ["stripe", "google_analytics", "gmail"],
            "features": ["unlimited_integrations", "ai_insights", "smart_alerts"],
        },
    },
    "business": {
        "name": "Business",
        "price": 1995,  # cents
        "currency": "eur",
        "interval": "month",
        "features": [
            "Everything in Pro",
            "Multiple businesses",
            "Advanced reports",
            "API access",
            "Dedicated support",
        ],
        "limits": {
            "max_integrations": UNLIMITED_INTEGRATIONS,
            "available_types": ["stripe", "google_analytics", "gmail"],
            "features": [
                "unlimited_integrations",
                "ai_insights",
                "smart_alerts",
                "api_access",
                "multiple_businesses",
            ],
        },
    },
}


def format_price(cents: int) -> str:
    return f"€{cents / 100:.2f}"


def _active_like(db: Session, user_id: int):
    return db.query(Subscription).filter(
        Subscription.user_id == user_id,
        Subscription.status.in_(ACTIVE_LIKE_STATUSES),
    ).order_by(Subscription.created_at.desc(), Subscription.id.desc())


def current_subscription(db: Session, user_id: int) -> Subscription | None:
    """The authoritative subscription: newest row with an active-like status."""
    return _active_like(db, user_id).first()


def current_plan(db: Session, user_id: int) -> str:
    """Plan type of the current subscription, or ``"free"``.

    A single SELECT reads plan and status from the same row version, so a
    concurrent reconciler commit cannot produce a mixed answer.
    """
    row = _active_like(db, user_id).with_entities(Subscription.plan_type).first()
    return row[0] if row else FREE_PLAN


def get_subscription_status(user: User) -> str:
    """User-level entitlement status (maintained by the reconciler)."""
    return user.subscription_status or SubscriptionStatus.free.value


def get_subscription_by_reference(
    db: Session,
    stripe_subscription_id: str,
    for_update: bool = False,
) -> Subscription | None:
    query = db.query(Subscription).filter(
        Subscription.stripe_subscription_id == stripe_subscription_id
    )
    if for_update:
        query = query.with_for_update()
    return query.first()


def find_pending_cancellation(db: Session, user_id: int) -> Subscription | None:
    return db.query(Subscription).filter(
        Subscription.user_id == user_id,
        Subscription.cancel_at_period_end.is_(True),
        Subscription.status.in_(ACTIVE_LIKE_STATUSES),
    ).order_by(Subscription.created_at.desc(), Subscription.id.desc()).first()


def change_plan(db: Session, subscription: Subscription, plan_type: str) -> Subscription:
    """Record a plan change made through the billing API.

    Only ``plan_type`` is written; status stays owned by reconciliation.
    """
    if plan_type not in PLANS:
        raise ValueError(f"Unknown plan: {plan_type}")
    subscription.plan_type = plan_type
    db.commit()
    db.refresh(subscription)
    return subscription


def user_stats(db: Session, user: User) -> dict:
    """Header numbers for the dashboard."""
    active_integrations = db.query(Integration).filter(
        Integration.user_id == user.id, Integration.is_active.is_(True)
    ).count()
    unread_alerts = db.query(Alert).filter(
        Alert.user_id == user.id, Alert.is_read.is_(False)
    ).count()
    return {
        "active_integrations": active_integrations,
        "unread_alerts": unread_alerts,
        "subscription_plan": current_plan(db, user.id),
        "subscription_status": get_subscription_status(user),
    }


def plan_limits(plan_type: str) -> dict:
    plan = PLANS.get(plan_type)
    return plan["limits"] if plan else FREE_PLAN_LIMITS


def integration_limits(db: Session, user: User) -> dict:
    """What the user's current plan allows in terms of connected integrations."""
    plan_type = current_plan(db, user.id)
    limits = plan_limits(plan_type)
    active_integrations = db.query(Integration).filter(
        Integration.user_id == user.id, Integration.is_active.is_(True)
    ).count()
    return {
        "subscription_status": get_subscription_status(user),
        "plan": plan_type,
        "limits": limits,
        "current_integrations": active_integrations,
        "can_add_more": active_integrations < limits["max_integrations"],
    }
