import logging
from datetime import datetime, timedelta
from typing import Callable

import stripe
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from app.core.auth import get_clock, get_current_user
from app.core.clock import from_timestamp
from app.core.config import Settings, get_settings
from app.database import get_db, storage_guard
from app.models.subscription import Subscription
from app.models.user import User
from app.schemas.subscription import (
    CancelRequest,
    CurrentSubscriptionResponse,
    InvoicePreviewResponse,
    PlanChangeRequest,
    PlanListResponse,
    PlanResponse,
    SubscribeRequest,
    SubscriptionActionResponse,
    SubscriptionResponse,
)
from app.services import entitlements
from app.services.reconciler import BillingEventReconciler
from app.services.stripe_service import BillingNotConfiguredError, StripeService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/subscriptions", tags=["subscription"])


def get_stripe_service(settings: Settings = Depends(get_settings)) -> StripeService:
    if not settings.billing_configured:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "error": BillingNotConfiguredError.code,
                "message": "Payment system is not configured. Contact the administrator.",
            },
        )
    return StripeService(settings)


def _stripe_http_error(exc: stripe.StripeError) -> HTTPException:
    logger.warning("Stripe API error: %s", exc)
    code = status.HTTP_400_BAD_REQUEST if isinstance(exc, stripe.CardError) else status.HTTP_502_BAD_GATEWAY
    return HTTPException(status_code=code, detail=f"Stripe error: {exc.user_message or str(exc)}")


def _subscription_response(subscription: Subscription) -> SubscriptionResponse:
    plan = entitlements.PLANS.get(subscription.plan_type)
    return SubscriptionResponse(
        id=subscription.id,
        stripe_subscription_id=subscription.stripe_subscription_id,
        plan_type=subscription.plan_type,
        plan_name=plan["name"] if plan else subscription.plan_type,
        status=subscription.status,
        current_period_start=subscription.current_period_start,
        current_period_end=subscription.current_period_end,
        cancel_at_period_end=bool(subscription.cancel_at_period_end),
        price=plan["price"] if plan else 0,
        price_formatted=entitlements.format_price(plan["price"] if plan else 0),
        features=plan["features"] if plan else [],
    )


@router.get("/plans", response_model=PlanListResponse)
def list_plans():
    return PlanListResponse(
        plans=[
            PlanResponse(
                id=key,
                name=plan["name"],
                price=plan["price"],
                currency=plan["currency"],
                interval=plan["interval"],
                features=plan["features"],
                price_formatted=entitlements.format_price(plan["price"]),
            )
            for key, plan in entitlements.PLANS.items()
        ]
    )


@router.get("/current", response_model=CurrentSubscriptionResponse)
def get_current_subscription(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    with storage_guard(db):
        subscription = entitlements.current_subscription(db, current_user.id)
    return CurrentSubscriptionResponse(
        subscription=_subscription_response(subscription) if subscription else None,
        plan=subscription.plan_type if subscription else entitlements.FREE_PLAN,
        status=entitlements.get_subscription_status(current_user),
    )


@router.post("/create", response_model=SubscriptionActionResponse)
def create_subscription(
    request: SubscribeRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    service: StripeService = Depends(get_stripe_service),
):
    if entitlements.current_subscription(db, current_user.id) is not None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="You already have an active subscription",
        )

    try:
        customer_id = service.create_or_get_customer(current_user)
        if not current_user.stripe_customer_id:
            current_user.stripe_customer_id = customer_id
            db.commit()
        subscription = service.create_subscription(customer_id, current_user.id, request.plan_type)
    except stripe.StripeError as exc:
        raise _stripe_http_error(exc) from exc

    BillingEventReconciler(db, settings).apply_subscription_snapshot(current_user, subscription)

    client_secret = None
    try:
        client_secret = subscription["latest_invoice"]["payment_intent"]["client_secret"]
    except (KeyError, TypeError):
        pass

    return SubscriptionActionResponse(
        message="Subscription created",
        subscription_id=subscription["id"],
        status=subscription["status"],
        plan_type=request.plan_type,
        client_secret=client_secret,
        trial_end=from_timestamp(subscription.get("trial_end")),
    )


@router.put("/update", response_model=SubscriptionActionResponse)
def change_subscription_plan(
    request: PlanChangeRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    service: StripeService = Depends(get_stripe_service),
):
    current = entitlements.current_subscription(db, current_user.id)
    if current is None or not current.stripe_subscription_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="You have no active subscription")

    try:
        subscription = service.change_plan(current.stripe_subscription_id, request.plan_type)
    except stripe.StripeError as exc:
        raise _stripe_http_error(exc) from exc

    entitlements.change_plan(db, current, request.plan_type)
    return SubscriptionActionResponse(
        message="Subscription updated",
        subscription_id=subscription["id"],
        status=subscription["status"],
        plan_type=request.plan_type,
    )


@router.delete("/cancel", response_model=SubscriptionActionResponse)
def cancel_subscription(
    request: CancelRequest | None = None,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    service: StripeService = Depends(get_stripe_service),
):
    immediate = bool(request and request.immediate)
    current = entitlements.current_subscription(db, current_user.id)
    if current is None or not current.stripe_subscription_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="You have no active subscription")

    try:
        if immediate:
            subscription = service.cancel_now(current.stripe_subscription_id)
        else:
            subscription = service.schedule_cancellation(current.stripe_subscription_id)
    except stripe.StripeError as exc:
        raise _stripe_http_error(exc) from exc

    # The resulting customer.subscription.* webhook updates local state
    return SubscriptionActionResponse(
        message="Subscription canceled immediately" if immediate
        else "Subscription will be canceled at the end of the period",
        subscription_id=subscription["id"],
        status=subscription["status"],
        cancel_at_period_end=bool(subscription.get("cancel_at_period_end")),
    )


@router.post("/reactivate", response_model=SubscriptionActionResponse)
def reactivate_subscription(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    service: StripeService = Depends(get_stripe_service),
):
    pending = entitlements.find_pending_cancellation(db, current_user.id)
    if pending is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="You have no subscription pending cancellation",
        )

    try:
        subscription = service.reactivate(pending.stripe_subscription_id)
    except stripe.StripeError as exc:
        raise _stripe_http_error(exc) from exc

    return SubscriptionActionResponse(
        message="Subscription reactivated",
        subscription_id=subscription["id"],
        status=subscription["status"],
        cancel_at_period_end=False,
    )


def get_optional_stripe_service(settings: Settings = Depends(get_settings)) -> StripeService | None:
    return StripeService(settings) if settings.billing_configured else None


@router.get("/invoice-preview/{plan_type}", response_model=InvoicePreviewResponse)
def invoice_preview(
    plan_type: str,
    current_user: User = Depends(get_current_user),
    settings: Settings = Depends(get_settings),
    clock: Callable[[], datetime] = Depends(get_clock),
    service: StripeService | None = Depends(get_optional_stripe_service),
):
    """Price of the first invoice for ``plan_type``.

    Without Stripe, or before the user has a Stripe customer, the amount
    comes from the local plan catalog.
    """
    plan = entitlements.PLANS.get(plan_type)
    if plan is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid plan")

    amount, currency, estimated = plan["price"], plan["currency"], True
    if service is not None and current_user.stripe_customer_id:
        try:
            preview = service.preview_invoice(current_user.stripe_customer_id, plan_type)
        except stripe.StripeError as exc:
            raise _stripe_http_error(exc) from exc
        amount, currency, estimated = preview["amount_due"], preview["currency"], False

    return InvoicePreviewResponse(
        plan_type=plan_type,
        plan_name=plan["name"],
        amount=amount,
        currency=currency,
        amount_formatted=entitlements.format_price(amount),
        trial_days=settings.trial_period_days,
        next_payment_date=clock() + timedelta(days=settings.trial_period_days),
        estimated=estimated,
    )
