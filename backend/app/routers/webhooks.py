import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from app.core.auth import get_current_user
from app.core.clock import utc_now
from app.core.config import Settings, get_settings
from app.database import get_db
from app.models.user import User
from app.schemas.alert import AlertResponse
from app.schemas.subscription import WebhookAck
from app.services.alerts import recent_billing_alerts
from app.services.reconciler import (
    BillingEventReconciler,
    MalformedEventError,
    WebhookVerificationError,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


def get_reconciler(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> BillingEventReconciler:
    return BillingEventReconciler(db, settings)


@router.post("/stripe", response_model=WebhookAck)
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(None, alias="Stripe-Signature"),
    reconciler: BillingEventReconciler = Depends(get_reconciler),
):
    payload = await request.body()

    # Storage work stays off the event loop
    try:
        event = await run_in_threadpool(reconciler.construct_event, payload, stripe_signature)
    except WebhookVerificationError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": "invalid_signature", "message": "Webhook signature verification failed"},
        )
    except MalformedEventError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": "invalid_payload", "message": str(exc)},
        )

    try:
        result = await run_in_threadpool(reconciler.handle, event)
    except MalformedEventError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": "invalid_payload", "message": str(exc)},
        )

    return WebhookAck(outcome=result.outcome.value, event_type=result.event_type)


@router.get("/test")
def webhook_status(settings: Settings = Depends(get_settings)):
    return {
        "status": "ok",
        "message": "Webhook endpoint is up",
        "timestamp": utc_now().isoformat(),
        "stripe_configured": settings.billing_configured,
        "webhook_secret_configured": settings.webhook_verification_enabled,
        "mode": "verified" if settings.webhook_verification_enabled else "development",
    }


@router.get("/events", response_model=list[AlertResponse])
def recent_events(
    limit: int = 20,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return recent_billing_alerts(db, current_user.id, limit=min(max(limit, 1), 100))
