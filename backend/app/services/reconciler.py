"""Stripe webhook reconciliation.

Turns verified billing events into subscription rows, the user's
entitlement status and user-facing alerts. Stripe delivers at least once
and in no particular order, so every handler is an idempotent upsert keyed
by the Stripe subscription id, event ids are remembered to drop
redeliveries, and events older than the last one applied to a row are
acknowledged without effect.
"""
import enum
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

import stripe
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.clock import as_utc, from_timestamp
from app.core.config import Settings
from app.database import storage_guard
from app.models.billing_event import ProcessedBillingEvent
from app.models.subscription import Subscription
from app.models.user import SubscriptionStatus, User
from app.services.alerts import AlertKind, AlertSeverity, emit_alert
from app.services.entitlements import current_subscription, get_subscription_by_reference
from app.services.integrations import deactivate_premium_integrations

logger = logging.getLogger(__name__)

SUBSCRIPTION_CREATED = "customer.subscription.created"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"
PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
PAYMENT_FAILED = "invoice.payment_failed"
TRIAL_WILL_END = "customer.subscription.trial_will_end"
CUSTOMER_CREATED = "customer.created"

DEFAULT_PLAN_TYPE = "pro"

# Stripe statuses that have no direct counterpart on the user record
USER_STATUS_BY_BILLING_STATUS = {
    "trialing": SubscriptionStatus.trialing.value,
    "active": SubscriptionStatus.active.value,
    "past_due": SubscriptionStatus.past_due.value,
    "canceled": SubscriptionStatus.canceled.value,
    "incomplete": SubscriptionStatus.past_due.value,
    "unpaid": SubscriptionStatus.past_due.value,
    "incomplete_expired": SubscriptionStatus.canceled.value,
    "paused": SubscriptionStatus.canceled.value,
}


class ReconcileError(Exception):
    """Event rejected; Stripe will redeliver it."""
    pass


class WebhookVerificationError(ReconcileError):
    """Signature header missing or not valid for the payload."""
    pass


class MalformedEventError(ReconcileError):
    """Body is not a usable Stripe event envelope."""
    pass


class Outcome(str, enum.Enum):
    applied = "applied"
    duplicate = "duplicate"
    stale = "stale"
    ignored = "ignored"
    user_not_found = "user_not_found"


@dataclass
class ReconcileResult:
    """Result of handling one event. Every outcome is acknowledged."""
    outcome: Outcome
    event_type: str
    event_id: str | None = None
    user_id: int | None = None

    @property
    def processed(self) -> bool:
        return self.outcome == Outcome.applied


@dataclass
class SubscriptionSnapshot:
    """Fields of a Stripe subscription object that we mirror."""
    subscription_id: str
    customer_id: str
    status: str
    plan_type: str
    current_period_start: datetime | None
    current_period_end: datetime | None
    cancel_at_period_end: bool
    trial_end: datetime | None

    @classmethod
    def from_object(cls, obj: Any) -> "SubscriptionSnapshot":
        subscription_id = _field(obj, "id")
        customer_id = _field(obj, "customer")
        status = _field(obj, "status")
        if not all(isinstance(value, str) and value for value in (subscription_id, customer_id, status)):
            raise MalformedEventError("Subscription object requires id, customer and status")

        metadata = _field(obj, "metadata") or {}
        plan_type = _field(metadata, "plan_type") or DEFAULT_PLAN_TYPE
        if not isinstance(plan_type, str):
            raise MalformedEventError("metadata.plan_type must be a string")
        period_start = _field(obj, "current_period_start")
        period_end = _field(obj, "current_period_end")
        if period_start is None or period_end is None:
            # Newer API versions carry the billing period on the items
            item_list = _field(_field(obj, "items"), "data")
            first_item = item_list[0] if isinstance(item_list, list) and item_list else None
            if first_item is not None:
                period_start = period_start or _field(first_item, "current_period_start")
                period_end = period_end or _field(first_item, "current_period_end")

        return cls(
            subscription_id=subscription_id,
            customer_id=customer_id,
            status=status,
            plan_type=plan_type,
            current_period_start=_timestamp(period_start, "current_period_start"),
            current_period_end=_timestamp(period_end, "current_period_end"),
            cancel_at_period_end=bool(_field(obj, "cancel_at_period_end")),
            trial_end=_timestamp(_field(obj, "trial_end"), "trial_end"),
        )


def _field(obj: Any, key: str) -> Any:
    """Read a key from a plain dict or a StripeObject."""
    if obj is None:
        return None
    try:
        return obj[key]
    except (KeyError, TypeError):
        return None


def _timestamp(value: Any, name: str) -> datetime | None:
    """Unix seconds to an aware datetime; anything else is a malformed event."""
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise MalformedEventError(f"'{name}' must be a Unix timestamp")
    try:
        return from_timestamp(value)
    except (ValueError, OverflowError, OSError) as exc:
        raise MalformedEventError(f"'{name}' is out of range") from exc


def _format_amount(cents: Any, currency: Any) -> tuple[float, str]:
    if cents is None:
        cents = 0
    if isinstance(cents, bool) or not isinstance(cents, int):
        raise MalformedEventError("Invoice amount must be an integer number of cents")
    if currency is not None and not isinstance(currency, str):
        raise MalformedEventError("Invoice currency must be a string")
    return cents / 100, (currency or "eur").lower()


class BillingEventReconciler:
    """Applies Stripe events to local billing state."""

    def __init__(self, db: Session, settings: Settings):
        self.db = db
        self.settings = settings
        self._handlers: dict[str, Callable[[Any, datetime | None], ReconcileResult]] = {
            SUBSCRIPTION_CREATED: self._handle_subscription_created,
            SUBSCRIPTION_UPDATED: self._handle_subscription_updated,
            SUBSCRIPTION_DELETED: self._handle_subscription_deleted,
            PAYMENT_SUCCEEDED: self._handle_payment_succeeded,
            PAYMENT_FAILED: self._handle_payment_failed,
            TRIAL_WILL_END: self._handle_trial_will_end,
            CUSTOMER_CREATED: self._handle_customer_created,
        }
        if not settings.webhook_verification_enabled:
            log = logger.warning if settings.is_development else logger.error
            log(
                "STRIPE_WEBHOOK_SECRET is not configured: webhook signatures are NOT "
                "verified (development mode, environment=%s)",
                settings.environment,
            )

    # ------------------------------------------------------------------
    # Envelope
    # ------------------------------------------------------------------

    def construct_event(self, payload: bytes | str, sig_header: str | None) -> dict[str, Any]:
        """Verify the signature over the raw body and parse the envelope.

        Raises:
            WebhookVerificationError: Missing or invalid signature.
            MalformedEventError: Body is not a JSON event envelope.
        """
        try:
            text = payload.decode("utf-8") if isinstance(payload, bytes) else payload
        except UnicodeDecodeError as exc:
            raise MalformedEventError("Payload is not UTF-8") from exc

        if self.settings.webhook_verification_enabled:
            if not sig_header:
                raise WebhookVerificationError("Missing Stripe-Signature header")
            try:
                stripe.WebhookSignature.verify_header(
                    text,
                    sig_header,
                    self.settings.stripe_webhook_secret,
                    self.settings.webhook_tolerance_seconds,
                )
            except stripe.SignatureVerificationError as exc:
                logger.warning("Stripe signature verification failed: %s", exc)
                raise WebhookVerificationError(str(exc)) from exc
        else:
            logger.warning("Accepting unverified webhook payload (development mode)")

        try:
            event = json.loads(text)
        except ValueError as exc:
            raise MalformedEventError("Payload is not valid JSON") from exc
        return self.validate_envelope(event)

    @staticmethod
    def validate_envelope(event: Any) -> dict[str, Any]:
        if not isinstance(event, dict):
            raise MalformedEventError("Event must be a JSON object")
        if not isinstance(event.get("type"), str) or not event["type"]:
            raise MalformedEventError("Event is missing 'type'")
        data = event.get("data")
        if not isinstance(data, dict) or not isinstance(data.get("object"), dict):
            raise MalformedEventError("Event is missing 'data.object'")
        return event

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def handle(self, event: dict[str, Any]) -> ReconcileResult:
        """Apply one event in a single transaction.

        Raises:
            MalformedEventError: Required fields are missing.
            StorageUnavailableError: The store failed; nothing was written.
        """
        event = self.validate_envelope(event)
        event_type = event["type"]
        event_id = event.get("id")
        occurred_at = _timestamp(event.get("created"), "created")
        logger.info("Received billing event %s (%s)", event_type, event_id or "no id")

        handler = self._handlers.get(event_type)
        if handler is None:
            logger.info("Ignoring unhandled billing event type %s", event_type)
            return ReconcileResult(Outcome.ignored, event_type, event_id)

        # One retry covers a concurrent insert of the same subscription or event id
        for attempt in range(2):
            try:
                return self._apply(handler, event, occurred_at)
            except IntegrityError:
                self.db.rollback()
                if attempt:
                    raise
                logger.info("Uniqueness conflict while applying %s, retrying", event_id)
            except ReconcileError:
                self.db.rollback()
                raise

    def _apply(self, handler, event: dict[str, Any], occurred_at: datetime | None) -> ReconcileResult:
        event_type = event["type"]
        event_id = event.get("id")
        with storage_guard(self.db):
            if event_id and self._already_processed(event_id):
                logger.info("Skipping already processed event %s", event_id)
                return ReconcileResult(Outcome.duplicate, event_type, event_id)

            result = handler(event["data"]["object"], occurred_at)
            result.event_type = event_type
            result.event_id = event_id

            if result.processed and event_id:
                self.db.add(ProcessedBillingEvent(event_id=event_id, event_type=event_type))
            self.db.commit()
        return result

    def _already_processed(self, event_id: str) -> bool:
        return self.db.query(ProcessedBillingEvent.id).filter(
            ProcessedBillingEvent.event_id == event_id
        ).first() is not None

    # ------------------------------------------------------------------
    # Shared steps
    # ------------------------------------------------------------------

    def _resolve_user(self, customer_id: Any) -> User | None:
        if not customer_id:
            return None
        if not isinstance(customer_id, str):
            raise MalformedEventError("'customer' must be a Stripe customer id")
        user = self.db.query(User).filter(User.stripe_customer_id == customer_id).first()
        if user is None:
            logger.warning("No user for Stripe customer %s; dropping event", customer_id)
        return user

    def _upsert_subscription(
        self,
        user: User,
        snapshot: SubscriptionSnapshot,
        occurred_at: datetime | None,
        status: str | None = None,
    ) -> tuple[Subscription, bool]:
        """Insert or overwrite the row for ``snapshot.subscription_id``.

        Returns:
            The row and whether the event was stale (row left untouched).
        """
        row = get_subscription_by_reference(self.db, snapshot.subscription_id, for_update=True)
        if row is not None and occurred_at is not None and row.last_event_at is not None:
            if occurred_at < as_utc(row.last_event_at):
                logger.info(
                    "Stale event for subscription %s (event %s < applied %s)",
                    snapshot.subscription_id,
                    occurred_at.isoformat(),
                    as_utc(row.last_event_at).isoformat(),
                )
                return row, True

        if row is None:
            row = Subscription(
                user_id=user.id,
                stripe_subscription_id=snapshot.subscription_id,
                plan_type=snapshot.plan_type,
            )
            self.db.add(row)

        row.status = status or snapshot.status
        row.current_period_start = snapshot.current_period_start
        row.current_period_end = snapshot.current_period_end
        row.cancel_at_period_end = snapshot.cancel_at_period_end
        row.trial_end = snapshot.trial_end
        if occurred_at is not None:
            row.last_event_at = occurred_at
        self.db.flush()
        return row, False

    @staticmethod
    def _set_user_status(user: User, billing_status: str) -> None:
        user.subscription_status = USER_STATUS_BY_BILLING_STATUS.get(
            billing_status, SubscriptionStatus.free.value
        )

    def apply_subscription_snapshot(self, user: User, subscription: Any) -> Subscription:
        """Mirror a subscription returned by the Stripe API right after creation.

        The later ``customer.subscription.created`` webhook lands on the same
        row and sends the welcome alert.
        """
        snapshot = SubscriptionSnapshot.from_object(subscription)
        with storage_guard(self.db):
            row, _ = self._upsert_subscription(user, snapshot, occurred_at=None)
            self._set_user_status(user, snapshot.status)
            self.db.commit()
        self.db.refresh(row)
        return row

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def _handle_subscription_created(self, obj: Any, occurred_at: datetime | None) -> ReconcileResult:
        snapshot = SubscriptionSnapshot.from_object(obj)
        user = self._resolve_user(snapshot.customer_id)
        if user is None:
            return ReconcileResult(Outcome.user_not_found, SUBSCRIPTION_CREATED)

        row, stale = self._upsert_subscription(user, snapshot, occurred_at)
        if stale:
            return ReconcileResult(Outcome.stale, SUBSCRIPTION_CREATED, user_id=user.id)

        self._set_user_status(user, snapshot.status)
        emit_alert(
            self.db,
            user.id,
            AlertKind.subscription_created,
            "Welcome to Bizlytics!",
            f"Your {row.plan_type.title()} subscription is active. Start connecting your tools!",
            AlertSeverity.success,
            {"subscription_id": snapshot.subscription_id, "plan": row.plan_type},
        )
        logger.info("Subscription %s created for user %s", snapshot.subscription_id, user.id)
        return ReconcileResult(Outcome.applied, SUBSCRIPTION_CREATED, user_id=user.id)

    def _handle_subscription_updated(self, obj: Any, occurred_at: datetime | None) -> ReconcileResult:
        snapshot = SubscriptionSnapshot.from_object(obj)
        user = self._resolve_user(snapshot.customer_id)
        if user is None:
            return ReconcileResult(Outcome.user_not_found, SUBSCRIPTION_UPDATED)

        existing = get_subscription_by_reference(self.db, snapshot.subscription_id, for_update=True)
        previous_status = existing.status if existing is not None else None
        previous_cancel = bool(existing.cancel_at_period_end) if existing is not None else False

        row, stale = self._upsert_subscription(user, snapshot, occurred_at)
        if stale:
            return ReconcileResult(Outcome.stale, SUBSCRIPTION_UPDATED, user_id=user.id)

        self._set_user_status(user, snapshot.status)

        if snapshot.cancel_at_period_end and not previous_cancel:
            ends = snapshot.current_period_end
            ends_text = f" on {ends:%d/%m/%Y}" if ends else " at the end of the billing period"
            title = "Subscription scheduled for cancellation"
            message = f"Your subscription will be canceled{ends_text}. You can reactivate it at any time."
            severity = AlertSeverity.warning
        elif snapshot.status == "active" and (previous_status != "active" or previous_cancel):
            title = "Subscription reactivated"
            message = "Great! Your subscription is active again."
            severity = AlertSeverity.success
        else:
            title = "Subscription updated"
            message = "Your subscription has been updated successfully."
            severity = AlertSeverity.info

        emit_alert(
            self.db,
            user.id,
            AlertKind.subscription_updated,
            title,
            message,
            severity,
            {"subscription_id": snapshot.subscription_id, "status": snapshot.status},
        )
        return ReconcileResult(Outcome.applied, SUBSCRIPTION_UPDATED, user_id=user.id)

    def _handle_subscription_deleted(self, obj: Any, occurred_at: datetime | None) -> ReconcileResult:
        snapshot = SubscriptionSnapshot.from_object(obj)
        user = self._resolve_user(snapshot.customer_id)
        if user is None:
            return ReconcileResult(Outcome.user_not_found, SUBSCRIPTION_DELETED)

        _, stale = self._upsert_subscription(
            user, snapshot, occurred_at, status=SubscriptionStatus.canceled.value
        )
        if stale:
            return ReconcileResult(Outcome.stale, SUBSCRIPTION_DELETED, user_id=user.id)

        remaining = current_subscription(self.db, user.id)
        if remaining is None:
            user.subscription_status = SubscriptionStatus.free.value
            deactivate_premium_integrations(self.db, user.id, self.settings.premium_integration_types)
        else:
            # Another subscription still grants a plan
            self._set_user_status(user, remaining.status)
            logger.info(
                "User %s keeps subscription %s after %s was canceled",
                user.id, remaining.stripe_subscription_id, snapshot.subscription_id,
            )
        emit_alert(
            self.db,
            user.id,
            AlertKind.subscription_canceled,
            "Subscription canceled",
            "Your subscription has been canceled. You can keep using the basic features "
            "or reactivate your plan at any time.",
            AlertSeverity.warning,
            {"subscription_id": snapshot.subscription_id},
        )
        logger.info("Subscription %s canceled for user %s", snapshot.subscription_id, user.id)
        return ReconcileResult(Outcome.applied, SUBSCRIPTION_DELETED, user_id=user.id)

    def _handle_payment_succeeded(self, invoice: Any, occurred_at: datetime | None) -> ReconcileResult:
        user = self._resolve_user(_field(invoice, "customer"))
        if user is None:
            return ReconcileResult(Outcome.user_not_found, PAYMENT_SUCCEEDED)

        amount, currency = _format_amount(_field(invoice, "amount_paid"), _field(invoice, "currency"))
        emit_alert(
            self.db,
            user.id,
            AlertKind.payment_succeeded,
            "Payment processed successfully",
            f"Your payment of {amount:.2f} {currency.upper()} has been processed. Thank you!",
            AlertSeverity.success,
            {"invoice_id": _field(invoice, "id"), "amount": amount, "currency": currency},
        )
        return ReconcileResult(Outcome.applied, PAYMENT_SUCCEEDED, user_id=user.id)

    def _handle_payment_failed(self, invoice: Any, occurred_at: datetime | None) -> ReconcileResult:
        user = self._resolve_user(_field(invoice, "customer"))
        if user is None:
            return ReconcileResult(Outcome.user_not_found, PAYMENT_FAILED)

        amount, currency = _format_amount(_field(invoice, "amount_due"), _field(invoice, "currency"))
        emit_alert(
            self.db,
            user.id,
            AlertKind.payment_failed,
            "Payment problem",
            f"We could not process your payment of {amount:.2f} {currency.upper()}. "
            "Please update your payment method to keep your subscription.",
            AlertSeverity.error,
            {"invoice_id": _field(invoice, "id"), "amount": amount, "currency": currency},
        )
        return ReconcileResult(Outcome.applied, PAYMENT_FAILED, user_id=user.id)

    def _handle_trial_will_end(self, obj: Any, occurred_at: datetime | None) -> ReconcileResult:
        trial_end = _timestamp(_field(obj, "trial_end"), "trial_end")
        if trial_end is None:
            raise MalformedEventError("trial_will_end event without trial_end")

        user = self._resolve_user(_field(obj, "customer"))
        if user is None:
            return ReconcileResult(Outcome.user_not_found, TRIAL_WILL_END)

        emit_alert(
            self.db,
            user.id,
            AlertKind.trial_ending,
            "Your free trial ends soon",
            f"Your free trial ends on {trial_end:%d/%m/%Y}. Make sure a payment method is "
            "set up to continue without interruption.",
            AlertSeverity.warning,
            {"subscription_id": _field(obj, "id"), "trial_end": trial_end.isoformat()},
        )
        return ReconcileResult(Outcome.applied, TRIAL_WILL_END, user_id=user.id)

    def _handle_customer_created(self, customer: Any, occurred_at: datetime | None) -> ReconcileResult:
        customer_id = _field(customer, "id")
        email = _field(customer, "email")
        if not isinstance(customer_id, str) or not customer_id:
            raise MalformedEventError("Customer object requires id")
        if not isinstance(email, str) or not email:
            return ReconcileResult(Outcome.user_not_found, CUSTOMER_CREATED)

        bound = self.db.query(User).filter(User.stripe_customer_id == customer_id).first()
        if bound is not None:
            return ReconcileResult(Outcome.applied, CUSTOMER_CREATED, user_id=bound.id)

        user = self.db.query(User).filter(
            User.email == email.lower(),
            User.stripe_customer_id.is_(None),
        ).first()
        if user is None:
            logger.warning("No unbound user with email for Stripe customer %s", customer_id)
            return ReconcileResult(Outcome.user_not_found, CUSTOMER_CREATED)

        user.stripe_customer_id = customer_id
        logger.info("Linked user %s to Stripe customer %s", user.id, customer_id)
        return ReconcileResult(Outcome.applied, CUSTOMER_CREATED, user_id=user.id)
