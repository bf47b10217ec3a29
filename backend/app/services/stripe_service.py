import logging
from typing import Any

import stripe

from app.core.config import Settings
from app.models.user import User
from app.services.entitlements import PLANS

logger = logging.getLogger(__name__)


class BillingNotConfiguredError(Exception):
    """STRIPE_SECRET_KEY is not set."""
    code = "STRIPE_NOT_CONFIGURED"


class StripeService:
    """Outbound calls to the Stripe API.

    State changes are not written here; they arrive through webhooks (or
    ``BillingEventReconciler.apply_subscription_snapshot``).
    """

    # Plan products known to exist in the Stripe account
    _known_products: set[str] = set()

    def __init__(self, settings: Settings):
        self.settings = settings

    @property
    def _api_key(self) -> str:
        if not self.settings.stripe_secret_key:
            raise BillingNotConfiguredError("Payment system is not configured")
        return self.settings.stripe_secret_key

    @staticmethod
    def product_id(plan_type: str) -> str:
        """Fixed Stripe product id of a plan, shared by every process."""
        return f"bizlytics_{plan_type}"

    def _ensure_product(self, plan_type: str) -> str:
        product_id = self.product_id(plan_type)
        if product_id in self._known_products:
            return product_id

        try:
            stripe.Product.retrieve(product_id, api_key=self._api_key)
        except stripe.InvalidRequestError as exc:
            if exc.code != "resource_missing":
                raise
            plan = PLANS[plan_type]
            stripe.Product.create(
                api_key=self._api_key,
                id=product_id,
                name=f"Bizlytics {plan['name']}",
                description=f"{plan['name']} plan - {', '.join(plan['features'])}",
                metadata={"plan_type": plan_type},
            )
            logger.info("Created Stripe product %s", product_id)
        self._known_products.add(product_id)
        return product_id

    def _price_data(self, plan_type: str) -> dict[str, Any]:
        plan = PLANS[plan_type]
        return {
            "currency": plan["currency"],
            "product": self._ensure_product(plan_type),
            "unit_amount": plan["price"],
            "recurring": {"interval": plan["interval"]},
        }

    def create_or_get_customer(self, user: User) -> str:
        if user.stripe_customer_id:
            return user.stripe_customer_id

        customer = stripe.Customer.create(
            api_key=self._api_key,
            email=user.email,
            name=user.name,
            metadata={"user_id": str(user.id), "app": "Bizlytics"},
        )
        logger.info("Created Stripe customer %s for user %s", customer["id"], user.id)
        return customer["id"]

    def create_subscription(self, customer_id: str, user_id: int, plan_type: str) -> Any:
        return stripe.Subscription.create(
            api_key=self._api_key,
            customer=customer_id,
            items=[{"price_data": self._price_data(plan_type)}],
            payment_behavior="default_incomplete",
            payment_settings={
                "payment_method_types": ["card"],
                "save_default_payment_method": "on_subscription",
            },
            expand=["latest_invoice.payment_intent"],
            trial_period_days=self.settings.trial_period_days,
            metadata={"user_id": str(user_id), "plan_type": plan_type},
        )

    def change_plan(self, subscription_id: str, plan_type: str) -> Any:
        subscription = stripe.Subscription.retrieve(subscription_id, api_key=self._api_key)
        item_id = subscription["items"]["data"][0]["id"]
        return stripe.Subscription.modify(
            subscription_id,
            api_key=self._api_key,
            items=[{"id": item_id, "price_data": self._price_data(plan_type)}],
            proration_behavior="create_prorations",
            metadata={"plan_type": plan_type},
        )

    def schedule_cancellation(self, subscription_id: str) -> Any:
        return stripe.Subscription.modify(
            subscription_id, api_key=self._api_key, cancel_at_period_end=True
        )

    def cancel_now(self, subscription_id: str) -> Any:
        return stripe.Subscription.cancel(subscription_id, api_key=self._api_key)

    def reactivate(self, subscription_id: str) -> Any:
        return stripe.Subscription.modify(
            subscription_id, api_key=self._api_key, cancel_at_period_end=False
        )

    def preview_invoice(self, customer_id: str, plan_type: str) -> Any:
        """Invoice Stripe would issue if ``customer_id`` subscribed to ``plan_type``."""
        return stripe.Invoice.create_preview(
            api_key=self._api_key,
            customer=customer_id,
            subscription_details={"items": [{"price_data": self._price_data(plan_type)}]},
        )
