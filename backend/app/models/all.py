"""Import every model so relationships resolve and tables register on Base."""
from app.models.user import User, UserSession, SubscriptionStatus  # noqa: F401
from app.models.subscription import Subscription  # noqa: F401
from app.models.alert import Alert  # noqa: F401
from app.models.integration import Integration  # noqa: F401
from app.models.billing_event import ProcessedBillingEvent  # noqa: F401
