from sqlalchemy import Column, Integer, String, DateTime

from app.core.clock import utc_now
from app.database import Base


class ProcessedBillingEvent(Base):
    """Stripe event ids already applied, for redelivery de-duplication."""
    __tablename__ = "processed_billing_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_id = Column(String(255), unique=True, nullable=False)
    event_type = Column(String(100), nullable=False)
    processed_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)
