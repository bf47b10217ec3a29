import enum

from sqlalchemy import Column, Integer, String, DateTime, ForeignKey
from sqlalchemy.orm import relationship

from app.core.clock import utc_now
from app.database import Base


class SubscriptionStatus(str, enum.Enum):
    """Entitlement status shown on the user record."""
    free = "free"
    trialing = "trialing"
    active = "active"
    past_due = "past_due"
    canceled = "canceled"


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    hashed_password = Column(String(255), nullable=False)
    name = Column(String(255), nullable=False)
    company_name = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False)

    # Written only by the billing reconciler
    subscription_status = Column(String(50), nullable=False, default=SubscriptionStatus.free.value)
    stripe_customer_id = Column(String(255), unique=True, nullable=True, index=True)

    sessions = relationship(
        "UserSession", back_populates="user", cascade="all, delete-orphan", passive_deletes=True
    )
    subscriptions = relationship(
        "Subscription", back_populates="user", cascade="all, delete-orphan", passive_deletes=True
    )
    alerts = relationship(
        "Alert", back_populates="user", cascade="all, delete-orphan", passive_deletes=True
    )
    integrations = relationship(
        "Integration", back_populates="user", cascade="all, delete-orphan", passive_deletes=True
    )


class UserSession(Base):
    """Server-side session record backing a signed bearer token."""
    __tablename__ = "sessions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    session_token = Column(String(512), unique=True, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)

    user = relationship("User", back_populates="sessions")
