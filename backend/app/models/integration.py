from sqlalchemy import Boolean, Column, Integer, String, DateTime, ForeignKey, JSON, UniqueConstraint
from sqlalchemy.orm import relationship

from app.core.clock import utc_now
from app.database import Base


class Integration(Base):
    """A third-party data source connected by a user."""
    __tablename__ = "integrations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    integration_type = Column(String(50), nullable=False)  # e.g. "stripe", "google_analytics", "gmail"
    integration_name = Column(String(255), nullable=False)
    additional_data = Column(JSON, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False)

    user = relationship("User", back_populates="integrations")

    __table_args__ = (
        UniqueConstraint("user_id", "integration_type", name="uq_integration_user_type"),
    )
