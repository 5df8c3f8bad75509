"""Subscription tier model: an analyst-defined pricing plan."""
from datetime import datetime
from uuid import uuid4
from sqlalchemy import String, Integer, Boolean, DateTime, ForeignKey, Index, Text, JSON, CheckConstraint
from sqlalchemy.orm import Mapped, mapped_column
from app.database import Base


class SubscriptionTier(Base):
    """Pricing plan published by an analyst.

    `price` is the list price per billing cycle in paise. A null
    `max_subscribers` means unlimited capacity.
    """

    __tablename__ = "subscription_tiers"

    uuid: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    analyst_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.uuid"), nullable=False)

    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    price: Mapped[int] = mapped_column(Integer, nullable=False)
    billing_cycle: Mapped[str] = mapped_column(String(20), nullable=False, default="monthly")
    features: Mapped[dict] = mapped_column(JSON, default=dict)
    max_subscribers: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    # Razorpay plan, created lazily on first checkout
    razorpay_plan_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        CheckConstraint("price >= 0", name="ck_tier_price_non_negative"),
        Index("idx_tier_analyst_id", "analyst_id"),
    )

    def __repr__(self) -> str:
        return f"<SubscriptionTier(uuid={self.uuid}, name={self.name}, price={self.price})>"
