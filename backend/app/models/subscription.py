"""Subscription model: one trader's relationship to one analyst under one tier."""
from datetime import datetime
from uuid import uuid4
from sqlalchemy import String, Integer, Boolean, DateTime, ForeignKey, Index, CheckConstraint, select
from sqlalchemy.orm import Mapped, mapped_column
from app.database import Base


class Subscription(Base):
    """Recurring subscription billed through Razorpay.

    Rows are never hard-deleted; `is_deleted` is the tombstone flag and
    every read path goes through `Subscription.live()`.
    All amounts are stored in paise (INR).
    """

    __tablename__ = "subscriptions"

    # Primary key
    uuid: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))

    # Parties
    trader_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.uuid"), nullable=False)
    analyst_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.uuid"), nullable=False)
    tier_id: Mapped[str] = mapped_column(String(36), ForeignKey("subscription_tiers.uuid"), nullable=False)

    # Lifecycle
    status: Mapped[str] = mapped_column(String(50), default="pending_payment", nullable=False)
    billing_cycle: Mapped[str] = mapped_column(String(20), nullable=False)

    # Pricing (price_paid is the tier list price at purchase time)
    price_paid: Mapped[int] = mapped_column(Integer, nullable=False)
    discount_applied: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    final_price: Mapped[int] = mapped_column(Integer, nullable=False)
    discount_code_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("discount_codes.uuid"), nullable=True)

    # Billing dates (expires_at is always start_date + cycles_billed cycles)
    start_date: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    next_billing_date: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    cycles_billed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    auto_renewal: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Retry / grace
    payment_retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_payment_attempt: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    grace_period_ends_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    suspended_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Razorpay info
    razorpay_subscription_id: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)
    razorpay_customer_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    razorpay_plan_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Tombstone
    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Indexes
    __table_args__ = (
        CheckConstraint("final_price >= 0", name="ck_subscription_final_price_non_negative"),
        CheckConstraint(
            "payment_retry_count >= 0 AND payment_retry_count <= 3",
            name="ck_subscription_retry_count_range",
        ),
        Index("idx_subscription_trader_id", "trader_id"),
        Index("idx_subscription_analyst_id", "analyst_id"),
        Index("idx_subscription_tier_id", "tier_id"),
        Index("idx_subscription_status", "status"),
        Index("idx_subscription_expires_at", "expires_at"),
        Index("idx_subscription_trader_analyst", "trader_id", "analyst_id"),
    )

    @classmethod
    def live(cls):
        """SELECT over subscriptions that have not been tombstoned."""
        return select(cls).where(cls.is_deleted.is_(False))

    def __repr__(self) -> str:
        return f"<Subscription(uuid={self.uuid}, trader_id={self.trader_id}, status={self.status})>"
