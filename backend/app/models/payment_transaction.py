"""Payment ledger model."""
from datetime import datetime
from uuid import uuid4
from sqlalchemy import String, Integer, DateTime, ForeignKey, Index, Text, JSON
from sqlalchemy.orm import Mapped, mapped_column
from app.database import Base


class PaymentTransaction(Base):
    """One money-movement event: charge, failure, refund or payout.

    `gateway_payment_id` is unique and is the idempotency key for
    webhook delivery. Payout rows store the transfer id there and carry
    their batch key in `payout_reference`.
    Amounts are stored in paise (INR).
    """

    __tablename__ = "payment_transactions"

    uuid: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))

    subscription_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("subscriptions.uuid"), nullable=True)
    trader_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("users.uuid"), nullable=True)
    analyst_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.uuid"), nullable=False)

    # Gateway references
    gateway_payment_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    gateway_order_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    payout_reference: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)

    transaction_type: Mapped[str] = mapped_column(String(50), nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="INR", nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="pending", nullable=False)
    payment_method: Mapped[str | None] = mapped_column(String(50), nullable=True)

    # Failure info
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    failure_code: Mapped[str | None] = mapped_column(String(100), nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Refund annotation (the only in-place update)
    refund_amount: Mapped[int | None] = mapped_column(Integer, nullable=True)
    refund_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    gateway_refund_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Payout split
    payout_amount: Mapped[int | None] = mapped_column(Integer, nullable=True)
    platform_commission: Mapped[int | None] = mapped_column(Integer, nullable=True)
    payout_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    paid_out_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # "metadata" is reserved on declarative classes
    details: Mapped[dict] = mapped_column("metadata", JSON, default=dict)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("idx_payment_subscription_id", "subscription_id"),
        Index("idx_payment_trader_id", "trader_id"),
        Index("idx_payment_analyst_id", "analyst_id"),
        Index("idx_payment_status", "status"),
        Index("idx_payment_type_created", "transaction_type", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<PaymentTransaction(uuid={self.uuid}, gateway_payment_id={self.gateway_payment_id}, "
            f"type={self.transaction_type}, status={self.status})>"
        )
