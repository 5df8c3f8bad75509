"""User model for the analyst marketplace."""
from datetime import datetime
from uuid import uuid4
from sqlalchemy import String, DateTime, Index
from sqlalchemy.orm import Mapped, mapped_column
from app.database import Base


class User(Base):
    """Platform user; traders subscribe, analysts publish tiers and receive payouts."""

    __tablename__ = "users"

    # Primary key
    uuid: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))

    # User info
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    phone_number: Mapped[str | None] = mapped_column(String(20), nullable=True)

    # Account info
    status: Mapped[str] = mapped_column(String(50), default="active")
    user_type: Mapped[str] = mapped_column(String(50), default="trader")

    # Razorpay integration
    razorpay_customer_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    # Linked (Route) account that receives analyst payouts
    razorpay_account_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Indexes
    __table_args__ = (
        Index("idx_user_status", "status"),
        Index("idx_user_type", "user_type"),
    )

    def __repr__(self) -> str:
        return f"<User(uuid={self.uuid}, email={self.email}, user_type={self.user_type})>"
