"""Discount code model."""
from datetime import datetime
from uuid import uuid4
from sqlalchemy import String, Integer, Boolean, DateTime, ForeignKey, Index, Text, JSON
from sqlalchemy.orm import Mapped, mapped_column
from app.database import Base


class DiscountCode(Base):
    """Analyst-scoped promotional code.

    percentage codes hold 1-100 in `discount_value`; fixed_amount codes
    hold paise. `applicable_tiers` empty means every tier of the analyst.
    """

    __tablename__ = "discount_codes"

    uuid: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    analyst_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.uuid"), nullable=False)

    code: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    code_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    discount_type: Mapped[str] = mapped_column(String(20), nullable=False)
    discount_value: Mapped[int] = mapped_column(Integer, nullable=False)
    max_discount_amount: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # Restrictions
    applicable_tiers: Mapped[list] = mapped_column(JSON, default=list)
    billing_cycle_restriction: Mapped[str] = mapped_column(String(20), default="both", nullable=False)
    first_time_only: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    usage_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)
    usage_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    per_user_limit: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    valid_from: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    valid_until: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Tombstone
    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("idx_discount_analyst_id", "analyst_id"),
    )

    def __repr__(self) -> str:
        return f"<DiscountCode(uuid={self.uuid}, code={self.code}, type={self.discount_type})>"
