"""Durable outbox for inbound gateway webhooks."""
from datetime import datetime
from uuid import uuid4
from sqlalchemy import String, Integer, DateTime, Index, Text, JSON
from sqlalchemy.orm import Mapped, mapped_column
from app.database import Base


class WebhookEvent(Base):
    """Every verified webhook is stored here before it is acknowledged.

    Rows move pending -> processed, or failed -> ... -> dead_letter once
    the replay sweep gives up.
    """

    __tablename__ = "webhook_events"

    uuid: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    # X-Razorpay-Event-Id; absent on some older deliveries
    event_id: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False)

    status: Mapped[str] = mapped_column(String(20), default="pending", nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    received_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    next_attempt_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        Index("idx_webhook_event_status_next", "status", "next_attempt_at"),
        Index("idx_webhook_event_type", "event_type"),
    )

    def __repr__(self) -> str:
        return f"<WebhookEvent(uuid={self.uuid}, event_type={self.event_type}, status={self.status})>"
