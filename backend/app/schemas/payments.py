"""Schemas for ledger, refund and payout endpoints."""
from typing import Optional
from datetime import datetime
from pydantic import BaseModel, Field
from app.schemas.subscriptions import SubscriptionResponse


class PaymentTransactionResponse(BaseModel):
    """One ledger row. Amounts are in paise."""
    uuid: str
    subscription_id: Optional[str] = None
    trader_id: Optional[str] = None
    analyst_id: str
    gateway_payment_id: str
    transaction_type: str
    amount: int
    currency: str
    status: str
    payment_method: Optional[str] = None
    failure_reason: Optional[str] = None
    failure_code: Optional[str] = None
    retry_count: int
    refund_amount: Optional[int] = None
    refund_reason: Optional[str] = None
    refunded_at: Optional[datetime] = None
    payout_amount: Optional[int] = None
    platform_commission: Optional[int] = None
    created_at: datetime

    class Config:
        from_attributes = True


class PaymentTransactionListResponse(BaseModel):
    items: list[PaymentTransactionResponse]
    total: int
    skip: int
    limit: int


class SubscriptionDetailResponse(BaseModel):
    """Subscription together with its payment history."""
    subscription: SubscriptionResponse
    payments: list[PaymentTransactionResponse]


class RefundRequest(BaseModel):
    payment_id: str = Field(..., description="Razorpay payment id")
    amount: Optional[int] = Field(None, gt=0, description="Paise; omit for a full refund")
    reason: str = Field("Customer request", max_length=500)


class RefundResponse(BaseModel):
    transaction: PaymentTransactionResponse
    subscription_cancelled: bool


class PayoutPreviewResponse(BaseModel):
    analyst_id: str
    period_start: datetime
    period_end: datetime
    total_revenue: int
    platform_commission: int
    analyst_payout: int
    transaction_count: int
    commission_rate: float


class PayoutTransferRequest(BaseModel):
    analyst_id: str
    period_start: datetime
    period_end: datetime


class PayoutTransferResponse(BaseModel):
    created: bool
    transaction: Optional[PaymentTransactionResponse] = None

