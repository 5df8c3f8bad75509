"""Pydantic schemas for subscription endpoints."""
from typing import Optional
from datetime import datetime
from pydantic import BaseModel, Field


class SubscriptionCreateRequest(BaseModel):
    """Schema for subscription checkout."""
    tier_id: str = Field(..., min_length=1)
    discount_code: Optional[str] = Field(None, max_length=50)


class CheckoutResponse(BaseModel):
    """Parameters the client needs to open the Razorpay checkout."""
    subscription_id: str
    gateway_subscription_id: str
    key_id: str
    amount: int = Field(..., description="Amount in paise")
    currency: str
    tier_name: str
    description: Optional[str] = None
    analyst_name: str
    billing_cycle: str
    customer_email: str
    customer_phone: Optional[str] = None


class SubscriptionResponse(BaseModel):
    """Schema for subscription detail response."""
    uuid: str
    trader_id: str
    analyst_id: str
    tier_id: str
    status: str
    billing_cycle: str
    price_paid: int
    discount_applied: int
    final_price: int
    start_date: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    next_billing_date: Optional[datetime] = None
    auto_renewal: bool
    payment_retry_count: int
    grace_period_ends_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    suspended_at: Optional[datetime] = None
    razorpay_subscription_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class SubscriptionListResponse(BaseModel):
    """Schema for paginated subscription list response."""
    items: list[SubscriptionResponse]
    total: int
    skip: int
    limit: int


class CancelRequest(BaseModel):
    immediate: bool = False


class UpgradeRequest(BaseModel):
    new_tier_id: str = Field(..., min_length=1)


class UpgradeResponse(BaseModel):
    old_subscription: SubscriptionResponse
    checkout: CheckoutResponse


class AutoRenewalRequest(BaseModel):
    enabled: bool


class SubscriptionActionResponse(BaseModel):
    """Result of a lifecycle action; outcome is "applied" or "pending_reconciliation"."""
    outcome: str
    message: str
    subscription: SubscriptionResponse


class PaymentVerifyRequest(BaseModel):
    """Browser redirect after checkout."""
    order_id: str = Field(..., min_length=1)
    payment_id: str = Field(..., min_length=1)
    signature: str = Field(..., min_length=1)


class PaymentVerifyResponse(BaseModel):
    verified: bool
    payment_id: str


class ActiveSubscriptionCheck(BaseModel):
    analyst_id: str
    has_active_subscription: bool
