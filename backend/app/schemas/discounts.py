"""Schemas for discount code and tier endpoints."""
from typing import Optional
from datetime import datetime
from pydantic import BaseModel, Field


class DiscountCodeCreate(BaseModel):
    code: str = Field(..., min_length=3, max_length=50)
    code_name: Optional[str] = Field(None, max_length=100)
    description: Optional[str] = None
    discount_type: str = Field("percentage", description='"percentage" or "fixed_amount"')
    discount_value: int = Field(..., description="Percent (1-100) or paise")
    max_discount_amount: Optional[int] = Field(None, gt=0)
    applicable_tiers: list[str] = Field(default_factory=list)
    billing_cycle_restriction: str = "both"
    first_time_only: bool = False
    usage_limit: Optional[int] = Field(None, gt=0)
    per_user_limit: int = Field(1, ge=1)
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None


class DiscountCodeResponse(BaseModel):
    uuid: str
    analyst_id: str
    code: str
    code_name: Optional[str] = None
    description: Optional[str] = None
    discount_type: str
    discount_value: int
    max_discount_amount: Optional[int] = None
    applicable_tiers: list[str]
    billing_cycle_restriction: str
    first_time_only: bool
    usage_limit: Optional[int] = None
    usage_count: int
    per_user_limit: int
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    is_active: bool
    created_at: datetime

    class Config:
        from_attributes = True


class DiscountValidateRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=50)
    tier_id: str


class DiscountValidateResponse(BaseModel):
    """Preview of the price a subscriber would pay with a code."""
    is_valid: bool
    reason: str
    original_price: int
    discount_amount: int
    final_price: int


class TierCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = None
    price: int = Field(..., ge=0, description="Price per cycle in paise")
    billing_cycle: str = Field("monthly", pattern="^(monthly|yearly)$")
    features: dict = Field(default_factory=dict)
    max_subscribers: Optional[int] = Field(None, gt=0)


class TierResponse(BaseModel):
    uuid: str
    analyst_id: str
    name: str
    description: Optional[str] = None
    price: int
    billing_cycle: str
    features: dict
    max_subscribers: Optional[int] = None
    is_active: bool
    created_at: datetime

    class Config:
        from_attributes = True
