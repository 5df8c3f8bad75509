"""Database models for the analyst marketplace billing service."""
from app.models.user import User
from app.models.subscription_tier import SubscriptionTier
from app.models.discount_code import DiscountCode
from app.models.subscription import Subscription
from app.models.payment_transaction import PaymentTransaction
from app.models.webhook_event import WebhookEvent

__all__ = [
    "User",
    "SubscriptionTier",
    "DiscountCode",
    "Subscription",
    "PaymentTransaction",
    "WebhookEvent",
]
