"""Enumerations shared by billing models, schemas and services."""
from enum import Enum


class SubscriptionStatus(str, Enum):
    """Lifecycle states surfaced to feed/chat access checks."""
    PENDING_PAYMENT = "pending_payment"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


TERMINAL_STATUSES = (SubscriptionStatus.CANCELLED.value, SubscriptionStatus.EXPIRED.value)


class BillingCycle(str, Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"


class TransactionType(str, Enum):
    SUBSCRIPTION_PAYMENT = "subscription_payment"
    RENEWAL = "renewal"
    REFUND = "refund"
    PAYOUT = "payout"


# Transaction types that count as subscriber revenue.
REVENUE_TYPES = (TransactionType.SUBSCRIPTION_PAYMENT.value, TransactionType.RENEWAL.value)


class TransactionStatus(str, Enum):
    PENDING = "pending"
    AUTHORIZED = "authorized"
    CAPTURED = "captured"
    FAILED = "failed"
    REFUNDED = "refunded"


class DiscountType(str, Enum):
    PERCENTAGE = "percentage"
    FIXED_AMOUNT = "fixed_amount"


class WebhookEventStatus(str, Enum):
    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"
    DEAD_LETTER = "dead_letter"


class UserType(str, Enum):
    TRADER = "trader"
    ANALYST = "analyst"
    ADMIN = "admin"
