"""HMAC signature checks for Razorpay callbacks."""
import hashlib
import hmac
import logging
from typing import Optional
from app.config import settings

logger = logging.getLogger(__name__)


def _hmac_sha256_hex(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def verify_webhook_signature(body: bytes, signature: Optional[str], secret: Optional[str] = None) -> bool:
    """
    Verify the X-Razorpay-Signature header against the raw request body.

    Returns False on a missing signature, missing secret or mismatch;
    never raises.
    """
    secret = settings.RAZORPAY_WEBHOOK_SECRET if secret is None else secret
    if not signature or not secret:
        return False
    expected = _hmac_sha256_hex(secret, body)
    return hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8"))


def verify_payment_signature(
    order_id: str,
    payment_id: str,
    signature: Optional[str],
    secret: Optional[str] = None,
) -> bool:
    """
    Verify the checkout confirmation posted by the browser after payment.

    Razorpay signs "<order_id>|<payment_id>" with the API key secret.
    """
    secret = settings.RAZORPAY_KEY_SECRET if secret is None else secret
    if not signature or not secret or not order_id or not payment_id:
        return False
    expected = _hmac_sha256_hex(secret, f"{order_id}|{payment_id}".encode("utf-8"))
    return hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8"))
