"""Email notification service using Resend API."""
import logging
import resend
from app.config import settings
from app.models.user import User
from app.models.subscription import Subscription

logger = logging.getLogger(__name__)

# Configure Resend API
resend.api_key = settings.RESEND_API_KEY


def format_inr(amount_paise: int) -> str:
    """Format an amount in paise as rupees, e.g. 89910 -> "₹899.10"."""
    return f"₹{amount_paise / 100:,.2f}"


def get_email_template(title: str, body: str, cta_text: str = None, cta_url: str = None) -> str:
    """Minimal HTML wrapper for lifecycle notifications."""
    cta = ""
    if cta_text and cta_url:
        cta = f'<p><a href="{cta_url}">{cta_text}</a></p>'
    return f"<html><body><h2>{title}</h2>{body}{cta}</body></html>"


class EmailService:
    """Service for sending subscription lifecycle emails via Resend."""

    @staticmethod
    def _send(to: str, subject: str, html: str) -> bool:
        if not settings.RESEND_API_KEY:
            logger.warning("RESEND_API_KEY not configured, skipping email")
            return False
        resend.Emails.send({
            "from": settings.EMAIL_FROM,
            "to": to,
            "subject": subject,
            "html": html,
        })
        return True

    @staticmethod
    def send_subscription_activated(user: User, subscription: Subscription, tier_name: str) -> bool:
        """
        Welcome email after the first successful charge.

        Returns:
            True if email sent successfully, False otherwise
        """
        try:
            body = (
                f"<p>Hi {user.name},</p>"
                f"<p>Your {tier_name} subscription is active until "
                f"{subscription.expires_at:%d %b %Y}. You paid {format_inr(subscription.final_price)}.</p>"
            )
            html = get_email_template(
                "Subscription activated",
                body,
                cta_text="Go to your feed",
                cta_url=f"{settings.FRONTEND_URL}/subscriptions/{subscription.uuid}",
            )
            sent = EmailService._send(user.email, f"Your {tier_name} subscription is active", html)
            if sent:
                logger.info(f"Activation email sent to {user.email} for subscription {subscription.uuid}")
            return sent
        except Exception as e:
            logger.error(f"Failed to send activation email: {e}")
            return False

    @staticmethod
    def send_payment_failed(user: User, subscription: Subscription) -> bool:
        """Tell the subscriber a charge failed and how long access continues."""
        try:
            grace = subscription.grace_period_ends_at
            deadline = f" before {grace:%d %b %Y}" if grace else ""
            body = (
                f"<p>Hi {user.name},</p>"
                f"<p>We could not charge {format_inr(subscription.final_price)} for your subscription "
                f"(attempt {subscription.payment_retry_count} of {settings.MAX_PAYMENT_RETRIES}). "
                f"Please update your payment method{deadline} to keep access.</p>"
            )
            html = get_email_template(
                "Payment failed",
                body,
                cta_text="Update payment method",
                cta_url=f"{settings.FRONTEND_URL}/subscriptions/{subscription.uuid}",
            )
            sent = EmailService._send(user.email, "Your subscription payment failed", html)
            if sent:
                logger.info(f"Payment failed email sent to {user.email} for subscription {subscription.uuid}")
            return sent
        except Exception as e:
            logger.error(f"Failed to send payment failed email: {e}")
            return False

    @staticmethod
    def send_subscription_suspended(user: User, subscription: Subscription) -> bool:
        try:
            body = (
                f"<p>Hi {user.name},</p>"
                "<p>Your subscription has been suspended after repeated payment failures. "
                "Retry the payment to restore access.</p>"
            )
            html = get_email_template(
                "Subscription suspended",
                body,
                cta_text="Retry payment",
                cta_url=f"{settings.FRONTEND_URL}/subscriptions/{subscription.uuid}",
            )
            sent = EmailService._send(user.email, "Your subscription has been suspended", html)
            if sent:
                logger.info(f"Suspension email sent to {user.email} for subscription {subscription.uuid}")
            return sent
        except Exception as e:
            logger.error(f"Failed to send suspension email: {e}")
            return False
