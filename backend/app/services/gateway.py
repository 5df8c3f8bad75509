"""Payment gateway client.

Billing services talk to the gateway only through `PaymentGateway`, so
tests can inject a fake. `RazorpayGateway` calls the Razorpay REST API
with httpx and a bounded timeout; timeouts surface as
`GatewayTimeoutError` because the outcome of the call is unknown.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import httpx

from app.config import settings
from app.services.exceptions import GatewayError, GatewayTimeoutError

logger = logging.getLogger(__name__)


@dataclass
class GatewayPlan:
    id: str


@dataclass
class GatewayCustomer:
    id: str


@dataclass
class GatewaySubscription:
    id: str
    status: str
    short_url: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class GatewayRefund:
    id: str
    amount: int
    status: str


@dataclass
class GatewayTransfer:
    id: str
    amount: int
    status: str


class PaymentGateway(ABC):
    """Operations the billing engine needs from a recurring-payments provider."""

    @abstractmethod
    async def create_plan(self, name: str, amount: int, currency: str, billing_cycle: str,
                          description: Optional[str] = None) -> GatewayPlan:
        ...

    @abstractmethod
    async def create_customer(self, name: str, email: str, phone: Optional[str] = None) -> GatewayCustomer:
        ...

    @abstractmethod
    async def create_subscription(self, plan_id: str, customer_id: str, total_count: int,
                                  notes: Optional[Dict[str, str]] = None) -> GatewaySubscription:
        ...

    @abstractmethod
    async def cancel_subscription(self, subscription_id: str, at_cycle_end: bool) -> GatewaySubscription:
        ...

    @abstractmethod
    async def pause_subscription(self, subscription_id: str) -> GatewaySubscription:
        ...

    @abstractmethod
    async def resume_subscription(self, subscription_id: str) -> GatewaySubscription:
        ...

    @abstractmethod
    async def retry_payment(self, subscription_id: str) -> GatewaySubscription:
        """Nudge the gateway to re-attempt the pending charge of a subscription."""

    @abstractmethod
    async def refund_payment(self, payment_id: str, amount: int,
                             notes: Optional[Dict[str, str]] = None) -> GatewayRefund:
        ...

    @abstractmethod
    async def create_transfer(self, account_id: str, amount: int, currency: str,
                              reference: str) -> GatewayTransfer:
        ...


class RazorpayGateway(PaymentGateway):
    """Razorpay REST client (amounts in paise)."""

    def __init__(
        self,
        key_id: Optional[str] = None,
        key_secret: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self.key_id = key_id if key_id is not None else settings.RAZORPAY_KEY_ID
        self.key_secret = key_secret if key_secret is not None else settings.RAZORPAY_KEY_SECRET
        self.base_url = (base_url or settings.RAZORPAY_API_URL).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.GATEWAY_TIMEOUT_SECONDS

    async def _request(self, method: str, path: str, json: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            async with httpx.AsyncClient(auth=(self.key_id, self.key_secret), timeout=self.timeout) as client:
                response = await client.request(method, url, json=json)
        except httpx.TimeoutException as e:
            logger.warning(f"Razorpay {method} {path} timed out after {self.timeout}s")
            raise GatewayTimeoutError(f"Payment gateway timed out: {method} {path}") from e
        except httpx.HTTPError as e:
            logger.error(f"Razorpay {method} {path} transport error: {e}")
            raise GatewayError(f"Payment gateway unreachable: {e}") from e

        if response.status_code >= 400:
            try:
                description = response.json().get("error", {}).get("description", response.text)
            except ValueError:
                description = response.text
            logger.error(f"Razorpay {method} {path} failed ({response.status_code}): {description}")
            raise GatewayError(f"Razorpay error: {description}")

        return response.json()

    @staticmethod
    def _subscription(data: Dict[str, Any]) -> GatewaySubscription:
        return GatewaySubscription(
            id=data["id"],
            status=data.get("status", ""),
            short_url=data.get("short_url"),
            raw=data,
        )

    async def create_plan(self, name, amount, currency, billing_cycle, description=None):
        data = await self._request("POST", "/plans", json={
            "period": billing_cycle,
            "interval": 1,
            "item": {
                "name": name,
                "amount": amount,
                "currency": currency,
                "description": description or f"{billing_cycle.capitalize()} subscription",
            },
        })
        logger.info(f"Created Razorpay plan {data['id']} for {name}")
        return GatewayPlan(id=data["id"])

    async def create_customer(self, name, email, phone=None):
        payload = {"name": name, "email": email, "fail_existing": 0}
        if phone:
            payload["contact"] = phone
        data = await self._request("POST", "/customers", json=payload)
        return GatewayCustomer(id=data["id"])

    async def create_subscription(self, plan_id, customer_id, total_count, notes=None):
        data = await self._request("POST", "/subscriptions", json={
            "plan_id": plan_id,
            "customer_id": customer_id,
            "total_count": total_count,
            "customer_notify": 1,
            "notes": notes or {},
        })
        return self._subscription(data)

    async def cancel_subscription(self, subscription_id, at_cycle_end):
        data = await self._request(
            "POST",
            f"/subscriptions/{subscription_id}/cancel",
            json={"cancel_at_cycle_end": 1 if at_cycle_end else 0},
        )
        return self._subscription(data)

    async def pause_subscription(self, subscription_id):
        data = await self._request("POST", f"/subscriptions/{subscription_id}/pause", json={"pause_at": "now"})
        return self._subscription(data)

    async def resume_subscription(self, subscription_id):
        data = await self._request("POST", f"/subscriptions/{subscription_id}/resume", json={"resume_at": "now"})
        return self._subscription(data)

    async def retry_payment(self, subscription_id):
        # Razorpay re-attempts pending charges on its own schedule; fetching
        # the subscription confirms it is still retryable on their side.
        data = await self._request("GET", f"/subscriptions/{subscription_id}")
        return self._subscription(data)

    async def refund_payment(self, payment_id, amount, notes=None):
        data = await self._request("POST", f"/payments/{payment_id}/refund", json={
            "amount": amount,
            "notes": notes or {},
        })
        return GatewayRefund(id=data["id"], amount=data.get("amount", amount), status=data.get("status", "processed"))

    async def create_transfer(self, account_id, amount, currency, reference):
        data = await self._request("POST", "/transfers", json={
            "account": account_id,
            "amount": amount,
            "currency": currency,
            "notes": {"reference": reference},
        })
        return GatewayTransfer(id=data["id"], amount=data.get("amount", amount), status=data.get("status", "processed"))


def get_gateway() -> PaymentGateway:
    """FastAPI dependency returning the configured gateway client."""
    return RazorpayGateway()
