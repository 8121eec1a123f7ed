"""
Payment providers.

A provider opens a payment with its gateway and interprets whatever the
gateway later says about it (a client-forwarded response, a webhook payload,
or a status fetched from the gateway API) into a GatewayResult.

Providers never touch the database; reconciliation is PaymentReconciler's job.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import TYPE_CHECKING, Any

import httpx

from shared.config.constants import PaymentGateway, PaymentStatus
from shared.config.logging import get_logger
from shared.config.settings import settings
from shared.utils.exceptions import GatewayError, ValidationError
from .circuit_breaker import CircuitBreaker, CircuitBreakerError, cashfree_breaker

if TYPE_CHECKING:
    from rest_api.models import Bill, Payment

logger = get_logger(__name__)


@dataclass(frozen=True)
class GatewayResult:
    """A gateway's verdict on a payment, in our own vocabulary."""

    status: str
    amount_cents: int | None
    gateway_payment_id: str | None
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class GatewayPayment:
    """What the gateway hands back when a payment is opened."""

    gateway_payment_id: str
    payment_link: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)


def to_minor_units(amount: Any, gateway: str) -> int:
    """Convert a gateway major-unit amount (e.g. 123.45 rupees) to paise."""
    if isinstance(amount, bool):
        raise GatewayError(gateway, f"invalid amount {amount!r}")
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError):
        raise GatewayError(gateway, f"invalid amount {amount!r}")
    if not value.is_finite() or value < 0:
        raise GatewayError(gateway, f"invalid amount {amount!r}")
    return int((value * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def to_major_units(amount_cents: int) -> float:
    return float(Decimal(amount_cents) / 100)


class PaymentProvider(ABC):
    name: str

    @abstractmethod
    def create_payment(self, payment: Payment, bill: Bill) -> GatewayPayment:
        """Open the payment with the gateway."""

    @abstractmethod
    def interpret(self, payment: Payment, gateway_response: dict[str, Any] | None) -> GatewayResult:
        """
        Interpret a gateway response for this payment.

        Raises GatewayError if the response cannot be understood. A payment
        that is still pending is a normal result, not an error.
        """


class CashProvider(PaymentProvider):
    """Cash at the counter: settled the moment it is recorded."""

    name = PaymentGateway.CASH

    def create_payment(self, payment: Payment, bill: Bill) -> GatewayPayment:
        return GatewayPayment(gateway_payment_id=f"cash_{payment.id}")

    def interpret(self, payment: Payment, gateway_response: dict[str, Any] | None) -> GatewayResult:
        return GatewayResult(
            status=PaymentStatus.SUCCEEDED,
            amount_cents=payment.amount_cents,
            gateway_payment_id=payment.gateway_payment_id,
            raw=gateway_response or {},
        )


class MockProvider(PaymentProvider):
    """
    Development gateway.

    Responses look like {"status": "SUCCESS", "amount": <cents>}. Verifying
    without a response approves the payment for its recorded amount.
    """

    name = PaymentGateway.MOCK

    STATUS_MAP = {
        "SUCCESS": PaymentStatus.SUCCEEDED,
        "SUCCEEDED": PaymentStatus.SUCCEEDED,
        "PENDING": PaymentStatus.PENDING,
        "PROCESSING": PaymentStatus.PROCESSING,
        "FAILED": PaymentStatus.FAILED,
    }

    def create_payment(self, payment: Payment, bill: Bill) -> GatewayPayment:
        return GatewayPayment(
            gateway_payment_id=f"mock_{payment.id}",
            payment_link=f"{settings.base_url}/mock-pay/{payment.id}",
        )

    def interpret(self, payment: Payment, gateway_response: dict[str, Any] | None) -> GatewayResult:
        if gateway_response is None:
            return GatewayResult(
                status=PaymentStatus.SUCCEEDED,
                amount_cents=payment.amount_cents,
                gateway_payment_id=payment.gateway_payment_id,
            )

        raw_status = gateway_response.get("status")
        status = self.STATUS_MAP.get(str(raw_status).upper()) if raw_status else None
        if status is None:
            raise GatewayError(self.name, f"unknown status {raw_status!r}", payment_id=payment.id)

        amount = gateway_response.get("amount", payment.amount_cents)
        if isinstance(amount, bool) or not isinstance(amount, int):
            raise GatewayError(self.name, f"invalid amount {amount!r}", payment_id=payment.id)

        return GatewayResult(
            status=status,
            amount_cents=amount,
            gateway_payment_id=gateway_response.get("paymentId", payment.gateway_payment_id),
            raw=gateway_response,
        )


class CashfreeProvider(PaymentProvider):
    """
    Cashfree PG (UPI, cards, net banking, wallets).

    The gateway order id we generate ("order_<payment id>") is stored as
    Payment.gateway_payment_id and is what webhooks are matched on.
    """

    name = PaymentGateway.CASHFREE

    ORDER_STATUS_MAP = {
        "PAID": PaymentStatus.SUCCEEDED,
        "ACTIVE": PaymentStatus.PENDING,
        "EXPIRED": PaymentStatus.FAILED,
        "TERMINATED": PaymentStatus.FAILED,
        "TERMINATION_REQUESTED": PaymentStatus.FAILED,
    }
    PAYMENT_STATUS_MAP = {
        "SUCCESS": PaymentStatus.SUCCEEDED,
        "PENDING": PaymentStatus.PENDING,
        "NOT_ATTEMPTED": PaymentStatus.PENDING,
        "FAILED": PaymentStatus.FAILED,
        "USER_DROPPED": PaymentStatus.FAILED,
        "CANCELLED": PaymentStatus.FAILED,
        "VOID": PaymentStatus.FAILED,
    }

    def __init__(
        self,
        app_id: str,
        secret_key: str,
        api_base: str = "https://api.cashfree.com/pg",
        api_version: str = "2025-01-01",
        timeout: float = 10.0,
        client: httpx.Client | None = None,
        breaker: CircuitBreaker = cashfree_breaker,
    ):
        self._app_id = app_id
        self._secret_key = secret_key
        self._api_base = api_base.rstrip("/")
        self._api_version = api_version
        self._client = client or httpx.Client(timeout=timeout)
        self._breaker = breaker

    @classmethod
    def from_settings(cls) -> "CashfreeProvider":
        return cls(
            app_id=settings.cashfree_app_id,
            secret_key=settings.cashfree_secret_key,
            api_base=settings.cashfree_api_base,
            api_version=settings.cashfree_api_version,
            timeout=settings.cashfree_timeout,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self._app_id and self._secret_key)

    def close(self) -> None:
        self._client.close()

    def _request(self, method: str, path: str, json: dict[str, Any] | None = None) -> dict[str, Any]:
        if not self.is_configured:
            raise GatewayError(self.name, "credentials not configured", is_unavailable=True)

        headers = {
            "x-api-version": self._api_version,
            "x-client-id": self._app_id,
            "x-client-secret": self._secret_key,
        }
        try:
            with self._breaker.call():
                response = self._client.request(
                    method, f"{self._api_base}{path}", headers=headers, json=json
                )
                if response.status_code >= 500:
                    response.raise_for_status()
        except CircuitBreakerError as e:
            raise GatewayError(
                self.name, str(e), is_unavailable=True, retry_after=int(e.retry_after) + 1
            )
        except httpx.HTTPError as e:
            raise GatewayError(self.name, f"request failed: {e}", is_unavailable=True, path=path)

        if response.status_code >= 400:
            raise GatewayError(
                self.name,
                f"rejected with HTTP {response.status_code}",
                path=path,
                status=response.status_code,
            )
        try:
            body = response.json()
        except ValueError:
            raise GatewayError(self.name, "response is not JSON", path=path)
        if not isinstance(body, dict):
            raise GatewayError(self.name, "response is not an object", path=path)
        return body

    def create_payment(self, payment: Payment, bill: Bill) -> GatewayPayment:
        order_id = f"order_{payment.id}"
        body = self._request(
            "POST",
            "/orders",
            json={
                "order_id": order_id,
                "order_amount": to_major_units(payment.amount_cents),
                "order_currency": settings.currency,
                "customer_details": {
                    "customer_id": f"bill_{bill.id}",
                    "customer_phone": "9999999999",
                },
                "order_meta": {
                    "return_url": f"{settings.base_url}/bills/{bill.id}?order_id={{order_id}}",
                },
                "order_tags": {
                    "billId": bill.id,
                    "restaurantId": bill.restaurant_id,
                },
            },
        )
        session_id = body.get("payment_session_id")
        payment_link = (
            f"https://payments.cashfree.com/merchant/pay?session_id={session_id}"
            if session_id
            else None
        )
        logger.info("Cashfree order created", payment_id=payment.id, gateway_order_id=order_id)
        return GatewayPayment(
            gateway_payment_id=body.get("order_id", order_id),
            payment_link=payment_link,
            raw=body,
        )

    def fetch_order(self, gateway_order_id: str) -> dict[str, Any]:
        return self._request("GET", f"/orders/{gateway_order_id}")

    def interpret(self, payment: Payment, gateway_response: dict[str, Any] | None) -> GatewayResult:
        if gateway_response is None:
            if not payment.gateway_payment_id:
                raise GatewayError(self.name, "payment has no gateway order id", payment_id=payment.id)
            gateway_response = self.fetch_order(payment.gateway_payment_id)

        data = gateway_response.get("data")
        if isinstance(data, dict) and isinstance(data.get("payment"), dict):
            # Webhook payload: {"type": ..., "data": {"order": {...}, "payment": {...}}}
            entity = data["payment"]
            order = data.get("order") if isinstance(data.get("order"), dict) else {}
            raw_status = entity.get("payment_status")
            status = self.PAYMENT_STATUS_MAP.get(raw_status)
            amount = entity.get("payment_amount")
            gateway_payment_id = order.get("order_id")
        elif "order_status" in gateway_response:
            raw_status = gateway_response.get("order_status")
            status = self.ORDER_STATUS_MAP.get(raw_status)
            amount = gateway_response.get("order_amount")
            gateway_payment_id = gateway_response.get("order_id")
        elif "payment_status" in gateway_response:
            raw_status = gateway_response.get("payment_status")
            status = self.PAYMENT_STATUS_MAP.get(raw_status)
            amount = gateway_response.get("payment_amount")
            gateway_payment_id = gateway_response.get("order_id")
        else:
            raise GatewayError(self.name, "unrecognised response", payment_id=payment.id)

        if status is None:
            raise GatewayError(self.name, f"unknown status {raw_status!r}", payment_id=payment.id)

        return GatewayResult(
            status=status,
            amount_cents=to_minor_units(amount, self.name) if amount is not None else None,
            gateway_payment_id=gateway_payment_id,
            raw=gateway_response,
        )


class ProviderRegistry:
    """Providers by gateway name, built lazily."""

    def __init__(self, providers: dict[str, PaymentProvider] | None = None):
        self._providers: dict[str, PaymentProvider] = dict(providers or {})

    def register(self, provider: PaymentProvider) -> None:
        self._providers[provider.name] = provider

    def get(self, name: str) -> PaymentProvider:
        provider = self._providers.get(name)
        if provider is None:
            if name == PaymentGateway.CASHFREE:
                provider = CashfreeProvider.from_settings()
            elif name == PaymentGateway.MOCK:
                provider = MockProvider()
            elif name == PaymentGateway.CASH:
                provider = CashProvider()
            else:
                raise ValidationError(f"Unknown payment provider '{name}'", provider=name)
            self._providers[name] = provider
        return provider

    def close(self) -> None:
        for provider in self._providers.values():
            if isinstance(provider, CashfreeProvider):
                provider.close()


_default_registry: ProviderRegistry | None = None


def get_provider_registry() -> ProviderRegistry:
    """Process-wide registry; a FastAPI dependency so tests can override it."""
    global _default_registry
    if _default_registry is None:
        _default_registry = ProviderRegistry()
    return _default_registry
