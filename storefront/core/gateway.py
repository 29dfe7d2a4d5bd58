"""Payment gateway port and adapters.

- MockGateway: no network; issues local order handles but verifies
  signatures with the same HMAC scheme as the real provider.
- RazorpayGateway: creates orders over HTTPS with a bounded timeout.

get_gateway() / set_gateway() swap the active adapter (tests use set_gateway).
"""

import hashlib
import hmac
import logging
import secrets
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal

import httpx

from storefront.core.config import get_settings
from storefront.core.errors import GatewayError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GatewayOrder:
    """Gateway-side order handle. amount is in minor units (paise)."""

    id: str
    amount: int
    currency: str
    receipt: str


def to_minor_units(amount: float) -> int:
    return int(Decimal(str(amount)) * 100)


def sign_payment(secret: str, order_handle: str, payment_ref: str) -> str:
    """
    HMAC-SHA256 of "<order_handle>|<payment_ref>", hex encoded.
    """
    message = f"{order_handle}|{payment_ref}".encode()
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


class PaymentGateway(ABC):
    """Abstract payment gateway interface."""

    name: str

    def __init__(self, key_id: str, key_secret: str):
        self.key_id = key_id
        self._key_secret = key_secret

    @abstractmethod
    def create_gateway_order(self, amount: float, currency: str, receipt: str) -> GatewayOrder:
        """Create the gateway-side order the client pays against."""
        ...

    def verify_signature(self, order_handle: str, payment_ref: str, signature: str) -> bool:
        expected = sign_payment(self._key_secret, order_handle, payment_ref)
        return hmac.compare_digest(expected, signature or "")


class MockGateway(PaymentGateway):
    """Gateway for development and tests; records calls."""

    name = "mock"

    def __init__(self, key_id: str = "mock_key", key_secret: str = "mock_secret"):
        super().__init__(key_id, key_secret)
        self.calls: list[dict] = []
        self.fail_with: GatewayError | None = None

    def create_gateway_order(self, amount: float, currency: str, receipt: str) -> GatewayOrder:
        self.calls.append(
            {"method": "create_gateway_order", "amount": amount, "currency": currency, "receipt": receipt}
        )
        if self.fail_with is not None:
            raise self.fail_with
        return GatewayOrder(
            id=f"order_{secrets.token_hex(7)}",
            amount=to_minor_units(amount),
            currency=currency,
            receipt=receipt,
        )


class RazorpayGateway(PaymentGateway):
    """
    Razorpay Orders API adapter.

    Timeouts, transport errors, non-2xx responses and bodies without an
    order id all surface as GatewayError; the payment stays pending.
    """

    name = "razorpay"

    def __init__(
        self,
        key_id: str,
        key_secret: str,
        base_url: str,
        timeout: float,
        client: httpx.Client | None = None,
    ):
        super().__init__(key_id, key_secret)
        self._client = client or httpx.Client(
            base_url=base_url,
            auth=(key_id, key_secret),
            timeout=timeout,
        )

    def create_gateway_order(self, amount: float, currency: str, receipt: str) -> GatewayOrder:
        body = {"amount": to_minor_units(amount), "currency": currency, "receipt": receipt}
        try:
            response = self._client.post("/orders", json=body)
            response.raise_for_status()
            data = response.json()
        except httpx.TimeoutException as exc:
            logger.warning("Gateway timeout creating order for receipt %s", receipt)
            raise GatewayError("Payment gateway timed out, please retry") from exc
        except httpx.HTTPError as exc:
            logger.warning("Gateway error creating order for receipt %s: %s", receipt, exc)
            raise GatewayError("Payment gateway request failed, please retry") from exc
        except ValueError as exc:
            raise GatewayError("Malformed response from payment gateway") from exc

        if not isinstance(data, dict) or not data.get("id"):
            raise GatewayError("Malformed response from payment gateway")

        return GatewayOrder(
            id=str(data["id"]),
            amount=int(data.get("amount", body["amount"])),
            currency=str(data.get("currency", currency)),
            receipt=str(data.get("receipt", receipt)),
        )


_current_gateway: PaymentGateway | None = None


def get_gateway() -> PaymentGateway:
    """Return the configured payment gateway, built on first use."""
    global _current_gateway
    if _current_gateway is None:
        settings = get_settings()
        if settings.PAYMENT_GATEWAY == "razorpay":
            _current_gateway = RazorpayGateway(
                key_id=settings.RAZORPAY_KEY_ID,
                key_secret=settings.RAZORPAY_KEY_SECRET,
                base_url=settings.RAZORPAY_API_URL,
                timeout=settings.GATEWAY_TIMEOUT_SECONDS,
            )
        else:
            _current_gateway = MockGateway(
                key_id=settings.RAZORPAY_KEY_ID,
                key_secret=settings.RAZORPAY_KEY_SECRET,
            )
    return _current_gateway


def set_gateway(gateway: PaymentGateway) -> None:
    """Override the active payment gateway (useful for tests)."""
    global _current_gateway
    _current_gateway = gateway


def reset_gateway() -> None:
    global _current_gateway
    _current_gateway = None
