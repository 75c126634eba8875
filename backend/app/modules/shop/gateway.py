"""
Payment Gateway Adapter.

Narrow capability interface around the external payment provider:
- create a remote payment intent
- retrieve the remote status of an intent

Any provider implementing ``PaymentGateway`` can be passed to the
orchestrator. ``StripeGateway`` is the card-processing implementation.
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, Protocol

import stripe
from loguru import logger

from app.core.config import settings
from app.core.errors import GatewayUnavailable, InvalidAmount

# Currencies Stripe charges without a fractional unit
ZERO_DECIMAL_CURRENCIES = frozenset(
    {
        "bif", "clp", "djf", "gnf", "jpy", "kmf", "krw", "mga",
        "pyg", "rwf", "ugx", "vnd", "vuv", "xaf", "xof", "xpf",
    }
)


class RemoteStatus(str, Enum):
    """Provider-side intent status, normalized across providers."""

    REQUIRES_ACTION = "REQUIRES_ACTION"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    CANCELED = "CANCELED"


@dataclass
class RemoteIntent:
    """Result of creating a remote payment intent."""

    provider_id: str
    client_secret: str


@dataclass
class RemoteIntentStatus:
    """Result of retrieving a remote payment intent."""

    provider_id: str
    status: RemoteStatus
    transaction_id: str | None = None
    failure_message: str | None = None


class PaymentGateway(Protocol):
    """Interface for payment providers."""

    async def create_remote_intent(
        self,
        amount: Decimal,
        currency: str,
        metadata: dict[str, str] | None = None,
        idempotency_key: str | None = None,
    ) -> RemoteIntent:
        """
        Create a provider intent for ``amount`` in ``currency``.

        Calls repeated with the same ``idempotency_key`` must yield the
        same remote intent.
        """
        ...

    async def retrieve_remote_status(self, provider_id: str) -> RemoteIntentStatus:
        """Fetch the provider's current status for an intent."""
        ...


def to_minor_units(amount: Decimal, currency: str) -> int:
    """
    Convert a decimal amount into the provider's integer minor units.

    Raises:
        InvalidAmount: Amount is not positive
    """
    amount = Decimal(amount)
    if amount <= 0:
        raise InvalidAmount(f"Amount must be positive, got {amount}")

    if currency.lower() in ZERO_DECIMAL_CURRENCIES:
        minor = amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    else:
        minor = (amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return int(minor)


class StripeGateway:
    """
    Stripe payment intents.

    Usage:
        gateway = StripeGateway()
        intent = await gateway.create_remote_intent(Decimal("10.00"), "usd")
    """

    def __init__(self, api_key: str | None = None) -> None:
        """Initialize Stripe with API key."""
        stripe.api_key = api_key or settings.stripe_secret_key

    async def create_remote_intent(
        self,
        amount: Decimal,
        currency: str,
        metadata: dict[str, str] | None = None,
        idempotency_key: str | None = None,
    ) -> RemoteIntent:
        """
        Create Stripe payment intent.

        Args:
            amount: Amount in major units (dollars)
            currency: Currency code
            metadata: Additional data to attach
            idempotency_key: Key deduplicating retried requests at Stripe

        Returns:
            Provider intent id and client secret

        Raises:
            GatewayUnavailable: Transient Stripe or network failure
            InvalidAmount: Stripe rejected the request
        """
        amount_minor = to_minor_units(amount, currency)

        params: dict[str, Any] = {
            "amount": amount_minor,
            "currency": currency.lower(),
            "metadata": metadata or {},
            "automatic_payment_methods": {"enabled": True},
        }
        if idempotency_key:
            params["idempotency_key"] = idempotency_key

        try:
            intent = await stripe.PaymentIntent.create_async(**params)
        except stripe.StripeError as e:
            raise self._translate(e, "creating payment intent") from e

        logger.info(f"Created Stripe payment intent {intent.id} for {amount_minor} {currency}")
        return RemoteIntent(provider_id=intent.id, client_secret=intent.client_secret)

    async def retrieve_remote_status(self, provider_id: str) -> RemoteIntentStatus:
        """Get payment intent status."""
        try:
            intent = await stripe.PaymentIntent.retrieve_async(provider_id)
        except stripe.StripeError as e:
            raise self._translate(e, f"retrieving payment intent {provider_id}") from e

        return RemoteIntentStatus(
            provider_id=intent.id,
            status=self._map_status(intent),
            transaction_id=self._charge_id(intent.get("latest_charge")),
            failure_message=self._failure_message(intent.get("last_payment_error")),
        )

    @staticmethod
    def _map_status(intent: Any) -> RemoteStatus:
        """
        Collapse Stripe's intent lifecycle into the four remote states.

        Stripe has no terminal "failed" status: a declined attempt returns
        the intent to ``requires_payment_method`` with ``last_payment_error``
        populated, and the customer may still pay it with another card.
        Only ``canceled`` ends an intent without payment.
        """
        status = intent.status
        if status == "succeeded":
            return RemoteStatus.SUCCEEDED
        if status == "canceled":
            return RemoteStatus.CANCELED
        return RemoteStatus.REQUIRES_ACTION

    @staticmethod
    def _charge_id(charge: Any) -> str | None:
        if charge is None or isinstance(charge, str):
            return charge
        return charge.get("id")

    @staticmethod
    def _failure_message(error: Any) -> str | None:
        if not error:
            return None
        return error.get("message") or error.get("code")

    @staticmethod
    def _translate(error: stripe.StripeError, action: str) -> Exception:
        """Map a Stripe exception onto the gateway error taxonomy."""
        if isinstance(error, (stripe.APIConnectionError, stripe.RateLimitError)):
            logger.warning(f"Stripe unavailable while {action}: {error}")
            return GatewayUnavailable(f"Payment provider unavailable: {error.user_message or error}")

        status = getattr(error, "http_status", None)
        if isinstance(error, stripe.APIError) or (status is not None and status >= 500):
            logger.warning(f"Stripe server error while {action}: {error}")
            return GatewayUnavailable(f"Payment provider error: {error.user_message or error}")

        logger.error(f"Stripe error {action}: {error}")
        return InvalidAmount(error.user_message or str(error))
