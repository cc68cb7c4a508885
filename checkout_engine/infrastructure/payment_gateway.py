"""Payment gateway HTTP client.

Talks to a Stripe-style gateway: payment intents are created server-side
for an amount in minor units and then confirmed with the payment method
token collected by the gateway's hosted card fields.
"""

from dataclasses import dataclass
from typing import Any

import structlog

from checkout_engine.infrastructure.service_clients import (
    ServiceClient,
    ServiceClientError,
    error_message,
)

logger = structlog.get_logger()

_SUCCEEDED = "succeeded"
_DECLINE_STATUSES = {"requires_payment_method", "requires_action", "canceled", "declined"}


@dataclass
class PaymentIntent:
    """A payment intent created at the gateway."""

    id: str
    client_secret: str
    amount: int
    currency: str

    @classmethod
    def from_api_response(cls, data: dict[str, Any]) -> "PaymentIntent":
        """Create from API response data."""
        return cls(
            id=data["id"],
            client_secret=data["clientSecret"],
            amount=int(data.get("amount", 0)),
            currency=str(data.get("currency", "")).upper(),
        )


@dataclass
class GatewayConfirmation:
    """Result of confirming a payment intent.

    Attributes:
        intent_id: Confirmed intent.
        status: Gateway status ("succeeded", "declined", ...).
        amount: Amount in minor units.
        currency: ISO currency code.
        card_brand: Card brand reported by the gateway.
        last4: Last four card digits.
        exp_month: Expiry month.
        exp_year: Expiry year (four digits).
        decline_message: Gateway message when the card was declined.
    """

    intent_id: str
    status: str
    amount: int = 0
    currency: str = ""
    card_brand: str = "card"
    last4: str = ""
    exp_month: int | None = None
    exp_year: int | None = None
    decline_message: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == _SUCCEEDED

    @property
    def expiry_display(self) -> str:
        """Expiry as MM/YY, or a placeholder when unknown."""
        if not self.exp_month or not self.exp_year:
            return "**/**"
        return f"{self.exp_month:02d}/{self.exp_year % 100:02d}"

    @classmethod
    def from_api_response(cls, data: dict[str, Any], intent_id: str) -> "GatewayConfirmation":
        """Create from API response data."""
        card = data.get("card") or {}
        error = data.get("error") or {}
        return cls(
            intent_id=data.get("id", intent_id),
            status=data.get("status", "unknown"),
            amount=int(data.get("amount", 0)),
            currency=str(data.get("currency", "")).upper(),
            card_brand=card.get("brand", "card"),
            last4=str(card.get("last4", "")),
            exp_month=card.get("expMonth"),
            exp_year=card.get("expYear"),
            decline_message=error.get("message") if isinstance(error, dict) else str(error),
        )


def intent_id_from_secret(client_secret: str) -> str:
    """Recover the intent ID embedded in a ``<id>_secret_<token>`` secret."""
    intent_id, separator, _ = client_secret.partition("_secret_")
    if not separator or not intent_id:
        raise ValueError("Malformed payment client secret")
    return intent_id


class PaymentGatewayClient(ServiceClient):
    """HTTP client for the payment gateway."""

    service_name = "payment-gateway"

    def __init__(self, base_url: str, api_key: str, timeout: float = 120.0, **kwargs: Any) -> None:
        """Initialize client.

        Args:
            base_url: Gateway base URL.
            api_key: Secret key sent as bearer token.
            timeout: Request timeout in seconds.
        """
        super().__init__(
            base_url,
            timeout=timeout,
            headers={"Authorization": f"Bearer {api_key}"},
            **kwargs,
        )

    async def create_payment_intent(self, amount: int, currency: str) -> PaymentIntent:
        """Create a payment intent.

        Args:
            amount: Amount in minor units.
            currency: ISO currency code.

        Returns:
            Created intent with its client secret.

        Raises:
            ServiceClientError: On API error.
        """
        response = await self._request(
            "POST",
            "/payment-intents",
            json={"amount": amount, "currency": currency.lower()},
        )

        if response.status_code not in (200, 201):
            raise ServiceClientError(
                self.service_name,
                error_message(response, "Failed to create payment intent"),
                response.status_code,
            )

        intent = PaymentIntent.from_api_response(response.json())
        logger.info("Payment intent created", intent_id=intent.id, amount=amount, currency=currency)
        return intent

    async def confirm_payment_intent(
        self,
        client_secret: str,
        payment_method: str,
        billing_details: dict[str, Any] | None = None,
    ) -> GatewayConfirmation:
        """Confirm a payment intent with a payment method token.

        Card declines (HTTP 402, or a non-success status) come back as an
        unsuccessful confirmation rather than an exception.

        Args:
            client_secret: Secret returned by ``create_payment_intent``.
            payment_method: Gateway payment method token.
            billing_details: Cardholder name and address.

        Returns:
            Confirmation result.

        Raises:
            ServiceClientError: On transport failure or unexpected status.
            ValueError: If the client secret is malformed.
        """
        intent_id = intent_id_from_secret(client_secret)
        response = await self._request(
            "POST",
            f"/payment-intents/{intent_id}/confirm",
            json={
                "clientSecret": client_secret,
                "paymentMethod": payment_method,
                "billingDetails": billing_details or {},
            },
        )

        if response.status_code == 402:
            return GatewayConfirmation(
                intent_id=intent_id,
                status="declined",
                decline_message=error_message(response, "Your card was declined"),
            )

        if response.status_code != 200:
            raise ServiceClientError(
                self.service_name,
                error_message(response, "Failed to confirm payment"),
                response.status_code,
            )

        confirmation = GatewayConfirmation.from_api_response(response.json(), intent_id)
        if not confirmation.succeeded and confirmation.status not in _DECLINE_STATUSES:
            raise ServiceClientError(
                self.service_name,
                f"Unexpected payment status: {confirmation.status}",
                response.status_code,
            )
        return confirmation
