"""Interfaces of the external collaborators checkout talks to.

The HTTP clients in ``checkout_engine.infrastructure`` and the in-memory
implementations both satisfy these protocols.
"""

from typing import Any, Protocol

from checkout_engine.domain.value_objects import CartLine, Money, ShippingSettings, TaxSettings
from checkout_engine.infrastructure.payment_gateway import GatewayConfirmation, PaymentIntent
from checkout_engine.infrastructure.service_clients import CouponValidation


class Cart(Protocol):
    """The buyer's cart, read-only apart from clearing it after an order."""

    async def get_lines(self) -> list[CartLine]: ...

    async def clear(self) -> None: ...


class SettingsSource(Protocol):
    async def get_tax_settings(self) -> TaxSettings: ...

    async def get_shipping_settings(self) -> ShippingSettings: ...


class CouponValidator(Protocol):
    async def validate(self, code: str, cart_total: Money) -> CouponValidation: ...


class PaymentGateway(Protocol):
    async def create_payment_intent(self, amount: int, currency: str) -> PaymentIntent: ...

    async def confirm_payment_intent(
        self,
        client_secret: str,
        payment_method: str,
        billing_details: dict[str, Any] | None = None,
    ) -> GatewayConfirmation: ...


class OrderGateway(Protocol):
    async def create_order(self, payload: dict[str, Any], idempotency_key: str) -> str: ...
