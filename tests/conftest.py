"""Shared fixtures for checkout tests."""

import asyncio
from decimal import ROUND_HALF_UP, Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from checkout_engine.application.checkout_service import CheckoutService
from checkout_engine.application.coupon_ledger import CouponLedger
from checkout_engine.application.order_submitter import OrderSubmitter
from checkout_engine.application.payment_adapter import BackoffPolicy, CircuitBreaker, PaymentAdapter
from checkout_engine.application.settings_provider import SettingsProvider
from checkout_engine.domain import (
    CartLine,
    Coupon,
    DiscountType,
    GuestInformation,
    Money,
    ShippingAddress,
    ShippingSettings,
    TaxSettings,
)
from checkout_engine.infrastructure.in_memory import InMemoryCart, InMemoryOrderStore
from checkout_engine.infrastructure.payment_gateway import (
    GatewayConfirmation,
    PaymentGatewayClient,
    PaymentIntent,
)
from checkout_engine.infrastructure.service_clients import CouponValidation


# ============================================================================
# Fakes
# ============================================================================


class FakeSettingsSource:
    """Settings service double counting its calls."""

    def __init__(
        self,
        tax: TaxSettings | None = None,
        shipping: ShippingSettings | None = None,
        delay: float = 0.0,
    ) -> None:
        self.tax = tax or TaxSettings.defaults()
        self.shipping = shipping or ShippingSettings.defaults()
        self.delay = delay
        self.error: Exception | None = None
        self.tax_calls = 0

    async def get_tax_settings(self) -> TaxSettings:
        self.tax_calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return self.tax

    async def get_shipping_settings(self) -> ShippingSettings:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return self.shipping


class FakeCouponService:
    """Coupon service double computing discounts like the real one."""

    def __init__(self, coupons: dict[str, tuple[DiscountType, str]] | None = None) -> None:
        self.coupons = coupons or {}
        self.calls: list[tuple[str, Money]] = []
        self.delay = 0.0

    async def validate(self, code: str, cart_total: Money) -> CouponValidation:
        self.calls.append((code, cart_total))
        if self.delay:
            await asyncio.sleep(self.delay)
        if code not in self.coupons:
            return CouponValidation(valid=False, reason="Coupon not found")
        discount_type, value = self.coupons[code]
        if discount_type == DiscountType.PERCENTAGE:
            amount = (cart_total.to_decimal() * Decimal(value) / 100).quantize(
                Decimal("0.01"), rounding=ROUND_HALF_UP
            )
        else:
            amount = Decimal(value)
        return CouponValidation(
            valid=True,
            coupon=Coupon(code=code, discount_type=discount_type, discount_value=Decimal(value)),
            discount_amount=Money.from_decimal(amount, cart_total.currency),
        )


# ============================================================================
# Domain Fixtures
# ============================================================================


@pytest.fixture
def cart_lines() -> list[CartLine]:
    """Cart worth 100.00 EUR including VAT."""
    return [
        CartLine("robot-kit", "Robot kit", Money.parse("60.00"), 1),
        CartLine("sensor-pack", "Sensor pack", Money.parse("20.00"), 2),
    ]


@pytest.fixture
def shipping_address() -> ShippingAddress:
    return ShippingAddress(
        full_name="Ana Pop",
        address_line1="Strada Memorandumului 28",
        city="Cluj-Napoca",
        region="Cluj",
        postal_code="400114",
        country="RO",
        phone="+40 700 000 000",
    )


@pytest.fixture
def guest_information() -> GuestInformation:
    return GuestInformation(email="ana@example.com")


# ============================================================================
# Collaborator Fixtures
# ============================================================================


@pytest.fixture
def settings_source() -> FakeSettingsSource:
    return FakeSettingsSource()


@pytest.fixture
def coupon_service() -> FakeCouponService:
    return FakeCouponService(
        {
            "SAVE10": (DiscountType.PERCENTAGE, "10"),
            "BIG150": (DiscountType.FIXED, "150.00"),
        }
    )


@pytest.fixture
def payment_gateway() -> MagicMock:
    """Gateway double that approves every card for the intent amount."""
    gateway = MagicMock(spec=PaymentGatewayClient)
    intents: dict[str, PaymentIntent] = {}

    async def create_payment_intent(amount: int, currency: str) -> PaymentIntent:
        intent_id = f"pi_{len(intents) + 1}"
        intent = PaymentIntent(
            id=intent_id,
            client_secret=f"{intent_id}_secret_test",
            amount=amount,
            currency=currency,
        )
        intents[intent.client_secret] = intent
        return intent

    async def confirm_payment_intent(client_secret, payment_method, billing_details=None):
        intent = intents[client_secret]
        return GatewayConfirmation(
            intent_id=intent.id,
            status="succeeded",
            amount=intent.amount,
            currency=intent.currency,
            card_brand="visa",
            last4="4242",
            exp_month=12,
            exp_year=2027,
        )

    gateway.create_payment_intent = AsyncMock(side_effect=create_payment_intent)
    gateway.confirm_payment_intent = AsyncMock(side_effect=confirm_payment_intent)
    return gateway


@pytest.fixture
def order_store() -> InMemoryOrderStore:
    return InMemoryOrderStore()


@pytest.fixture
def cart(cart_lines: list[CartLine]) -> InMemoryCart:
    return InMemoryCart(cart_lines)


@pytest.fixture
def checkout_service(
    settings_source: FakeSettingsSource,
    coupon_service: FakeCouponService,
    payment_gateway: MagicMock,
    order_store: InMemoryOrderStore,
) -> CheckoutService:
    """Checkout service wired to in-memory collaborators."""
    return CheckoutService(
        settings_provider=SettingsProvider(settings_source),
        coupon_ledger=CouponLedger(coupon_service),
        payment_adapter=PaymentAdapter(
            payment_gateway,
            backoff=BackoffPolicy(attempts=3),
            breaker=CircuitBreaker(failure_threshold=5),
            sleep=AsyncMock(),
        ),
        order_submitter=OrderSubmitter(order_store),
    )
