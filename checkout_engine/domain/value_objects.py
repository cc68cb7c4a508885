"""Value Objects for the domain layer.

Value objects are immutable objects that are defined by their attributes
rather than identity. They are interchangeable when their values are equal.
"""

import re
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import Self
from uuid import UUID, uuid4

from checkout_engine.domain.base import ValueObject
from checkout_engine.domain.exceptions import CurrencyMismatchError, NegativeMoneyError

DEFAULT_CURRENCY = "EUR"

_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_DIGITS_PATTERN = re.compile(r"\d")


# ============================================================================
# Typed Identifiers
# ============================================================================


@dataclass(frozen=True)
class CheckoutId(ValueObject):
    """Strongly-typed checkout session identifier."""

    value: UUID

    @classmethod
    def generate(cls) -> Self:
        """Generate a new checkout ID.

        Returns:
            New CheckoutId with random UUID.
        """
        return cls(value=uuid4())

    @classmethod
    def from_string(cls, value: str) -> Self:
        """Create CheckoutId from string representation.

        Args:
            value: String UUID representation.

        Returns:
            CheckoutId instance.
        """
        return cls(value=UUID(value))

    def __str__(self) -> str:
        return str(self.value)


# ============================================================================
# Money Value Object
# ============================================================================


@dataclass(frozen=True)
class Money(ValueObject):
    """Represents monetary value with currency.

    Money is stored in the smallest currency unit (cents) so that sums
    and differences are exact. Conversions from decimal amounts round
    half-up to two places.

    Attributes:
        amount_cents: Amount in smallest currency unit (e.g., cents).
        currency: ISO 4217 currency code (e.g., 'EUR', 'RON').
    """

    amount_cents: int
    currency: str = DEFAULT_CURRENCY

    def __post_init__(self) -> None:
        """Validate money constraints."""
        if self.amount_cents < 0:
            raise NegativeMoneyError(self.amount_cents)
        # Normalize currency to uppercase
        object.__setattr__(self, "currency", self.currency.upper())

    @classmethod
    def zero(cls, currency: str = DEFAULT_CURRENCY) -> Self:
        """Create zero amount money.

        Args:
            currency: Currency code.

        Returns:
            Money with zero amount.
        """
        return cls(amount_cents=0, currency=currency)

    @classmethod
    def from_decimal(cls, amount: Decimal, currency: str = DEFAULT_CURRENCY) -> Self:
        """Create money from decimal amount.

        Args:
            amount: Decimal amount in major units (e.g., euros).
            currency: Currency code.

        Returns:
            Money instance.
        """
        cents = int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
        return cls(amount_cents=cents, currency=currency)

    @classmethod
    def parse(cls, amount: str | int | float | Decimal, currency: str = DEFAULT_CURRENCY) -> Self:
        """Create money from a loosely-typed amount in major units.

        Settings and coupon services send prices as strings ("5.99") or
        JSON numbers; both go through their string form so that binary
        float noise never reaches the cents value.

        Args:
            amount: Amount in major units.
            currency: Currency code.

        Returns:
            Money instance.

        Raises:
            ValueError: If the amount is not a number.
        """
        try:
            value = Decimal(str(amount).strip())
        except InvalidOperation as e:
            raise ValueError(f"Invalid money amount: {amount!r}") from e
        if not value.is_finite():
            raise ValueError(f"Invalid money amount: {amount!r}")
        return cls.from_decimal(value, currency)

    def to_decimal(self) -> Decimal:
        """Convert to decimal amount in major units.

        Returns:
            Decimal amount with two decimal places.
        """
        return (Decimal(self.amount_cents) / 100).quantize(Decimal("0.01"))

    def _check_currency(self, other: "Money") -> None:
        if self.currency != other.currency:
            raise CurrencyMismatchError(self.currency, other.currency)

    def __add__(self, other: "Money") -> "Money":
        """Add two money amounts.

        Raises:
            CurrencyMismatchError: If currencies don't match.
        """
        self._check_currency(other)
        return Money(
            amount_cents=self.amount_cents + other.amount_cents,
            currency=self.currency,
        )

    def __sub__(self, other: "Money") -> "Money":
        """Subtract money amounts.

        Raises:
            CurrencyMismatchError: If currencies don't match.
            NegativeMoneyError: If result would be negative.
        """
        self._check_currency(other)
        return Money(
            amount_cents=self.amount_cents - other.amount_cents,
            currency=self.currency,
        )

    def __mul__(self, quantity: int) -> "Money":
        return Money(
            amount_cents=self.amount_cents * quantity,
            currency=self.currency,
        )

    def __rmul__(self, quantity: int) -> "Money":
        return self.__mul__(quantity)

    def __lt__(self, other: "Money") -> bool:
        self._check_currency(other)
        return self.amount_cents < other.amount_cents

    def __le__(self, other: "Money") -> bool:
        self._check_currency(other)
        return self.amount_cents <= other.amount_cents

    def __gt__(self, other: "Money") -> bool:
        self._check_currency(other)
        return self.amount_cents > other.amount_cents

    def __ge__(self, other: "Money") -> bool:
        self._check_currency(other)
        return self.amount_cents >= other.amount_cents

    def __str__(self) -> str:
        """Return formatted string representation.

        Returns:
            Formatted money string (e.g., '€12.99 EUR').
        """
        symbol = {"USD": "$", "EUR": "€", "GBP": "£"}.get(self.currency, "")
        return f"{symbol}{self.to_decimal():.2f} {self.currency}"

    def is_zero(self) -> bool:
        """Check if amount is zero."""
        return self.amount_cents == 0


# ============================================================================
# Cart
# ============================================================================


@dataclass(frozen=True)
class CartLine(ValueObject):
    """A line of the buyer's cart as seen by checkout.

    Attributes:
        product_id: Catalog product identifier.
        name: Product name at the time the line was read.
        unit_price: VAT-inclusive price per unit.
        quantity: Number of units.
        is_digital: Whether the product is delivered digitally.
    """

    product_id: str
    name: str
    unit_price: Money
    quantity: int
    is_digital: bool = False

    def __post_init__(self) -> None:
        if not self.product_id or not self.product_id.strip():
            raise ValueError("Product ID cannot be empty")
        if self.quantity <= 0:
            raise ValueError(f"Quantity must be positive, got {self.quantity}")

    @property
    def line_total(self) -> Money:
        """Unit price times quantity."""
        return self.unit_price * self.quantity


# ============================================================================
# Buyer Details
# ============================================================================


@dataclass(frozen=True)
class ShippingAddress(ValueObject):
    """Shipping or billing address.

    Unlike most value objects this one accepts incomplete input: buyers
    submit partially filled forms, and completeness is a step predicate
    rather than a construction error.
    """

    full_name: str
    address_line1: str
    city: str
    region: str
    postal_code: str
    country: str
    phone: str = ""
    address_line2: str | None = None

    REQUIRED_FIELDS = ("full_name", "address_line1", "city", "region", "postal_code", "country")

    def missing_fields(self) -> list[str]:
        """List required fields that are blank."""
        return [name for name in self.REQUIRED_FIELDS if not (getattr(self, name) or "").strip()]

    def is_complete(self) -> bool:
        """Check that every required field is filled in."""
        return not self.missing_fields()

    def format_single_line(self) -> str:
        parts = [self.address_line1]
        if self.address_line2:
            parts.append(self.address_line2)
        parts.extend([self.city, self.region, self.postal_code, self.country])
        return ", ".join(parts)


@dataclass(frozen=True)
class GuestInformation(ValueObject):
    """Contact details of a buyer checking out without an account.

    Attributes:
        email: Address used for order confirmation.
        create_account: Whether an account should be created with the order.
        password: Password for the new account.
        marketing_opt_in: Consent to marketing emails.
    """

    email: str
    create_account: bool = False
    password: str | None = None
    marketing_opt_in: bool = False

    def is_complete(self) -> bool:
        if not _EMAIL_PATTERN.match(self.email or ""):
            return False
        if self.create_account and not self.password:
            return False
        return True

    def __repr__(self) -> str:
        return (
            f"GuestInformation(email={self.email!r}, create_account={self.create_account}, "
            f"marketing_opt_in={self.marketing_opt_in})"
        )


# ============================================================================
# Shipping
# ============================================================================


STANDARD_SHIPPING_ID = "standard"
EXPRESS_SHIPPING_ID = "express"
PRIORITY_SHIPPING_ID = "priority"


@dataclass(frozen=True)
class ShippingMethod(ValueObject):
    """A delivery option chosen by the buyer.

    Attributes:
        id: Method identifier ("standard", "express", "priority").
        name: Display name.
        description: Short description.
        price: Configured price before any free-shipping adjustment.
        estimated_delivery: Delivery estimate for display.
    """

    id: str
    name: str
    price: Money
    description: str = ""
    estimated_delivery: str = ""

    @property
    def is_standard(self) -> bool:
        return self.id == STANDARD_SHIPPING_ID


@dataclass(frozen=True)
class ShippingRule(ValueObject):
    """Price and availability of one shipping tier."""

    price: Money
    active: bool = True


@dataclass(frozen=True)
class FreeShippingThreshold(ValueObject):
    """Cart total at or above which standard shipping is free."""

    price: Money
    active: bool = False


@dataclass(frozen=True)
class ShippingSettings(ValueObject):
    """Shipping configuration from the settings service."""

    standard: ShippingRule
    express: ShippingRule
    free_threshold: FreeShippingThreshold

    @classmethod
    def defaults(cls, currency: str = DEFAULT_CURRENCY) -> Self:
        """Safe defaults used when the settings service is unreachable."""
        return cls(
            standard=ShippingRule(price=Money.parse("5.99", currency), active=True),
            express=ShippingRule(price=Money.parse("12.99", currency), active=True),
            free_threshold=FreeShippingThreshold(price=Money.zero(currency), active=False),
        )


# ============================================================================
# Tax
# ============================================================================


@dataclass(frozen=True)
class TaxSettings(ValueObject):
    """Tax configuration from the settings service.

    Attributes:
        active: Whether VAT applies at all.
        rate: VAT rate as a percentage (e.g. Decimal("21")).
        include_in_price: Whether catalog prices already include VAT.
    """

    active: bool
    rate: Decimal
    include_in_price: bool = True

    def __post_init__(self) -> None:
        if self.rate < 0 or self.rate >= 100:
            raise ValueError(f"Tax rate must be in [0, 100), got {self.rate}")

    @classmethod
    def from_percent(cls, rate: str | int | float, active: bool = True, include_in_price: bool = True) -> Self:
        """Build tax settings from the service's string percentage."""
        try:
            parsed = Decimal(str(rate).strip())
        except InvalidOperation as e:
            raise ValueError(f"Invalid tax rate: {rate!r}") from e
        return cls(active=active, rate=parsed, include_in_price=include_in_price)

    @classmethod
    def defaults(cls) -> Self:
        """Safe defaults used when the settings service is unreachable."""
        return cls.from_percent("21", active=True, include_in_price=True)

    @property
    def rate_fraction(self) -> Decimal:
        """Effective rate as a fraction; zero when tax is inactive."""
        if not self.active:
            return Decimal("0")
        return self.rate / 100


@dataclass(frozen=True)
class StoreSettings(ValueObject):
    """Tax and shipping configuration read together by pricing."""

    tax: TaxSettings
    shipping: ShippingSettings

    @classmethod
    def defaults(cls, currency: str = DEFAULT_CURRENCY) -> Self:
        return cls(tax=TaxSettings.defaults(), shipping=ShippingSettings.defaults(currency))


# ============================================================================
# Coupons
# ============================================================================


class DiscountType(str, Enum):
    """How a coupon's value is interpreted."""

    PERCENTAGE = "percentage"
    FIXED = "fixed"


@dataclass(frozen=True)
class Coupon(ValueObject):
    """A discount code as described by the coupon service."""

    code: str
    discount_type: DiscountType
    discount_value: Decimal

    @staticmethod
    def normalize_code(code: str) -> str:
        """Normalize user input the way the coupon service stores codes."""
        return (code or "").strip().upper()


@dataclass(frozen=True)
class AppliedCoupon(ValueObject):
    """A coupon together with the discount computed by the server.

    The discount is only valid for ``cart_total``; any change to the cart
    total requires re-validation.
    """

    coupon: Coupon
    discount_amount: Money
    cart_total: Money

    @property
    def code(self) -> str:
        return self.coupon.code

    def is_valid_for(self, cart_total: Money) -> bool:
        """Check the discount was computed against this cart total."""
        return self.cart_total == cart_total


# ============================================================================
# Payment
# ============================================================================


@dataclass(frozen=True)
class CollectedCardData(ValueObject):
    """Card details as collected by the gateway's hosted fields.

    Only the gateway-issued payment method token is carried; the card
    number and CVV never leave the gateway.
    """

    payment_method_token: str
    cardholder_name: str

    def __post_init__(self) -> None:
        if not self.payment_method_token or not self.payment_method_token.strip():
            raise ValueError("Payment method token cannot be empty")


@dataclass(frozen=True)
class PaymentOutcome(ValueObject):
    """Masked result of a confirmed payment or a selected saved card.

    Attributes:
        card_number_masked: e.g. "•••• •••• •••• 4242".
        cardholder_name: Name on the card.
        expiry_display: e.g. "12/27" or "**/**".
        card_type: Card brand ("visa", "mastercard", ...).
        saved_card_id: Reference to a stored payment method.
        payment_reference: Gateway payment intent identifier.
        amount_charged: Amount confirmed with the gateway.
    """

    card_number_masked: str
    cardholder_name: str
    expiry_display: str
    card_type: str
    saved_card_id: str | None = None
    payment_reference: str | None = None
    amount_charged: Money | None = None

    def __post_init__(self) -> None:
        if len(_DIGITS_PATTERN.findall(self.card_number_masked)) > 4:
            raise ValueError("Card number must be masked to at most four digits")

    @property
    def is_saved_card(self) -> bool:
        return self.saved_card_id is not None

    @staticmethod
    def mask(last4: str) -> str:
        """Render the last four digits in the storefront's masked format."""
        return f"•••• •••• •••• {last4[-4:]}"
