"""Order pricing.

Catalog prices are VAT-inclusive, so tax is backed out of the cart total
for the breakdown instead of being added on top. All amounts are exact
cents; the only rounding step is splitting the cart total into its net
and VAT parts, and the two parts always add back up to the cart total.
"""

from collections.abc import Iterable
from dataclasses import dataclass
from decimal import Decimal

from checkout_engine.domain.value_objects import (
    DEFAULT_CURRENCY,
    EXPRESS_SHIPPING_ID,
    PRIORITY_SHIPPING_ID,
    STANDARD_SHIPPING_ID,
    CartLine,
    Money,
    ShippingMethod,
    ShippingSettings,
    TaxSettings,
)

DEFAULT_PRIORITY_SHIPPING_PRICE = Money.parse("19.99")


@dataclass(frozen=True)
class PricingBreakdown:
    """Derived order totals.

    Attributes:
        cart_total: Sum of line totals, VAT included.
        subtotal_ex_vat: Cart total with VAT backed out.
        tax: VAT contained in the cart total.
        shipping: Shipping actually charged.
        discount: Discount actually applied (clamped to the pre-discount total).
        total: Amount to charge; never negative.
        tax_rate: Effective VAT rate as a fraction.
        free_shipping_applied: Whether the free-shipping promotion zeroed shipping.
    """

    cart_total: Money
    subtotal_ex_vat: Money
    tax: Money
    shipping: Money
    discount: Money
    total: Money
    tax_rate: Decimal
    free_shipping_applied: bool = False

    @property
    def total_before_discount(self) -> Money:
        return self.cart_total + self.shipping

    @property
    def amount_minor_units(self) -> int:
        return self.total.amount_cents

    @property
    def currency(self) -> str:
        return self.total.currency


def cart_total(lines: Iterable[CartLine], currency: str = DEFAULT_CURRENCY) -> Money:
    """Sum of unit price times quantity over all lines."""
    total = Money.zero(currency)
    for line in lines:
        total = total + line.line_total
    return total


def qualifies_for_free_shipping(total: Money, settings: ShippingSettings) -> bool:
    """Check the cart total reaches an active free-shipping threshold (inclusive)."""
    threshold = settings.free_threshold
    return threshold.active and total >= threshold.price


def shipping_cost(
    method: ShippingMethod | None,
    total: Money,
    settings: ShippingSettings,
) -> tuple[Money, bool]:
    """Price of the selected shipping method after the free-shipping promotion.

    The promotion only ever waives the standard method; express and
    priority tiers keep their price whatever the cart total.

    Returns:
        Shipping cost and whether the promotion was applied.
    """
    if method is None:
        return Money.zero(total.currency), False
    if method.is_standard and qualifies_for_free_shipping(total, settings):
        return Money.zero(total.currency), True
    return method.price, False


def split_vat(total: Money, tax: TaxSettings) -> tuple[Money, Money]:
    """Split a VAT-inclusive amount into net amount and VAT.

    Returns:
        (subtotal excluding VAT, VAT). They sum to ``total`` exactly.
    """
    rate = tax.rate_fraction
    if rate == 0:
        return total, Money.zero(total.currency)
    subtotal = Money.from_decimal(total.to_decimal() / (1 + rate), total.currency)
    return subtotal, total - subtotal


def calculate_pricing(
    cart_lines: Iterable[CartLine],
    shipping_method: ShippingMethod | None,
    tax_settings: TaxSettings,
    shipping_settings: ShippingSettings,
    discount_amount: Money | None = None,
    currency: str = DEFAULT_CURRENCY,
) -> PricingBreakdown:
    """Compute the order breakdown.

    Pure function: recompute it whenever the cart, shipping method,
    coupon or settings change.

    Args:
        cart_lines: Cart snapshot.
        shipping_method: Selected shipping method, if any.
        tax_settings: VAT configuration.
        shipping_settings: Shipping configuration.
        discount_amount: Coupon discount as computed by the coupon service.
        currency: Currency used for an empty cart.

    Returns:
        Pricing breakdown.
    """
    total_incl_vat = cart_total(cart_lines, currency)
    shipping, free_shipping = shipping_cost(shipping_method, total_incl_vat, shipping_settings)
    subtotal, tax = split_vat(total_incl_vat, tax_settings)

    total_before_discount = total_incl_vat + shipping
    discount = discount_amount or Money.zero(total_incl_vat.currency)
    if discount > total_before_discount:
        discount = total_before_discount

    return PricingBreakdown(
        cart_total=total_incl_vat,
        subtotal_ex_vat=subtotal,
        tax=tax,
        shipping=shipping,
        discount=discount,
        total=total_before_discount - discount,
        tax_rate=tax_settings.rate_fraction,
        free_shipping_applied=free_shipping,
    )


# ============================================================================
# Shipping Options
# ============================================================================


@dataclass(frozen=True)
class ShippingOption:
    """A selectable shipping method with the price the buyer would pay."""

    method: ShippingMethod
    charged_price: Money
    free_shipping_applied: bool


def available_shipping_methods(
    settings: ShippingSettings,
    priority_price: Money = DEFAULT_PRIORITY_SHIPPING_PRICE,
) -> list[ShippingMethod]:
    """Build the shipping methods offered for the configured tiers.

    Standard and express follow the settings service; priority shipping
    is always offered at a fixed price.
    """
    methods: list[ShippingMethod] = []
    if settings.standard.active:
        methods.append(
            ShippingMethod(
                id=STANDARD_SHIPPING_ID,
                name="Standard Shipping",
                description="Delivery in 3-5 business days",
                price=settings.standard.price,
                estimated_delivery="3-5 business days",
            )
        )
    if settings.express.active:
        methods.append(
            ShippingMethod(
                id=EXPRESS_SHIPPING_ID,
                name="Express Shipping",
                description="Delivery in 1-2 business days",
                price=settings.express.price,
                estimated_delivery="1-2 business days",
            )
        )
    methods.append(
        ShippingMethod(
            id=PRIORITY_SHIPPING_ID,
            name="Priority Shipping",
            description="Delivery in 24 hours",
            price=priority_price,
            estimated_delivery="24 hours",
        )
    )
    return methods


def shipping_options(
    settings: ShippingSettings,
    total: Money,
    priority_price: Money = DEFAULT_PRIORITY_SHIPPING_PRICE,
) -> list[ShippingOption]:
    """Shipping methods annotated with what they would cost for this cart."""
    options = []
    for method in available_shipping_methods(settings, priority_price):
        charged, free = shipping_cost(method, total, settings)
        options.append(ShippingOption(method=method, charged_price=charged, free_shipping_applied=free))
    return options


def free_shipping_remaining(total: Money, settings: ShippingSettings) -> Money | None:
    """How much more the buyer must spend for free standard shipping.

    Returns:
        Remaining amount, zero once the threshold is reached, or None when
        the promotion is inactive.
    """
    threshold = settings.free_threshold
    if not threshold.active:
        return None
    if total >= threshold.price:
        return Money.zero(total.currency)
    return threshold.price - total
