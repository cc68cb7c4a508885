"""Domain layer - value objects, checkout aggregate, step state machine, pricing.

This module exports the core checkout building blocks:

- **Value Objects**: Money, cart lines, addresses, coupons, payment outcomes, settings
- **Aggregate**: CheckoutState, the per-session checkout data
- **State Machine**: CheckoutStep and CheckoutStateMachine
- **Pricing**: calculate_pricing and the PricingBreakdown it returns
- **Errors**: ErrorKind taxonomy and domain exceptions

Example usage:
    from checkout_engine.domain import (
        CartLine, Money, ShippingSettings, TaxSettings, calculate_pricing,
    )

    lines = [CartLine("SKU-1", "Robot kit", Money.parse("100.00"), 1)]
    breakdown = calculate_pricing(
        lines,
        shipping_method=None,
        tax_settings=TaxSettings.defaults(),
        shipping_settings=ShippingSettings.defaults(),
    )
    print(breakdown.tax)  # €17.36 EUR
"""

from checkout_engine.domain.base import AggregateRoot, ValueObject
from checkout_engine.domain.checkout import CheckoutState
from checkout_engine.domain.exceptions import (
    CheckoutError,
    CurrencyMismatchError,
    DomainError,
    ErrorKind,
    MoneyError,
    NegativeMoneyError,
    RetryPolicy,
)
from checkout_engine.domain.pricing import (
    PricingBreakdown,
    ShippingOption,
    available_shipping_methods,
    calculate_pricing,
    cart_total,
    free_shipping_remaining,
    shipping_options,
)
from checkout_engine.domain.state_machines import (
    CheckoutStateMachine,
    CheckoutStep,
    StepTransition,
    is_complete,
    step_sequence,
)
from checkout_engine.domain.value_objects import (
    AppliedCoupon,
    CartLine,
    CheckoutId,
    CollectedCardData,
    Coupon,
    DiscountType,
    FreeShippingThreshold,
    GuestInformation,
    Money,
    PaymentOutcome,
    ShippingAddress,
    ShippingMethod,
    ShippingRule,
    ShippingSettings,
    StoreSettings,
    TaxSettings,
)

__all__ = [
    # Base classes
    "AggregateRoot",
    "ValueObject",
    # Aggregate
    "CheckoutState",
    # Value Objects
    "AppliedCoupon",
    "CartLine",
    "CheckoutId",
    "CollectedCardData",
    "Coupon",
    "DiscountType",
    "FreeShippingThreshold",
    "GuestInformation",
    "Money",
    "PaymentOutcome",
    "ShippingAddress",
    "ShippingMethod",
    "ShippingRule",
    "ShippingSettings",
    "StoreSettings",
    "TaxSettings",
    # State Machine
    "CheckoutStateMachine",
    "CheckoutStep",
    "StepTransition",
    "is_complete",
    "step_sequence",
    # Pricing
    "PricingBreakdown",
    "ShippingOption",
    "available_shipping_methods",
    "calculate_pricing",
    "cart_total",
    "free_shipping_remaining",
    "shipping_options",
    # Errors
    "CheckoutError",
    "CurrencyMismatchError",
    "DomainError",
    "ErrorKind",
    "MoneyError",
    "NegativeMoneyError",
    "RetryPolicy",
]
