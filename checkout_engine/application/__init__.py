"""Application layer module.

Contains application services (use cases) that orchestrate
domain logic and infrastructure.
"""

from checkout_engine.application.checkout_service import (
    CheckoutResult,
    CheckoutService,
    CheckoutSession,
    CheckoutSessionRepository,
    PlaceOrderResult,
    PricingResult,
)
from checkout_engine.application.coupon_ledger import CouponLedger, CouponResult
from checkout_engine.application.order_submitter import (
    OrderPayload,
    OrderSubmitter,
    SubmitOrderResult,
)
from checkout_engine.application.payment_adapter import (
    BackoffPolicy,
    CircuitBreaker,
    PaymentAdapter,
)
from checkout_engine.application.settings_provider import SettingsProvider

__all__ = [
    "BackoffPolicy",
    "CheckoutResult",
    "CheckoutService",
    "CheckoutSession",
    "CheckoutSessionRepository",
    "CircuitBreaker",
    "CouponLedger",
    "CouponResult",
    "OrderPayload",
    "OrderSubmitter",
    "PaymentAdapter",
    "PlaceOrderResult",
    "PricingResult",
    "SettingsProvider",
    "SubmitOrderResult",
]
