"""Order submission.

Turns a complete checkout into exactly one order. Every attempt of a
session carries the same idempotency key, concurrent attempts with that key
share a single request, and a key that already produced an order answers
from cache without another request.
"""

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlencode

import structlog

from checkout_engine.application.ports import Cart, OrderGateway
from checkout_engine.domain.checkout import CheckoutState
from checkout_engine.domain.exceptions import CheckoutError, ErrorKind
from checkout_engine.domain.pricing import PricingBreakdown
from checkout_engine.domain.value_objects import CartLine, Money, ShippingAddress
from checkout_engine.infrastructure.service_clients import ServiceClientError

logger = structlog.get_logger()


# ============================================================================
# Payload
# ============================================================================


def _amount(money: Money) -> str:
    return str(money.to_decimal())


def _address(address: ShippingAddress) -> dict[str, Any]:
    return {
        "fullName": address.full_name,
        "addressLine1": address.address_line1,
        "addressLine2": address.address_line2,
        "city": address.city,
        "region": address.region,
        "postalCode": address.postal_code,
        "country": address.country,
        "phone": address.phone,
    }


@dataclass(frozen=True)
class OrderLine:
    """Cart line as captured at submit time."""

    product_id: str
    name: str
    unit_price: Money
    quantity: int
    line_total: Money
    is_digital: bool = False

    @classmethod
    def from_cart_line(cls, line: CartLine) -> "OrderLine":
        return cls(
            product_id=line.product_id,
            name=line.name,
            unit_price=line.unit_price,
            quantity=line.quantity,
            line_total=line.line_total,
            is_digital=line.is_digital,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "productId": self.product_id,
            "name": self.name,
            "unitPrice": _amount(self.unit_price),
            "quantity": self.quantity,
            "lineTotal": _amount(self.line_total),
            "isDigital": self.is_digital,
        }


@dataclass(frozen=True)
class OrderPayload:
    """Everything the order service needs to persist an order.

    Attributes:
        idempotency_key: Key shared by every attempt of the session.
        contact_email: Guest email; None for authenticated buyers.
        authenticated: Whether the buyer is logged in.
        create_account: Whether the guest asked for an account.
        marketing_opt_in: Marketing consent.
        shipping_address: Delivery address.
        billing_address: Billing address (the shipping address when same).
        shipping_method_id: Selected shipping method.
        shipping_method_name: Display name of the method.
        payment_reference: Gateway payment intent for a new card.
        saved_card_id: Stored payment method for a saved card.
        coupon_code: Applied coupon code.
        subtotal: Cart total excluding VAT.
        tax: VAT contained in the cart total.
        shipping: Shipping charged.
        discount: Discount applied.
        total: Amount charged.
        lines: Cart snapshot taken at submit time.
    """

    idempotency_key: str
    contact_email: str | None
    authenticated: bool
    create_account: bool
    marketing_opt_in: bool
    shipping_address: ShippingAddress
    billing_address: ShippingAddress
    shipping_method_id: str
    shipping_method_name: str
    payment_reference: str | None
    saved_card_id: str | None
    coupon_code: str | None
    subtotal: Money
    tax: Money
    shipping: Money
    discount: Money
    total: Money
    lines: tuple[OrderLine, ...] = field(default_factory=tuple)

    @property
    def currency(self) -> str:
        return self.total.currency

    def to_dict(self) -> dict[str, Any]:
        """Serialize for the order service. Amounts are decimal strings."""
        return {
            "idempotencyKey": self.idempotency_key,
            "contact": {
                "email": self.contact_email,
                "authenticated": self.authenticated,
                "createAccount": self.create_account,
                "marketingOptIn": self.marketing_opt_in,
            },
            "shippingAddress": _address(self.shipping_address),
            "billingAddress": _address(self.billing_address),
            "shippingMethod": {
                "id": self.shipping_method_id,
                "name": self.shipping_method_name,
            },
            "payment": {
                "paymentIntentId": self.payment_reference,
                "savedCardId": self.saved_card_id,
            },
            "coupon": {"code": self.coupon_code, "discount": _amount(self.discount)}
            if self.coupon_code
            else None,
            "items": [line.to_dict() for line in self.lines],
            "subtotal": _amount(self.subtotal),
            "tax": _amount(self.tax),
            "shipping": _amount(self.shipping),
            "discount": _amount(self.discount),
            "total": _amount(self.total),
            "currency": self.currency,
        }


# ============================================================================
# Submitter
# ============================================================================


@dataclass
class SubmitOrderResult:
    """Result of an order submission.

    Attributes:
        success: Whether an order exists for the session's key.
        order_id: Created order.
        redirect_path: Confirmation page for the order.
        error: Why no order was created.
    """

    success: bool
    order_id: str | None = None
    redirect_path: str | None = None
    error: CheckoutError | None = None

    @property
    def error_code(self) -> str | None:
        return self.error.kind.value if self.error else None


def check_preconditions(
    state: CheckoutState,
    breakdown: PricingBreakdown,
    cart_lines: list[CartLine],
) -> CheckoutError | None:
    """Check the checkout can be submitted without any network call.

    Returns:
        INCOMPLETE_CHECKOUT describing what is missing, or None.
    """
    missing = []
    if not state.authenticated and not (state.guest_information and state.guest_information.is_complete()):
        missing.append("guest_information")
    if state.shipping_address is None or not state.shipping_address.is_complete():
        missing.append("shipping_address")
    if state.shipping_method is None:
        missing.append("shipping_method")
    if not state.has_payment():
        missing.append("payment")
    elif not state.billing_satisfied():
        missing.append("billing_address")
    if not cart_lines:
        missing.append("cart")

    if missing:
        return CheckoutError(
            ErrorKind.INCOMPLETE_CHECKOUT,
            "Please complete all checkout steps before placing your order",
            details={"missing": missing},
        )

    outcome = state.payment_outcome
    if (
        outcome is not None
        and not outcome.is_saved_card
        and outcome.amount_charged is not None
        and outcome.amount_charged != breakdown.total
    ):
        return CheckoutError(
            ErrorKind.INCOMPLETE_CHECKOUT,
            "Your order total changed. Please re-enter your payment details.",
            details={
                "missing": ["payment"],
                "amount_charged": _amount(outcome.amount_charged),
                "total": _amount(breakdown.total),
            },
        )
    return None


def build_payload(
    state: CheckoutState,
    breakdown: PricingBreakdown,
    cart_lines: list[CartLine],
) -> OrderPayload:
    """Assemble the order payload.

    Raises:
        ValueError: If the address or shipping method is missing.
    """
    if state.shipping_address is None or state.shipping_method is None:
        raise ValueError("Checkout has no shipping address or method")
    guest = state.guest_information
    outcome = state.payment_outcome
    return OrderPayload(
        idempotency_key=state.idempotency_key,
        contact_email=state.contact_email,
        authenticated=state.authenticated,
        create_account=bool(guest and guest.create_account),
        marketing_opt_in=bool(guest and guest.marketing_opt_in),
        shipping_address=state.shipping_address,
        billing_address=state.effective_billing_address or state.shipping_address,
        shipping_method_id=state.shipping_method.id,
        shipping_method_name=state.shipping_method.name,
        payment_reference=outcome.payment_reference if outcome else None,
        saved_card_id=state.saved_card_id,
        coupon_code=state.applied_coupon.code if state.applied_coupon else None,
        subtotal=breakdown.subtotal_ex_vat,
        tax=breakdown.tax,
        shipping=breakdown.shipping,
        discount=breakdown.discount,
        total=breakdown.total,
        lines=tuple(OrderLine.from_cart_line(line) for line in cart_lines),
    )


@dataclass(frozen=True)
class CompletedOrder:
    """Order remembered for its idempotency key until ``expires_at``."""

    order_id: str
    expires_at: float


class OrderSubmitter:
    """Submits orders at most once per idempotency key."""

    def __init__(
        self,
        orders: OrderGateway,
        confirmation_path: str = "/checkout/confirmation",
        completed_ttl_seconds: float = 24 * 3600.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize submitter.

        Args:
            orders: Order service client.
            confirmation_path: Page the buyer lands on after ordering.
            completed_ttl_seconds: How long a placed order answers retries.
            clock: Monotonic clock in seconds.
        """
        self.orders = orders
        self.confirmation_path = confirmation_path
        self.completed_ttl_seconds = completed_ttl_seconds
        self._clock = clock
        self._in_flight: dict[str, asyncio.Task[SubmitOrderResult]] = {}
        self._completed: dict[str, CompletedOrder] = {}

    def completed_order(self, key: str) -> str | None:
        """Order ID already placed for ``key``, if it has not expired."""
        entry = self._completed.get(key)
        if entry is None:
            return None
        if self._clock() >= entry.expires_at:
            del self._completed[key]
            return None
        return entry.order_id

    def cleanup_expired(self) -> int:
        """Forget expired orders.

        Returns:
            Number of entries removed.
        """
        now = self._clock()
        expired = [key for key, entry in self._completed.items() if now >= entry.expires_at]
        for key in expired:
            del self._completed[key]
        return len(expired)

    def confirmation_redirect(self, order_id: str) -> str:
        return f"{self.confirmation_path}?{urlencode({'orderId': order_id})}"

    async def submit(
        self,
        state: CheckoutState,
        breakdown: PricingBreakdown,
        cart_lines: list[CartLine],
        cart: Cart | None = None,
    ) -> SubmitOrderResult:
        """Submit the order for a checkout.

        Args:
            state: Checkout state; its coupon is cleared on success.
            breakdown: Pricing computed for ``cart_lines``.
            cart_lines: Cart snapshot to order.
            cart: Cart to clear on success.

        Returns:
            Order ID and confirmation redirect, or INCOMPLETE_CHECKOUT,
            ORDER_CREATION_FAILED, NETWORK_ERROR or TIMEOUT_ERROR. State
            and idempotency key are kept on failure so the buyer can retry.
        """
        key = state.idempotency_key

        self.cleanup_expired()
        order_id = self.completed_order(key)
        if order_id is not None:
            logger.info("Order already placed for idempotency key", order_id=order_id)
            return SubmitOrderResult(
                success=True,
                order_id=order_id,
                redirect_path=self.confirmation_redirect(order_id),
            )

        task = self._in_flight.get(key)
        if task is None:
            error = check_preconditions(state, breakdown, cart_lines)
            if error is not None:
                logger.info("Order submission blocked", missing=error.details.get("missing"))
                return SubmitOrderResult(success=False, error=error)

            payload = build_payload(state, breakdown, cart_lines)
            task = asyncio.ensure_future(self._create(state, payload, cart))
            self._in_flight[key] = task
            task.add_done_callback(lambda _: self._in_flight.pop(key, None))
        else:
            logger.info("Joining in-flight order submission", idempotency_key=key)

        return await asyncio.shield(task)

    async def _create(
        self,
        state: CheckoutState,
        payload: OrderPayload,
        cart: Cart | None,
    ) -> SubmitOrderResult:
        try:
            order_id = await self.orders.create_order(payload.to_dict(), payload.idempotency_key)
        except ServiceClientError as e:
            if e.timed_out:
                kind = ErrorKind.TIMEOUT_ERROR
            elif e.is_transport_error:
                kind = ErrorKind.NETWORK_ERROR
            else:
                kind = ErrorKind.ORDER_CREATION_FAILED
            logger.error(
                "Order creation failed",
                idempotency_key=payload.idempotency_key,
                status_code=e.status_code,
                error=e.message,
            )
            return SubmitOrderResult(
                success=False,
                error=CheckoutError(kind, e.message, details={"status_code": e.status_code}),
            )

        self._completed[payload.idempotency_key] = CompletedOrder(
            order_id=order_id,
            expires_at=self._clock() + self.completed_ttl_seconds,
        )
        state.clear_coupon()
        if cart is not None:
            try:
                await cart.clear()
            except ServiceClientError as e:
                logger.warning("Failed to clear cart after order", order_id=order_id, error=e.message)

        logger.info(
            "Order placed",
            order_id=order_id,
            idempotency_key=payload.idempotency_key,
            total_cents=payload.total.amount_cents,
            currency=payload.currency,
        )
        return SubmitOrderResult(
            success=True,
            order_id=order_id,
            redirect_path=self.confirmation_redirect(order_id),
        )
