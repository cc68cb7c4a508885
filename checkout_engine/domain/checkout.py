"""Checkout session aggregate."""

from dataclasses import dataclass, field
from typing import Self
from uuid import uuid4

from checkout_engine.domain.base import AggregateRoot
from checkout_engine.domain.state_machines import CheckoutStep, step_sequence
from checkout_engine.domain.value_objects import (
    DEFAULT_CURRENCY,
    AppliedCoupon,
    CheckoutId,
    GuestInformation,
    Money,
    PaymentOutcome,
    ShippingAddress,
    ShippingMethod,
)


@dataclass(kw_only=True, eq=False)
class CheckoutState(AggregateRoot[CheckoutId]):
    """Everything the buyer has entered during one checkout session.

    The order total is deliberately absent: it is recomputed from the
    cart, settings and coupon whenever it is needed.

    Attributes:
        authenticated: Whether the buyer is logged in.
        current_step: Step the buyer is on.
        guest_information: Contact details of an anonymous buyer.
        shipping_address: Delivery address.
        shipping_method: Selected delivery option.
        payment_outcome: Masked payment result or selected saved card.
        billing_address_same_as_shipping: Bill to the delivery address.
        billing_address: Separate billing address.
        applied_coupon: Coupon with its server-computed discount.
        idempotency_key: Key attached to every order submission attempt
            of this session.
        revision: Bumped on every navigation and cart change so that
            late async results can detect they are stale.
        in_flight: Name of the mutation currently running, if any.
        currency: Currency of the session's amounts.
    """

    authenticated: bool = False
    current_step: CheckoutStep
    guest_information: GuestInformation | None = None
    shipping_address: ShippingAddress | None = None
    shipping_method: ShippingMethod | None = None
    payment_outcome: PaymentOutcome | None = None
    billing_address_same_as_shipping: bool = True
    billing_address: ShippingAddress | None = None
    applied_coupon: AppliedCoupon | None = None
    idempotency_key: str = field(default_factory=lambda: str(uuid4()))
    revision: int = 0
    in_flight: str | None = None
    currency: str = DEFAULT_CURRENCY

    @classmethod
    def create(cls, authenticated: bool, currency: str = DEFAULT_CURRENCY) -> Self:
        """Start a fresh checkout session.

        Args:
            authenticated: Whether the buyer is logged in.
            currency: Session currency.

        Returns:
            Empty state positioned on the first step.
        """
        return cls(
            id=CheckoutId.generate(),
            authenticated=authenticated,
            current_step=step_sequence(authenticated)[0],
            currency=currency,
        )

    # ------------------------------------------------------------------
    # Derived values
    # ------------------------------------------------------------------

    @property
    def discount_amount(self) -> Money:
        """Discount of the applied coupon; zero without one."""
        if self.applied_coupon is None:
            return Money.zero(self.currency)
        return self.applied_coupon.discount_amount

    @property
    def saved_card_id(self) -> str | None:
        if self.payment_outcome is None:
            return None
        return self.payment_outcome.saved_card_id

    @property
    def submitting(self) -> bool:
        """Whether an order submission is running."""
        return self.in_flight == "place_order"

    @property
    def effective_billing_address(self) -> ShippingAddress | None:
        if self.billing_address_same_as_shipping:
            return self.shipping_address
        return self.billing_address

    @property
    def contact_email(self) -> str | None:
        if self.guest_information is None:
            return None
        return self.guest_information.email

    def has_payment(self) -> bool:
        return self.payment_outcome is not None

    def billing_satisfied(self) -> bool:
        """Billing address is only required when it differs from shipping."""
        if self.billing_address_same_as_shipping:
            return True
        return self.billing_address is not None and self.billing_address.is_complete()

    # ------------------------------------------------------------------
    # Mutations (called by step submit handlers and the state machine)
    # ------------------------------------------------------------------

    def move_to(self, step: CheckoutStep) -> None:
        self.current_step = step
        self.revision += 1
        self._touch()

    def set_guest_information(self, info: GuestInformation) -> None:
        self.guest_information = info
        self._touch()

    def set_shipping_address(self, address: ShippingAddress) -> None:
        self.shipping_address = address
        self._touch()

    def set_shipping_method(self, method: ShippingMethod) -> None:
        self.shipping_method = method
        self._touch()

    def set_payment(
        self,
        outcome: PaymentOutcome,
        billing_same_as_shipping: bool = True,
        billing_address: ShippingAddress | None = None,
    ) -> None:
        self.payment_outcome = outcome
        self.billing_address_same_as_shipping = billing_same_as_shipping
        self.billing_address = None if billing_same_as_shipping else billing_address
        self._touch()

    def clear_payment(self) -> None:
        self.payment_outcome = None
        self._touch()

    def apply_coupon(self, applied: AppliedCoupon) -> None:
        self.applied_coupon = applied
        self._touch()

    def clear_coupon(self) -> None:
        """Drop the coupon; the derived discount falls back to zero."""
        self.applied_coupon = None
        self._touch()

    def mark_cart_changed(self) -> None:
        self.revision += 1
        self._touch()

    # ------------------------------------------------------------------
    # Staleness tokens
    # ------------------------------------------------------------------

    def token(self) -> int:
        """Snapshot taken before an async call."""
        return self.revision

    def is_current(self, token: int) -> bool:
        """Check nothing moved since ``token`` was taken."""
        return self.revision == token
