"""Checkout application service.

Orchestrates one checkout session from start to order:
- Starting a session for a cart (authentication and empty-cart gates)
- Step submit handlers that record buyer data and advance the stepper
- Navigation between steps
- Coupon application, removal and re-validation on cart changes
- Pricing from settings, cart and coupon
- Order placement and abandonment

Every mutating handler runs under the session's in-flight marker, so at
most one mutation is running per session; a concurrent attempt fails with
SUBMISSION_IN_PROGRESS. Async results that come back after the session
moved on are detected through the state's revision token.
"""

import time
from collections.abc import Callable
from dataclasses import dataclass
from urllib.parse import urlencode

import structlog

from checkout_engine.application.coupon_ledger import CouponLedger, CouponResult
from checkout_engine.application.order_submitter import OrderSubmitter
from checkout_engine.application.payment_adapter import PaymentAdapter, billing_details
from checkout_engine.application.ports import Cart
from checkout_engine.application.settings_provider import SettingsProvider
from checkout_engine.domain.checkout import CheckoutState
from checkout_engine.domain.exceptions import CheckoutError, ErrorKind
from checkout_engine.domain.pricing import (
    DEFAULT_PRIORITY_SHIPPING_PRICE,
    PricingBreakdown,
    ShippingOption,
    available_shipping_methods,
    calculate_pricing,
    cart_total,
    free_shipping_remaining,
    shipping_options,
)
from checkout_engine.domain.state_machines import CheckoutStateMachine, CheckoutStep, StepTransition
from checkout_engine.domain.value_objects import (
    DEFAULT_CURRENCY,
    CartLine,
    CollectedCardData,
    GuestInformation,
    Money,
    PaymentOutcome,
    ShippingAddress,
    StoreSettings,
)
from checkout_engine.infrastructure.service_clients import ServiceClientError

logger = structlog.get_logger()

PLACE_ORDER = "place_order"


# ============================================================================
# Sessions
# ============================================================================


@dataclass
class CheckoutSession:
    """A checkout state together with the cart it is checking out."""

    state: CheckoutState
    cart: Cart

    @property
    def id(self) -> str:
        return str(self.state.id)

    def machine(self) -> CheckoutStateMachine:
        return CheckoutStateMachine(self.state)


@dataclass(frozen=True)
class CompletedCheckout:
    """Order placed from a checkout, kept until ``expires_at`` for retries."""

    order_id: str
    redirect_path: str
    expires_at: float


class CheckoutSessionRepository:
    """In-memory store of live checkout sessions.

    A session not read or saved for ``session_ttl_seconds`` expires, unless
    a mutation is running on it. Once a session orders, it is replaced by a
    completed record that lives for ``completed_ttl_seconds``.
    """

    def __init__(
        self,
        session_ttl_seconds: float = 30 * 60.0,
        completed_ttl_seconds: float = 24 * 3600.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.session_ttl_seconds = session_ttl_seconds
        self.completed_ttl_seconds = completed_ttl_seconds
        self._clock = clock
        self._sessions: dict[str, CheckoutSession] = {}
        self._touched: dict[str, float] = {}
        self._completed: dict[str, CompletedCheckout] = {}

    def _is_idle(self, checkout_id: str, now: float) -> bool:
        session = self._sessions[checkout_id]
        return session.state.in_flight is None and now - self._touched[checkout_id] >= self.session_ttl_seconds

    def save(self, session: CheckoutSession) -> None:
        """Save a session."""
        self.cleanup_expired()
        self._sessions[session.id] = session
        self._touched[session.id] = self._clock()

    def get(self, checkout_id: str) -> CheckoutSession | None:
        """Get session by checkout ID, expiring it if idle."""
        if checkout_id not in self._sessions:
            return None
        now = self._clock()
        if self._is_idle(checkout_id, now):
            self.delete(checkout_id)
            logger.info("Checkout session expired", checkout_id=checkout_id)
            return None
        self._touched[checkout_id] = now
        return self._sessions[checkout_id]

    def delete(self, checkout_id: str) -> bool:
        """Discard a session. Returns whether it existed."""
        self._touched.pop(checkout_id, None)
        return self._sessions.pop(checkout_id, None) is not None

    def complete(self, checkout_id: str, order_id: str, redirect_path: str) -> CompletedCheckout:
        """Replace a session with the record of the order it placed."""
        self.delete(checkout_id)
        record = CompletedCheckout(
            order_id=order_id,
            redirect_path=redirect_path,
            expires_at=self._clock() + self.completed_ttl_seconds,
        )
        self._completed[checkout_id] = record
        return record

    def completed(self, checkout_id: str) -> CompletedCheckout | None:
        """Order placed by a checkout, if its record has not expired."""
        record = self._completed.get(checkout_id)
        if record is None:
            return None
        if self._clock() >= record.expires_at:
            del self._completed[checkout_id]
            return None
        return record

    def cleanup_expired(self) -> int:
        """Drop idle sessions and expired completed records.

        Returns:
            Number of entries removed.
        """
        now = self._clock()
        idle = [checkout_id for checkout_id in self._sessions if self._is_idle(checkout_id, now)]
        for checkout_id in idle:
            self.delete(checkout_id)
        expired = [checkout_id for checkout_id, record in self._completed.items() if now >= record.expires_at]
        for checkout_id in expired:
            del self._completed[checkout_id]
        if idle or expired:
            logger.debug("Expired checkout entries removed", sessions=len(idle), completed=len(expired))
        return len(idle) + len(expired)

    def __len__(self) -> int:
        return len(self._sessions)


# ============================================================================
# Service Result Types
# ============================================================================


@dataclass
class CheckoutResult:
    """Result of a session operation.

    Attributes:
        session: Session after the operation.
        transition: Step move performed by the operation, if any.
        success: Whether the operation succeeded.
        error: What went wrong.
        redirect_path: Where to send the buyer (login page for AUTH_REQUIRED).
        notice: Informational message, e.g. a coupon dropped after a cart change.
    """

    session: CheckoutSession | None = None
    transition: StepTransition | None = None
    success: bool = True
    error: CheckoutError | None = None
    redirect_path: str | None = None
    notice: str | None = None

    @property
    def error_code(self) -> str | None:
        return self.error.kind.value if self.error else None

    @classmethod
    def failed(cls, error: CheckoutError, session: CheckoutSession | None = None, **kwargs: object) -> "CheckoutResult":
        return cls(session=session, success=False, error=error, **kwargs)


@dataclass
class PricingResult:
    """Pricing of a session.

    Attributes:
        breakdown: Order totals.
        shipping_options: Shipping methods with the price the buyer would pay.
        free_shipping_remaining: Amount left to reach free shipping, if active.
        success: Whether pricing could be computed.
        error: What went wrong.
        notice: Set when a coupon was dropped during pricing.
    """

    breakdown: PricingBreakdown | None = None
    shipping_options: list[ShippingOption] | None = None
    free_shipping_remaining: Money | None = None
    success: bool = True
    error: CheckoutError | None = None
    notice: str | None = None

    @property
    def error_code(self) -> str | None:
        return self.error.kind.value if self.error else None


@dataclass
class PlaceOrderResult:
    """Result of placing the order."""

    order_id: str | None = None
    redirect_path: str | None = None
    success: bool = True
    error: CheckoutError | None = None

    @property
    def error_code(self) -> str | None:
        return self.error.kind.value if self.error else None


def client_error(e: ServiceClientError) -> CheckoutError:
    """Classify a failed collaborator call."""
    kind = ErrorKind.TIMEOUT_ERROR if e.timed_out else ErrorKind.NETWORK_ERROR
    return CheckoutError(kind, e.message, details={"service": e.service})


# ============================================================================
# Checkout Service
# ============================================================================


class CheckoutService:
    """Application service for checkout sessions.

    Orchestrates the flow:
    1. Start a session for the buyer's cart
    2. Collect guest info, shipping address, shipping method and payment
    3. Review with live pricing and optional coupon
    4. Place the order exactly once
    """

    def __init__(
        self,
        settings_provider: SettingsProvider,
        coupon_ledger: CouponLedger,
        payment_adapter: PaymentAdapter,
        order_submitter: OrderSubmitter,
        repository: CheckoutSessionRepository | None = None,
        require_authentication: bool = False,
        login_path: str = "/auth/login",
        checkout_path: str = "/checkout",
        priority_shipping_price: Money = DEFAULT_PRIORITY_SHIPPING_PRICE,
        currency: str = DEFAULT_CURRENCY,
    ) -> None:
        """Initialize service.

        Args:
            settings_provider: Store settings cache.
            coupon_ledger: Coupon validation.
            payment_adapter: Payment gateway adapter.
            order_submitter: Order submission.
            repository: Session store.
            require_authentication: Reject anonymous buyers with AUTH_REQUIRED.
            login_path: Login page for the AUTH_REQUIRED redirect.
            checkout_path: Path the login page returns to.
            priority_shipping_price: Fixed price of priority shipping.
            currency: Session currency.
        """
        self.settings_provider = settings_provider
        self.coupon_ledger = coupon_ledger
        self.payment_adapter = payment_adapter
        self.order_submitter = order_submitter
        self.repository = repository or CheckoutSessionRepository()
        self.require_authentication = require_authentication
        self.login_path = login_path
        self.checkout_path = checkout_path
        self.priority_shipping_price = priority_shipping_price
        self.currency = currency

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def login_redirect(self) -> str:
        return f"{self.login_path}?{urlencode({'redirect': self.checkout_path})}"

    def get_session(self, checkout_id: str) -> CheckoutSession | None:
        return self.repository.get(checkout_id)

    def _load(self, checkout_id: str) -> CheckoutSession | CheckoutError:
        session = self.repository.get(checkout_id)
        if session is None:
            return CheckoutError(
                ErrorKind.SESSION_NOT_FOUND,
                f"Checkout not found: {checkout_id}",
                details={"checkout_id": checkout_id},
            )
        return session

    @staticmethod
    def _acquire(session: CheckoutSession, action: str) -> CheckoutError | None:
        """Mark ``action`` as the session's running mutation.

        No await happens between the check and the assignment, so two
        coroutines can never both acquire the same session.
        """
        running = session.state.in_flight
        if running is not None:
            logger.info(
                "Mutation rejected, another one is running",
                checkout_id=session.id,
                action=action,
                running=running,
            )
            return CheckoutError(
                ErrorKind.SUBMISSION_IN_PROGRESS,
                details={"action": action, "running": running},
            )
        session.state.in_flight = action
        return None

    @staticmethod
    def _release(session: CheckoutSession) -> None:
        session.state.in_flight = None

    async def _mutate(
        self,
        checkout_id: str,
        action: str,
        write: Callable[[CheckoutSession], CheckoutError | None],
        step: CheckoutStep,
    ) -> CheckoutResult:
        """Run a synchronous step submit: write the data, then advance.

        The stepper only advances when the buyer is on ``step``; editing an
        earlier step from a later one keeps the current position.
        """
        loaded = self._load(checkout_id)
        if isinstance(loaded, CheckoutError):
            return CheckoutResult.failed(loaded)
        session = loaded

        busy = self._acquire(session, action)
        if busy:
            return CheckoutResult.failed(busy, session)
        try:
            error = write(session)
            if error is not None:
                return CheckoutResult.failed(error, session)
            return self._advance_from(session, step)
        finally:
            self._release(session)

    def _advance_from(self, session: CheckoutSession, step: CheckoutStep) -> CheckoutResult:
        if session.state.current_step != step:
            return CheckoutResult(session=session)
        transition = session.machine().advance()
        if not transition.success:
            return CheckoutResult.failed(transition.error, session, transition=transition)
        return CheckoutResult(session=session, transition=transition)

    async def _cart_lines(self, session: CheckoutSession) -> list[CartLine] | CheckoutError:
        try:
            return await session.cart.get_lines()
        except ServiceClientError as e:
            logger.error("Failed to read cart", checkout_id=session.id, error=e.message)
            return client_error(e)

    async def _revalidate_coupon(self, session: CheckoutSession, total: Money) -> CouponResult | None:
        """Bring the applied coupon in line with the cart total.

        Returns:
            None when there is nothing to do or the result went stale;
            otherwise the ledger result, already written to the state.
        """
        state = session.state
        applied = state.applied_coupon
        if applied is None or applied.is_valid_for(total):
            return None

        token = state.token()
        result = await self.coupon_ledger.revalidate(applied, total)
        if not state.is_current(token) or state.applied_coupon is not applied:
            logger.info("Discarding stale coupon re-validation", checkout_id=session.id, code=applied.code)
            return None

        if result.success and result.applied is not None:
            state.apply_coupon(result.applied)
        else:
            state.clear_coupon()
        return result

    @staticmethod
    def _stale_coupon(session: CheckoutSession, total: Money) -> CheckoutError | None:
        """Refuse to price with a discount computed for another cart total."""
        applied = session.state.applied_coupon
        if applied is None or applied.is_valid_for(total):
            return None
        logger.info(
            "Coupon discount does not match the cart, refusing to price",
            checkout_id=session.id,
            code=applied.code,
            coupon_cart_total_cents=applied.cart_total.amount_cents,
            cart_total_cents=total.amount_cents,
        )
        return CheckoutError(ErrorKind.STALE_RESPONSE, details={"code": applied.code})

    @staticmethod
    def _coupon_notice(result: CouponResult | None, code: str | None) -> str | None:
        if result is None or result.success or result.error is None:
            return None
        return f"Discount code {code} was removed: {result.error.message}"

    def _price(self, session: CheckoutSession, lines: list[CartLine], settings: StoreSettings) -> PricingBreakdown:
        state = session.state
        return calculate_pricing(
            lines,
            shipping_method=state.shipping_method,
            tax_settings=settings.tax,
            shipping_settings=settings.shipping,
            discount_amount=state.discount_amount,
            currency=state.currency,
        )

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    async def start_checkout(self, cart: Cart, authenticated: bool) -> CheckoutResult:
        """Start a checkout session for a cart.

        Args:
            cart: The buyer's cart.
            authenticated: Whether the buyer is logged in.

        Returns:
            CheckoutResult with the new session, AUTH_REQUIRED with a login
            redirect, or EMPTY_CART.
        """
        if self.require_authentication and not authenticated:
            logger.info("Anonymous checkout rejected, login required")
            return CheckoutResult.failed(
                CheckoutError(ErrorKind.AUTH_REQUIRED),
                redirect_path=self.login_redirect(),
            )

        session = CheckoutSession(state=CheckoutState.create(authenticated, self.currency), cart=cart)
        lines = await self._cart_lines(session)
        if isinstance(lines, CheckoutError):
            return CheckoutResult.failed(lines)
        if not lines:
            return CheckoutResult.failed(CheckoutError(ErrorKind.EMPTY_CART))

        self.repository.save(session)
        # Warm the settings cache for the first pricing call
        await self.settings_provider.get()

        logger.info(
            "Checkout started",
            checkout_id=session.id,
            authenticated=authenticated,
            first_step=session.state.current_step.value,
            line_count=len(lines),
        )
        return CheckoutResult(session=session)

    async def abandon(self, checkout_id: str) -> CheckoutResult:
        """Discard a session without ordering."""
        loaded = self._load(checkout_id)
        if isinstance(loaded, CheckoutError):
            return CheckoutResult.failed(loaded)
        if loaded.state.submitting:
            return CheckoutResult.failed(CheckoutError(ErrorKind.SUBMISSION_IN_PROGRESS), loaded)
        self.repository.delete(checkout_id)
        logger.info("Checkout abandoned", checkout_id=checkout_id, step=loaded.state.current_step.value)
        return CheckoutResult(session=loaded)

    # ------------------------------------------------------------------
    # Step submit handlers
    # ------------------------------------------------------------------

    async def submit_guest_information(self, checkout_id: str, info: GuestInformation) -> CheckoutResult:
        """Record guest contact details and continue."""

        def write(session: CheckoutSession) -> CheckoutError | None:
            if session.state.authenticated:
                return CheckoutError(
                    ErrorKind.STEP_INCOMPLETE,
                    "Signed-in buyers do not provide guest details",
                    details={"current_step": session.state.current_step.value},
                )
            session.state.set_guest_information(info)
            return None

        return await self._mutate(checkout_id, "guest_info", write, CheckoutStep.GUEST_INFO)

    async def submit_shipping_address(self, checkout_id: str, address: ShippingAddress) -> CheckoutResult:
        """Record the shipping address and continue."""

        def write(session: CheckoutSession) -> CheckoutError | None:
            session.state.set_shipping_address(address)
            if not address.is_complete():
                return CheckoutError(
                    ErrorKind.STEP_INCOMPLETE,
                    "Please complete all required address fields",
                    details={"missing_fields": address.missing_fields()},
                )
            return None

        return await self._mutate(checkout_id, "shipping_address", write, CheckoutStep.SHIPPING_ADDRESS)

    async def select_shipping_method(self, checkout_id: str, method_id: str) -> CheckoutResult:
        """Select one of the offered shipping methods and continue."""
        settings = await self.settings_provider.get()
        options = {
            method.id: method
            for method in available_shipping_methods(settings.shipping, self.priority_shipping_price)
        }

        def write(session: CheckoutSession) -> CheckoutError | None:
            method = options.get(method_id)
            if method is None:
                return CheckoutError(
                    ErrorKind.STEP_INCOMPLETE,
                    "Please select a shipping method",
                    details={"method_id": method_id, "available": sorted(options)},
                )
            session.state.set_shipping_method(method)
            return None

        return await self._mutate(checkout_id, "shipping_method", write, CheckoutStep.SHIPPING_METHOD)

    async def use_saved_card(
        self,
        checkout_id: str,
        saved_card_id: str,
        last4: str,
        card_type: str,
        expiry_display: str,
        cardholder_name: str = "",
    ) -> CheckoutResult:
        """Pay with a stored card; the gateway is not contacted."""
        outcome = PaymentOutcome(
            card_number_masked=PaymentOutcome.mask(last4),
            cardholder_name=cardholder_name,
            expiry_display=expiry_display,
            card_type=card_type,
            saved_card_id=saved_card_id,
        )

        def write(session: CheckoutSession) -> CheckoutError | None:
            session.state.set_payment(outcome, billing_same_as_shipping=True)
            return None

        return await self._mutate(checkout_id, "payment", write, CheckoutStep.PAYMENT)

    async def submit_payment(
        self,
        checkout_id: str,
        card_data: CollectedCardData,
        billing_same_as_shipping: bool = True,
        billing_address: ShippingAddress | None = None,
    ) -> CheckoutResult:
        """Charge a new card for the current total and continue.

        A confirmed payment is always recorded, even when the buyer
        navigated meanwhile; the stepper only advances if the session is
        still where the payment was started.
        """
        loaded = self._load(checkout_id)
        if isinstance(loaded, CheckoutError):
            return CheckoutResult.failed(loaded)
        session = loaded
        state = session.state

        if not billing_same_as_shipping and (billing_address is None or not billing_address.is_complete()):
            return CheckoutResult.failed(
                CheckoutError(
                    ErrorKind.STEP_INCOMPLETE,
                    "Please complete the billing address",
                    details={"missing_fields": billing_address.missing_fields() if billing_address else []},
                ),
                session,
            )

        busy = self._acquire(session, "payment")
        if busy:
            return CheckoutResult.failed(busy, session)
        try:
            token = state.token()

            lines = await self._cart_lines(session)
            if isinstance(lines, CheckoutError):
                return CheckoutResult.failed(lines, session)
            settings = await self.settings_provider.get()
            total = cart_total(lines, state.currency)
            await self._revalidate_coupon(session, total)
            stale = self._stale_coupon(session, total)
            if stale:
                return CheckoutResult.failed(stale, session)
            breakdown = self._price(session, lines, settings)

            intent_result = await self.payment_adapter.create_intent(breakdown.amount_minor_units, breakdown.currency)
            if not intent_result.success or intent_result.intent is None:
                return CheckoutResult.failed(intent_result.error, session)

            billing = billing_address if not billing_same_as_shipping else state.shipping_address
            confirm_result = await self.payment_adapter.confirm(
                intent_result.intent.client_secret,
                card_data,
                billing_details(card_data.cardholder_name, billing, state.contact_email),
                expected_amount=breakdown.total,
            )
            if not confirm_result.success or confirm_result.outcome is None:
                return CheckoutResult.failed(confirm_result.error, session)

            state.set_payment(confirm_result.outcome, billing_same_as_shipping, billing_address)
            logger.info(
                "Payment recorded",
                checkout_id=session.id,
                payment_reference=confirm_result.outcome.payment_reference,
            )

            if not state.is_current(token):
                logger.info("Session moved during payment, not advancing", checkout_id=session.id)
                return CheckoutResult(session=session)
            return self._advance_from(session, CheckoutStep.PAYMENT)
        finally:
            self._release(session)

    # ------------------------------------------------------------------
    # Navigation
    # ------------------------------------------------------------------

    def _navigate(self, checkout_id: str, move: Callable[[CheckoutStateMachine], StepTransition]) -> CheckoutResult:
        loaded = self._load(checkout_id)
        if isinstance(loaded, CheckoutError):
            return CheckoutResult.failed(loaded)
        session = loaded
        if session.state.submitting:
            return CheckoutResult.failed(CheckoutError(ErrorKind.SUBMISSION_IN_PROGRESS), session)

        transition = move(session.machine())
        if not transition.success:
            return CheckoutResult.failed(transition.error, session, transition=transition)
        logger.debug(
            "Checkout step changed",
            checkout_id=session.id,
            from_step=transition.from_step.value,
            to_step=transition.to_step.value,
        )
        return CheckoutResult(session=session, transition=transition)

    async def advance(self, checkout_id: str) -> CheckoutResult:
        return self._navigate(checkout_id, lambda machine: machine.advance())

    async def retreat(self, checkout_id: str) -> CheckoutResult:
        return self._navigate(checkout_id, lambda machine: machine.retreat())

    async def jump_to(self, checkout_id: str, step: CheckoutStep) -> CheckoutResult:
        return self._navigate(checkout_id, lambda machine: machine.jump_to(step))

    # ------------------------------------------------------------------
    # Coupons
    # ------------------------------------------------------------------

    async def apply_coupon(self, checkout_id: str, code: str) -> CheckoutResult:
        """Validate a coupon against the current cart total and apply it.

        On rejection the state is left exactly as it was.
        """
        loaded = self._load(checkout_id)
        if isinstance(loaded, CheckoutError):
            return CheckoutResult.failed(loaded)
        session = loaded
        state = session.state

        busy = self._acquire(session, "coupon")
        if busy:
            return CheckoutResult.failed(busy, session)
        try:
            token = state.token()
            lines = await self._cart_lines(session)
            if isinstance(lines, CheckoutError):
                return CheckoutResult.failed(lines, session)

            result = await self.coupon_ledger.apply(code, cart_total(lines, state.currency))
            if not state.is_current(token):
                logger.info("Discarding stale coupon result", checkout_id=session.id)
                return CheckoutResult.failed(CheckoutError(ErrorKind.STALE_RESPONSE), session)
            if not result.success or result.applied is None:
                return CheckoutResult.failed(result.error, session)

            state.apply_coupon(result.applied)
            return CheckoutResult(session=session)
        finally:
            self._release(session)

    async def remove_coupon(self, checkout_id: str) -> CheckoutResult:
        loaded = self._load(checkout_id)
        if isinstance(loaded, CheckoutError):
            return CheckoutResult.failed(loaded)
        session = loaded

        busy = self._acquire(session, "coupon")
        if busy:
            return CheckoutResult.failed(busy, session)
        try:
            self.coupon_ledger.remove()
            session.state.clear_coupon()
            return CheckoutResult(session=session)
        finally:
            self._release(session)

    async def cart_changed(self, checkout_id: str) -> CheckoutResult:
        """React to a cart edit: invalidate pending results and re-check the coupon."""
        loaded = self._load(checkout_id)
        if isinstance(loaded, CheckoutError):
            return CheckoutResult.failed(loaded)
        session = loaded
        state = session.state
        if state.submitting:
            return CheckoutResult.failed(CheckoutError(ErrorKind.SUBMISSION_IN_PROGRESS), session)

        state.mark_cart_changed()
        if state.applied_coupon is None:
            return CheckoutResult(session=session)

        code = state.applied_coupon.code
        lines = await self._cart_lines(session)
        if isinstance(lines, CheckoutError):
            # Coupon validity is unknown; drop it rather than keep a wrong discount
            state.clear_coupon()
            return CheckoutResult(session=session, notice=f"Discount code {code} was removed")

        result = await self._revalidate_coupon(session, cart_total(lines, state.currency))
        return CheckoutResult(session=session, notice=self._coupon_notice(result, code))

    # ------------------------------------------------------------------
    # Pricing
    # ------------------------------------------------------------------

    async def get_pricing(self, checkout_id: str) -> PricingResult:
        """Compute the current order totals and shipping options."""
        loaded = self._load(checkout_id)
        if isinstance(loaded, CheckoutError):
            return PricingResult(success=False, error=loaded)
        session = loaded
        state = session.state

        lines = await self._cart_lines(session)
        if isinstance(lines, CheckoutError):
            return PricingResult(success=False, error=lines)
        settings = await self.settings_provider.get()

        total = cart_total(lines, state.currency)
        code = state.applied_coupon.code if state.applied_coupon else None
        coupon_result = await self._revalidate_coupon(session, total)
        stale = self._stale_coupon(session, total)
        if stale:
            return PricingResult(success=False, error=stale)

        return PricingResult(
            breakdown=self._price(session, lines, settings),
            shipping_options=shipping_options(settings.shipping, total, self.priority_shipping_price),
            free_shipping_remaining=free_shipping_remaining(total, settings.shipping),
            notice=self._coupon_notice(coupon_result, code),
        )

    # ------------------------------------------------------------------
    # Order placement
    # ------------------------------------------------------------------

    async def place_order(self, checkout_id: str) -> PlaceOrderResult:
        """Submit the order.

        A second call while the first is running joins it and gets the
        same order. On success the session is replaced by a completed
        record, so a retry after success answers with the same order.
        """
        completed = self.repository.completed(checkout_id)
        if completed is not None:
            logger.info("Order already placed for checkout", checkout_id=checkout_id, order_id=completed.order_id)
            return PlaceOrderResult(order_id=completed.order_id, redirect_path=completed.redirect_path)

        loaded = self._load(checkout_id)
        if isinstance(loaded, CheckoutError):
            return PlaceOrderResult(success=False, error=loaded)
        session = loaded
        state = session.state

        joining = state.submitting
        if not joining:
            busy = self._acquire(session, PLACE_ORDER)
            if busy:
                return PlaceOrderResult(success=False, error=busy)
        try:
            lines = await self._cart_lines(session)
            if isinstance(lines, CheckoutError):
                return PlaceOrderResult(success=False, error=lines)
            settings = await self.settings_provider.get()
            total = cart_total(lines, state.currency)
            await self._revalidate_coupon(session, total)
            stale = None if joining else self._stale_coupon(session, total)
            if stale:
                return PlaceOrderResult(success=False, error=stale)
            breakdown = self._price(session, lines, settings)

            result = await self.order_submitter.submit(state, breakdown, lines, cart=session.cart)
            if not result.success:
                error = result.error
                if error is not None and error.details.get("missing") == ["payment"] and state.has_payment():
                    # Total moved since the card was charged
                    state.clear_payment()
                    state.move_to(CheckoutStep.PAYMENT)
                return PlaceOrderResult(success=False, error=error)

            record = self.repository.complete(session.id, result.order_id, result.redirect_path)
            return PlaceOrderResult(order_id=record.order_id, redirect_path=record.redirect_path)
        finally:
            if not joining:
                self._release(session)
