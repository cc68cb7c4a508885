"""Tests for the checkout application service."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from checkout_engine.application.checkout_service import CheckoutService, CheckoutSession, CheckoutSessionRepository
from checkout_engine.domain import (
    CartLine,
    CheckoutState,
    CheckoutStep,
    CollectedCardData,
    ErrorKind,
    GuestInformation,
    Money,
    ShippingAddress,
)
from checkout_engine.infrastructure.in_memory import InMemoryCart, InMemoryOrderStore
from checkout_engine.infrastructure.payment_gateway import GatewayConfirmation
from checkout_engine.infrastructure.service_clients import ServiceClientError

CARD = CollectedCardData(payment_method_token="pm_card_visa", cardholder_name="Ana Pop")


async def _start(service: CheckoutService, cart: InMemoryCart, authenticated: bool = False) -> str:
    result = await service.start_checkout(cart, authenticated=authenticated)
    assert result.success, result.error
    assert result.session is not None
    return result.session.id


async def _to_payment_step(
    service: CheckoutService,
    cart: InMemoryCart,
    guest: GuestInformation,
    address: ShippingAddress,
) -> str:
    """Start a guest checkout and fill every step before payment."""
    checkout_id = await _start(service, cart)
    assert (await service.submit_guest_information(checkout_id, guest)).success
    assert (await service.submit_shipping_address(checkout_id, address)).success
    assert (await service.select_shipping_method(checkout_id, "standard")).success
    return checkout_id


async def _to_review_step(
    service: CheckoutService,
    cart: InMemoryCart,
    guest: GuestInformation,
    address: ShippingAddress,
) -> str:
    checkout_id = await _to_payment_step(service, cart, guest, address)
    assert (await service.submit_payment(checkout_id, CARD)).success
    return checkout_id


def _step(service: CheckoutService, checkout_id: str) -> CheckoutStep:
    session = service.get_session(checkout_id)
    assert session is not None
    return session.state.current_step


class TestStartCheckout:
    """Tests for starting a checkout."""

    @pytest.mark.asyncio
    async def test_guest_starts_at_guest_info(self, checkout_service: CheckoutService, cart: InMemoryCart) -> None:
        result = await checkout_service.start_checkout(cart, authenticated=False)

        assert result.success
        assert result.session is not None
        assert result.session.state.current_step == CheckoutStep.GUEST_INFO
        assert len(checkout_service.repository) == 1

    @pytest.mark.asyncio
    async def test_authenticated_buyer_skips_guest_info(
        self, checkout_service: CheckoutService, cart: InMemoryCart
    ) -> None:
        checkout_id = await _start(checkout_service, cart, authenticated=True)

        assert _step(checkout_service, checkout_id) == CheckoutStep.SHIPPING_ADDRESS

    @pytest.mark.asyncio
    async def test_login_required(self, checkout_service: CheckoutService, cart: InMemoryCart) -> None:
        service = CheckoutService(
            settings_provider=checkout_service.settings_provider,
            coupon_ledger=checkout_service.coupon_ledger,
            payment_adapter=checkout_service.payment_adapter,
            order_submitter=checkout_service.order_submitter,
            require_authentication=True,
        )

        result = await service.start_checkout(cart, authenticated=False)

        assert not result.success
        assert result.error_code == "AUTH_REQUIRED"
        assert result.redirect_path == "/auth/login?redirect=%2Fcheckout"
        assert len(service.repository) == 0

    @pytest.mark.asyncio
    async def test_empty_cart(self, checkout_service: CheckoutService) -> None:
        result = await checkout_service.start_checkout(InMemoryCart([]), authenticated=False)

        assert result.error_code == "EMPTY_CART"
        assert len(checkout_service.repository) == 0

    @pytest.mark.asyncio
    async def test_warms_settings_cache(
        self, checkout_service: CheckoutService, cart: InMemoryCart, settings_source
    ) -> None:
        await _start(checkout_service, cart)

        assert settings_source.tax_calls == 1

    @pytest.mark.asyncio
    async def test_unknown_session(self, checkout_service: CheckoutService) -> None:
        result = await checkout_service.advance("00000000-0000-0000-0000-000000000000")

        assert result.error_code == "SESSION_NOT_FOUND"


class TestStepHandlers:
    """Tests for the step submit handlers."""

    @pytest.mark.asyncio
    async def test_invalid_email_stays_on_step(self, checkout_service: CheckoutService, cart: InMemoryCart) -> None:
        checkout_id = await _start(checkout_service, cart)

        result = await checkout_service.submit_guest_information(checkout_id, GuestInformation(email="not-an-email"))

        assert result.error_code == "STEP_INCOMPLETE"
        assert _step(checkout_service, checkout_id) == CheckoutStep.GUEST_INFO

    @pytest.mark.asyncio
    async def test_authenticated_buyer_cannot_submit_guest_info(
        self, checkout_service: CheckoutService, cart: InMemoryCart, guest_information: GuestInformation
    ) -> None:
        checkout_id = await _start(checkout_service, cart, authenticated=True)

        result = await checkout_service.submit_guest_information(checkout_id, guest_information)

        assert result.error_code == "STEP_INCOMPLETE"

    @pytest.mark.asyncio
    async def test_incomplete_address_reports_missing_fields(
        self, checkout_service: CheckoutService, cart: InMemoryCart
    ) -> None:
        checkout_id = await _start(checkout_service, cart, authenticated=True)
        address = ShippingAddress(
            full_name="Ana Pop", address_line1="", city="Cluj-Napoca", region="Cluj", postal_code="", country="RO"
        )

        result = await checkout_service.submit_shipping_address(checkout_id, address)

        assert result.error_code == "STEP_INCOMPLETE"
        assert result.error is not None
        assert result.error.details["missing_fields"] == ["address_line1", "postal_code"]
        assert _step(checkout_service, checkout_id) == CheckoutStep.SHIPPING_ADDRESS

    @pytest.mark.asyncio
    async def test_unknown_shipping_method(
        self, checkout_service: CheckoutService, cart: InMemoryCart, shipping_address: ShippingAddress
    ) -> None:
        checkout_id = await _start(checkout_service, cart, authenticated=True)
        await checkout_service.submit_shipping_address(checkout_id, shipping_address)

        result = await checkout_service.select_shipping_method(checkout_id, "teleport")

        assert result.error_code == "STEP_INCOMPLETE"
        assert result.error is not None
        assert result.error.details["available"] == ["express", "priority", "standard"]

    @pytest.mark.asyncio
    async def test_editing_earlier_step_keeps_position(
        self,
        checkout_service: CheckoutService,
        cart: InMemoryCart,
        guest_information: GuestInformation,
        shipping_address: ShippingAddress,
    ) -> None:
        checkout_id = await _to_payment_step(checkout_service, cart, guest_information, shipping_address)

        result = await checkout_service.submit_guest_information(
            checkout_id, GuestInformation(email="ana.pop@example.com")
        )

        assert result.success
        assert result.transition is None
        assert _step(checkout_service, checkout_id) == CheckoutStep.PAYMENT

    @pytest.mark.asyncio
    async def test_new_card_payment(
        self,
        checkout_service: CheckoutService,
        cart: InMemoryCart,
        guest_information: GuestInformation,
        shipping_address: ShippingAddress,
        payment_gateway: MagicMock,
    ) -> None:
        checkout_id = await _to_payment_step(checkout_service, cart, guest_information, shipping_address)

        result = await checkout_service.submit_payment(checkout_id, CARD)

        assert result.success
        assert _step(checkout_service, checkout_id) == CheckoutStep.REVIEW
        payment_gateway.create_payment_intent.assert_awaited_once_with(10599, "EUR")
        billing = payment_gateway.confirm_payment_intent.await_args.args[2]
        assert billing["email"] == "ana@example.com"
        assert billing["address"]["city"] == "Cluj-Napoca"
        session = checkout_service.get_session(checkout_id)
        assert session is not None
        outcome = session.state.payment_outcome
        assert outcome is not None
        assert outcome.card_number_masked == "•••• •••• •••• 4242"
        assert outcome.amount_charged == Money.parse("105.99")

    @pytest.mark.asyncio
    async def test_declined_card(
        self,
        checkout_service: CheckoutService,
        cart: InMemoryCart,
        guest_information: GuestInformation,
        shipping_address: ShippingAddress,
        payment_gateway: MagicMock,
    ) -> None:
        async def decline(client_secret, payment_method, billing_details=None):
            return GatewayConfirmation(intent_id="pi_1", status="declined", decline_message="Card expired")

        payment_gateway.confirm_payment_intent.side_effect = decline
        checkout_id = await _to_payment_step(checkout_service, cart, guest_information, shipping_address)

        result = await checkout_service.submit_payment(checkout_id, CARD)

        assert result.error_code == "PAYMENT_DECLINED"
        assert result.error is not None
        assert result.error.message == "Card expired"
        session = checkout_service.get_session(checkout_id)
        assert session is not None
        assert session.state.payment_outcome is None
        assert session.state.in_flight is None
        assert session.state.current_step == CheckoutStep.PAYMENT

    @pytest.mark.asyncio
    async def test_separate_billing_address_must_be_complete(
        self,
        checkout_service: CheckoutService,
        cart: InMemoryCart,
        guest_information: GuestInformation,
        shipping_address: ShippingAddress,
        payment_gateway: MagicMock,
    ) -> None:
        checkout_id = await _to_payment_step(checkout_service, cart, guest_information, shipping_address)

        result = await checkout_service.submit_payment(checkout_id, CARD, billing_same_as_shipping=False)

        assert result.error_code == "STEP_INCOMPLETE"
        payment_gateway.create_payment_intent.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_saved_card_skips_gateway(
        self,
        checkout_service: CheckoutService,
        cart: InMemoryCart,
        guest_information: GuestInformation,
        shipping_address: ShippingAddress,
        payment_gateway: MagicMock,
    ) -> None:
        checkout_id = await _to_payment_step(checkout_service, cart, guest_information, shipping_address)

        result = await checkout_service.use_saved_card(
            checkout_id, "card_123", last4="1881", card_type="mastercard", expiry_display="01/28"
        )

        assert result.success
        assert _step(checkout_service, checkout_id) == CheckoutStep.REVIEW
        payment_gateway.create_payment_intent.assert_not_awaited()


class TestNavigation:
    """Tests for step navigation."""

    @pytest.mark.asyncio
    async def test_jump_to_review_without_payment(
        self,
        checkout_service: CheckoutService,
        cart: InMemoryCart,
        guest_information: GuestInformation,
        shipping_address: ShippingAddress,
    ) -> None:
        checkout_id = await _to_payment_step(checkout_service, cart, guest_information, shipping_address)

        result = await checkout_service.jump_to(checkout_id, CheckoutStep.REVIEW)

        assert result.error_code == "STEP_INCOMPLETE"
        assert _step(checkout_service, checkout_id) == CheckoutStep.PAYMENT

    @pytest.mark.asyncio
    async def test_retreat_and_advance(
        self,
        checkout_service: CheckoutService,
        cart: InMemoryCart,
        guest_information: GuestInformation,
        shipping_address: ShippingAddress,
    ) -> None:
        checkout_id = await _to_payment_step(checkout_service, cart, guest_information, shipping_address)

        assert (await checkout_service.retreat(checkout_id)).success
        assert _step(checkout_service, checkout_id) == CheckoutStep.SHIPPING_METHOD
        assert (await checkout_service.advance(checkout_id)).success
        assert _step(checkout_service, checkout_id) == CheckoutStep.PAYMENT

    @pytest.mark.asyncio
    async def test_navigation_blocked_while_submitting(
        self, checkout_service: CheckoutService, cart: InMemoryCart
    ) -> None:
        checkout_id = await _start(checkout_service, cart)
        session = checkout_service.get_session(checkout_id)
        assert session is not None
        session.state.in_flight = "place_order"

        result = await checkout_service.retreat(checkout_id)

        assert result.error_code == "SUBMISSION_IN_PROGRESS"


class TestCoupons:
    """Tests for coupon handling."""

    @pytest.mark.asyncio
    async def test_apply_coupon_reduces_total(self, checkout_service: CheckoutService, cart: InMemoryCart) -> None:
        checkout_id = await _start(checkout_service, cart)

        result = await checkout_service.apply_coupon(checkout_id, "save10")
        pricing = await checkout_service.get_pricing(checkout_id)

        assert result.success
        assert pricing.breakdown is not None
        assert pricing.breakdown.discount == Money.parse("10.00")
        assert pricing.breakdown.total == Money.parse("90.00")

    @pytest.mark.asyncio
    async def test_rejected_coupon_leaves_state_unchanged(
        self, checkout_service: CheckoutService, cart: InMemoryCart
    ) -> None:
        checkout_id = await _start(checkout_service, cart)
        await checkout_service.apply_coupon(checkout_id, "SAVE10")

        result = await checkout_service.apply_coupon(checkout_id, "BOGUS")

        assert result.error_code == "COUPON_REJECTED"
        session = checkout_service.get_session(checkout_id)
        assert session is not None
        assert session.state.applied_coupon is not None
        assert session.state.applied_coupon.code == "SAVE10"

    @pytest.mark.asyncio
    async def test_remove_coupon(self, checkout_service: CheckoutService, cart: InMemoryCart) -> None:
        checkout_id = await _start(checkout_service, cart)
        await checkout_service.apply_coupon(checkout_id, "SAVE10")

        await checkout_service.remove_coupon(checkout_id)
        pricing = await checkout_service.get_pricing(checkout_id)

        assert pricing.breakdown is not None
        assert pricing.breakdown.discount == Money.zero()

    @pytest.mark.asyncio
    async def test_cart_change_recomputes_discount(
        self, checkout_service: CheckoutService, cart: InMemoryCart, coupon_service
    ) -> None:
        checkout_id = await _start(checkout_service, cart)
        await checkout_service.apply_coupon(checkout_id, "SAVE10")

        cart.replace_lines([CartLine("robot-kit", "Robot kit", Money.parse("60.00"), 1)])
        result = await checkout_service.cart_changed(checkout_id)

        assert result.notice is None
        session = checkout_service.get_session(checkout_id)
        assert session is not None
        assert session.state.discount_amount == Money.parse("6.00")
        assert coupon_service.calls[-1] == ("SAVE10", Money.parse("60.00"))

    @pytest.mark.asyncio
    async def test_cart_change_drops_invalid_coupon(
        self, checkout_service: CheckoutService, cart: InMemoryCart, coupon_service
    ) -> None:
        checkout_id = await _start(checkout_service, cart)
        await checkout_service.apply_coupon(checkout_id, "SAVE10")
        del coupon_service.coupons["SAVE10"]

        cart.replace_lines([CartLine("robot-kit", "Robot kit", Money.parse("60.00"), 1)])
        result = await checkout_service.cart_changed(checkout_id)

        assert result.notice == "Discount code SAVE10 was removed: Coupon not found"
        session = checkout_service.get_session(checkout_id)
        assert session is not None
        assert session.state.applied_coupon is None

    @pytest.mark.asyncio
    async def test_pricing_revalidates_coupon_for_edited_cart(
        self, checkout_service: CheckoutService, cart: InMemoryCart
    ) -> None:
        checkout_id = await _start(checkout_service, cart)
        await checkout_service.apply_coupon(checkout_id, "SAVE10")

        cart.replace_lines([CartLine("robot-kit", "Robot kit", Money.parse("60.00"), 1)])
        pricing = await checkout_service.get_pricing(checkout_id)

        assert pricing.breakdown is not None
        assert pricing.breakdown.discount == Money.parse("6.00")

    @pytest.mark.asyncio
    async def test_coupon_result_after_cart_change_is_stale(
        self, checkout_service: CheckoutService, cart: InMemoryCart, coupon_service
    ) -> None:
        checkout_id = await _start(checkout_service, cart)
        coupon_service.delay = 0.05

        pending = asyncio.ensure_future(checkout_service.apply_coupon(checkout_id, "SAVE10"))
        await asyncio.sleep(0)
        await checkout_service.cart_changed(checkout_id)
        result = await pending

        assert result.error_code == "STALE_RESPONSE"
        session = checkout_service.get_session(checkout_id)
        assert session is not None
        assert session.state.applied_coupon is None

    @pytest.mark.asyncio
    async def test_payment_refuses_discount_for_another_cart(
        self,
        checkout_service: CheckoutService,
        cart: InMemoryCart,
        guest_information: GuestInformation,
        shipping_address: ShippingAddress,
        coupon_service,
        payment_gateway: MagicMock,
    ) -> None:
        checkout_id = await _to_payment_step(checkout_service, cart, guest_information, shipping_address)
        await checkout_service.apply_coupon(checkout_id, "SAVE10")
        cart.replace_lines([CartLine("robot-kit", "Robot kit", Money.parse("100.00"), 2)])
        coupon_service.delay = 0.01

        pending = asyncio.ensure_future(checkout_service.submit_payment(checkout_id, CARD))
        await asyncio.sleep(0)
        cart.replace_lines([CartLine("robot-kit", "Robot kit", Money.parse("100.00"), 3)])
        await checkout_service.cart_changed(checkout_id)
        result = await pending

        assert result.error_code == "STALE_RESPONSE"
        payment_gateway.create_payment_intent.assert_not_awaited()
        session = checkout_service.get_session(checkout_id)
        assert session is not None
        assert not session.state.has_payment()
        assert session.state.discount_amount == Money.parse("30.00")

    @pytest.mark.asyncio
    async def test_concurrent_mutation_is_rejected(
        self, checkout_service: CheckoutService, cart: InMemoryCart, coupon_service
    ) -> None:
        checkout_id = await _start(checkout_service, cart)
        coupon_service.delay = 0.05

        pending = asyncio.ensure_future(checkout_service.apply_coupon(checkout_id, "SAVE10"))
        await asyncio.sleep(0)
        concurrent = await checkout_service.remove_coupon(checkout_id)
        applied = await pending

        assert concurrent.error_code == "SUBMISSION_IN_PROGRESS"
        assert applied.success


class TestPricing:
    """Tests for pricing through the service."""

    @pytest.mark.asyncio
    async def test_pricing_with_selected_method(
        self,
        checkout_service: CheckoutService,
        cart: InMemoryCart,
        guest_information: GuestInformation,
        shipping_address: ShippingAddress,
    ) -> None:
        checkout_id = await _to_payment_step(checkout_service, cart, guest_information, shipping_address)

        pricing = await checkout_service.get_pricing(checkout_id)

        assert pricing.success
        assert pricing.breakdown is not None
        assert pricing.breakdown.subtotal_ex_vat == Money.parse("82.64")
        assert pricing.breakdown.tax == Money.parse("17.36")
        assert pricing.breakdown.total == Money.parse("105.99")
        assert pricing.shipping_options is not None
        assert [option.method.id for option in pricing.shipping_options] == ["standard", "express", "priority"]
        assert pricing.free_shipping_remaining is None

    @pytest.mark.asyncio
    async def test_settings_outage_prices_with_defaults(
        self, checkout_service: CheckoutService, cart: InMemoryCart, settings_source
    ) -> None:
        settings_source.error = ServiceClientError("store-settings", "Service unavailable", status_code=503)
        checkout_id = await _start(checkout_service, cart)

        pricing = await checkout_service.get_pricing(checkout_id)

        assert pricing.success
        assert pricing.breakdown is not None
        assert pricing.breakdown.tax == Money.parse("17.36")

    @pytest.mark.asyncio
    async def test_cart_outage_is_reported(self, checkout_service: CheckoutService, cart: InMemoryCart) -> None:
        checkout_id = await _start(checkout_service, cart)
        session = checkout_service.get_session(checkout_id)
        assert session is not None

        class BrokenCart:
            async def get_lines(self):
                raise ServiceClientError("cart", "Connection refused")

            async def clear(self) -> None:
                pass

        session.cart = BrokenCart()
        pricing = await checkout_service.get_pricing(checkout_id)

        assert pricing.error_code == "NETWORK_ERROR"


class TestPlaceOrder:
    """Tests for order placement."""

    @pytest.mark.asyncio
    async def test_full_guest_checkout(
        self,
        checkout_service: CheckoutService,
        cart: InMemoryCart,
        guest_information: GuestInformation,
        shipping_address: ShippingAddress,
        order_store: InMemoryOrderStore,
    ) -> None:
        checkout_id = await _to_review_step(checkout_service, cart, guest_information, shipping_address)

        result = await checkout_service.place_order(checkout_id)

        assert result.success
        assert result.order_id is not None
        assert result.redirect_path == f"/checkout/confirmation?orderId={result.order_id}"
        assert checkout_service.get_session(checkout_id) is None
        assert await cart.get_lines() == []
        stored = order_store.get(result.order_id)
        assert stored is not None
        assert stored.payload["total"] == "105.99"
        assert stored.payload["payment"]["paymentIntentId"] == "pi_1"

    @pytest.mark.asyncio
    async def test_double_click_places_one_order(
        self,
        checkout_service: CheckoutService,
        cart: InMemoryCart,
        guest_information: GuestInformation,
        shipping_address: ShippingAddress,
        order_store: InMemoryOrderStore,
    ) -> None:
        checkout_id = await _to_review_step(checkout_service, cart, guest_information, shipping_address)

        first, second = await asyncio.gather(
            checkout_service.place_order(checkout_id),
            checkout_service.place_order(checkout_id),
        )

        assert first.success and second.success
        assert first.order_id == second.order_id
        assert order_store.create_calls == 1

    @pytest.mark.asyncio
    async def test_incomplete_checkout(self, checkout_service: CheckoutService, cart: InMemoryCart) -> None:
        checkout_id = await _start(checkout_service, cart)

        result = await checkout_service.place_order(checkout_id)

        assert result.error_code == "INCOMPLETE_CHECKOUT"
        session = checkout_service.get_session(checkout_id)
        assert session is not None
        assert session.state.in_flight is None

    @pytest.mark.asyncio
    async def test_total_change_after_payment_requires_new_payment(
        self,
        checkout_service: CheckoutService,
        cart: InMemoryCart,
        guest_information: GuestInformation,
        shipping_address: ShippingAddress,
        order_store: InMemoryOrderStore,
    ) -> None:
        checkout_id = await _to_review_step(checkout_service, cart, guest_information, shipping_address)
        await checkout_service.apply_coupon(checkout_id, "SAVE10")

        result = await checkout_service.place_order(checkout_id)

        assert result.error_code == "INCOMPLETE_CHECKOUT"
        assert order_store.create_calls == 0
        session = checkout_service.get_session(checkout_id)
        assert session is not None
        assert session.state.payment_outcome is None
        assert session.state.current_step == CheckoutStep.PAYMENT

    @pytest.mark.asyncio
    async def test_order_failure_keeps_session(
        self,
        checkout_service: CheckoutService,
        cart: InMemoryCart,
        guest_information: GuestInformation,
        shipping_address: ShippingAddress,
    ) -> None:
        checkout_id = await _to_review_step(checkout_service, cart, guest_information, shipping_address)
        session = checkout_service.get_session(checkout_id)
        assert session is not None
        key = session.state.idempotency_key

        class FailingOrders:
            async def create_order(self, payload, idempotency_key):
                raise ServiceClientError("orders", "Out of stock: Robot kit", status_code=409)

        checkout_service.order_submitter.orders = FailingOrders()
        result = await checkout_service.place_order(checkout_id)

        assert result.error_code == "ORDER_CREATION_FAILED"
        assert result.error is not None
        assert result.error.message == "Out of stock: Robot kit"
        assert checkout_service.get_session(checkout_id) is session
        assert session.state.idempotency_key == key
        assert session.state.current_step == CheckoutStep.REVIEW

    @pytest.mark.asyncio
    async def test_retry_after_success_returns_same_order(
        self,
        checkout_service: CheckoutService,
        cart: InMemoryCart,
        guest_information: GuestInformation,
        shipping_address: ShippingAddress,
        order_store: InMemoryOrderStore,
    ) -> None:
        checkout_id = await _to_review_step(checkout_service, cart, guest_information, shipping_address)

        first = await checkout_service.place_order(checkout_id)
        retry = await checkout_service.place_order(checkout_id)

        assert retry.success
        assert retry.order_id == first.order_id
        assert retry.redirect_path == first.redirect_path
        assert order_store.create_calls == 1

    @pytest.mark.asyncio
    async def test_completed_checkout_is_forgotten_after_ttl(
        self,
        checkout_service: CheckoutService,
        cart: InMemoryCart,
        guest_information: GuestInformation,
        shipping_address: ShippingAddress,
    ) -> None:
        clock = MagicMock(return_value=1000.0)
        checkout_service.repository = CheckoutSessionRepository(completed_ttl_seconds=60.0, clock=clock)
        checkout_id = await _to_review_step(checkout_service, cart, guest_information, shipping_address)
        assert (await checkout_service.place_order(checkout_id)).success

        clock.return_value = 1061.0
        result = await checkout_service.place_order(checkout_id)

        assert result.error_code == "SESSION_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_stale_coupon_is_not_ordered(
        self,
        checkout_service: CheckoutService,
        cart: InMemoryCart,
        guest_information: GuestInformation,
        shipping_address: ShippingAddress,
        order_store: InMemoryOrderStore,
    ) -> None:
        checkout_id = await _to_payment_step(checkout_service, cart, guest_information, shipping_address)
        await checkout_service.use_saved_card(checkout_id, "card_1", "4242", "visa", "12/27")
        await checkout_service.apply_coupon(checkout_id, "SAVE10")
        cart.replace_lines([CartLine("robot-kit", "Robot kit", Money.parse("100.00"), 2)])
        # Re-validation came back after another cart change and was discarded
        checkout_service._revalidate_coupon = AsyncMock(return_value=None)

        result = await checkout_service.place_order(checkout_id)

        assert result.error_code == "STALE_RESPONSE"
        assert order_store.create_calls == 0
        session = checkout_service.get_session(checkout_id)
        assert session is not None
        assert session.state.in_flight is None

    @pytest.mark.asyncio
    async def test_cart_change_during_submission_is_rejected(
        self,
        checkout_service: CheckoutService,
        cart: InMemoryCart,
        guest_information: GuestInformation,
        shipping_address: ShippingAddress,
        order_store: InMemoryOrderStore,
    ) -> None:
        checkout_id = await _to_payment_step(checkout_service, cart, guest_information, shipping_address)
        await checkout_service.use_saved_card(checkout_id, "card_1", "4242", "visa", "12/27")
        await checkout_service.apply_coupon(checkout_id, "SAVE10")
        session = checkout_service.get_session(checkout_id)
        assert session is not None
        revision = session.state.revision

        class SlowOrders:
            async def create_order(self, payload, idempotency_key):
                await asyncio.sleep(0.01)
                return await order_store.create_order(payload, idempotency_key)

        checkout_service.order_submitter.orders = SlowOrders()
        pending = asyncio.ensure_future(checkout_service.place_order(checkout_id))
        await asyncio.sleep(0)
        cart.replace_lines([CartLine("robot-kit", "Robot kit", Money.parse("100.00"), 2)])
        changed = await checkout_service.cart_changed(checkout_id)
        placed = await pending

        assert changed.error_code == "SUBMISSION_IN_PROGRESS"
        assert session.state.revision == revision
        assert placed.success
        assert placed.order_id is not None
        stored = order_store.get(placed.order_id)
        assert stored is not None
        assert stored.payload["discount"] == "10.00"

    @pytest.mark.asyncio
    async def test_abandon(self, checkout_service: CheckoutService, cart: InMemoryCart) -> None:
        checkout_id = await _start(checkout_service, cart)

        result = await checkout_service.abandon(checkout_id)

        assert result.success
        assert checkout_service.get_session(checkout_id) is None


class TestCheckoutSessionRepository:
    """Tests for session expiry and completed checkouts."""

    @staticmethod
    def _session() -> CheckoutSession:
        return CheckoutSession(state=CheckoutState.create(authenticated=False), cart=InMemoryCart())

    def test_idle_session_expires_on_access(self) -> None:
        clock = MagicMock(return_value=1000.0)
        repository = CheckoutSessionRepository(session_ttl_seconds=60.0, clock=clock)
        session = self._session()
        repository.save(session)

        clock.return_value = 1059.0
        assert repository.get(session.id) is session

        clock.return_value = 1118.0
        assert repository.get(session.id) is session

        clock.return_value = 1178.0
        assert repository.get(session.id) is None
        assert len(repository) == 0

    def test_running_mutation_keeps_session_alive(self) -> None:
        clock = MagicMock(return_value=1000.0)
        repository = CheckoutSessionRepository(session_ttl_seconds=60.0, clock=clock)
        session = self._session()
        repository.save(session)
        session.state.in_flight = "place_order"

        clock.return_value = 5000.0

        assert repository.get(session.id) is session

    def test_cleanup_removes_idle_sessions_and_expired_orders(self) -> None:
        clock = MagicMock(return_value=1000.0)
        repository = CheckoutSessionRepository(session_ttl_seconds=60.0, completed_ttl_seconds=120.0, clock=clock)
        idle, ordered = self._session(), self._session()
        repository.save(idle)
        repository.save(ordered)
        repository.complete(ordered.id, "ord_1", "/checkout/confirmation?orderId=ord_1")

        clock.return_value = 1060.0
        assert repository.cleanup_expired() == 1
        assert repository.completed(ordered.id) is not None

        clock.return_value = 1120.0
        assert repository.cleanup_expired() == 1
        assert repository.completed(ordered.id) is None

    def test_save_sweeps_expired_entries(self) -> None:
        clock = MagicMock(return_value=1000.0)
        repository = CheckoutSessionRepository(session_ttl_seconds=60.0, clock=clock)
        repository.save(self._session())

        clock.return_value = 2000.0
        repository.save(self._session())

        assert len(repository) == 1

    def test_complete_replaces_session(self) -> None:
        repository = CheckoutSessionRepository()
        session = self._session()
        repository.save(session)

        record = repository.complete(session.id, "ord_1", "/checkout/confirmation?orderId=ord_1")

        assert repository.get(session.id) is None
        assert repository.completed(session.id) == record
        assert record.order_id == "ord_1"
