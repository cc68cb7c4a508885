"""Checkout API endpoints.

Provides endpoints for the buyer-facing checkout flow:
- POST /checkouts - start a checkout for a cart
- GET /checkouts/{id} - current session state
- PUT /checkouts/{id}/guest-info, /shipping-address, /shipping-method - step submits
- POST /checkouts/{id}/payment, /payment/saved-card - payment step
- POST /checkouts/{id}/advance, /retreat, /jump - navigation
- POST/DELETE /checkouts/{id}/coupon - discount codes
- POST /checkouts/{id}/cart-changed - cart edit notification
- GET /checkouts/{id}/pricing - order totals
- POST /checkouts/{id}/place-order - submit the order
- DELETE /checkouts/{id} - abandon
"""

from collections.abc import Callable
from typing import Annotated

from fastapi import APIRouter, Depends, Header, Request, Response, status

from checkout_engine.api.errors import checkout_http_error
from checkout_engine.api.schemas import (
    AddressSchema,
    CheckoutCreateRequest,
    CheckoutResponse,
    CouponRequest,
    CouponSchema,
    ErrorResponse,
    GuestInformationRequest,
    GuestInformationSchema,
    JumpRequest,
    PaymentRequest,
    PaymentSchema,
    PlaceOrderResponse,
    PriceSchema,
    PricingResponse,
    SavedCardRequest,
    ShippingMethodRequest,
    ShippingMethodSchema,
    ShippingOptionSchema,
    StepSchema,
)
from checkout_engine.application.checkout_service import (
    CheckoutResult,
    CheckoutService,
    CheckoutSession,
)
from checkout_engine.application.ports import Cart
from checkout_engine.domain.exceptions import CheckoutError, ErrorKind
from checkout_engine.domain.pricing import ShippingOption
from checkout_engine.domain.value_objects import (
    CollectedCardData,
    GuestInformation,
    Money,
    ShippingAddress,
    ShippingMethod,
)

router = APIRouter(prefix="/checkouts", tags=["Checkouts"])

ERROR_RESPONSES = {
    401: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
    422: {"model": ErrorResponse},
}


# ============================================================================
# Dependencies
# ============================================================================


def get_service(request: Request) -> CheckoutService:
    """Get the checkout service of the running app."""
    return request.app.state.checkout_service


def get_cart_factory(request: Request) -> Callable[[str], Cart]:
    """Get the factory binding a cart ID to a cart collaborator."""
    return request.app.state.cart_factory


def is_authenticated(
    x_customer_id: Annotated[str | None, Header()] = None,
) -> bool:
    """The storefront gateway sets X-Customer-ID for logged-in buyers."""
    return bool(x_customer_id)


# ============================================================================
# Converters
# ============================================================================


def money_to_schema(money: Money) -> PriceSchema:
    return PriceSchema(
        amount=money.amount_cents,
        currency=money.currency,
        formatted=str(money.to_decimal()),
    )


def address_to_schema(address: ShippingAddress) -> AddressSchema:
    return AddressSchema(
        full_name=address.full_name,
        address_line1=address.address_line1,
        address_line2=address.address_line2,
        city=address.city,
        region=address.region,
        postal_code=address.postal_code,
        country=address.country,
        phone=address.phone,
    )


def address_from_schema(schema: AddressSchema) -> ShippingAddress:
    return ShippingAddress(
        full_name=schema.full_name,
        address_line1=schema.address_line1,
        address_line2=schema.address_line2,
        city=schema.city,
        region=schema.region,
        postal_code=schema.postal_code,
        country=schema.country,
        phone=schema.phone,
    )


def method_to_schema(method: ShippingMethod) -> ShippingMethodSchema:
    return ShippingMethodSchema(
        id=method.id,
        name=method.name,
        description=method.description,
        estimated_delivery=method.estimated_delivery,
        price=money_to_schema(method.price),
    )


def option_to_schema(option: ShippingOption) -> ShippingOptionSchema:
    method = option.method
    return ShippingOptionSchema(
        id=method.id,
        name=method.name,
        description=method.description,
        estimated_delivery=method.estimated_delivery,
        price=money_to_schema(method.price),
        charged_price=money_to_schema(option.charged_price),
        free_shipping_applied=option.free_shipping_applied,
    )


def session_to_response(session: CheckoutSession, notice: str | None = None) -> CheckoutResponse:
    """Convert a checkout session to response schema."""
    state = session.state
    machine = session.machine()
    reachable = set(machine.reachable_steps())

    steps = [
        StepSchema(
            step=step,
            complete=machine.is_complete(step),
            reachable=step in reachable,
            completion_info=machine.completion_info(step),
        )
        for step in machine.steps
    ]

    guest = None
    if state.guest_information:
        guest = GuestInformationSchema(
            email=state.guest_information.email,
            create_account=state.guest_information.create_account,
            marketing_opt_in=state.guest_information.marketing_opt_in,
        )

    payment = None
    if state.payment_outcome:
        outcome = state.payment_outcome
        payment = PaymentSchema(
            card_number_masked=outcome.card_number_masked,
            cardholder_name=outcome.cardholder_name,
            expiry_display=outcome.expiry_display,
            card_type=outcome.card_type,
            saved_card_id=outcome.saved_card_id,
            payment_reference=outcome.payment_reference,
        )

    coupon = None
    if state.applied_coupon:
        applied = state.applied_coupon
        coupon = CouponSchema(
            code=applied.code,
            discount_type=applied.coupon.discount_type.value,
            discount_value=str(applied.coupon.discount_value),
            discount=money_to_schema(applied.discount_amount),
        )

    return CheckoutResponse(
        id=session.id,
        authenticated=state.authenticated,
        current_step=state.current_step,
        steps=steps,
        guest_information=guest,
        shipping_address=address_to_schema(state.shipping_address) if state.shipping_address else None,
        shipping_method=method_to_schema(state.shipping_method) if state.shipping_method else None,
        payment=payment,
        billing_same_as_shipping=state.billing_address_same_as_shipping,
        billing_address=address_to_schema(state.billing_address) if state.billing_address else None,
        coupon=coupon,
        submitting=state.submitting,
        revision=state.revision,
        notice=notice,
    )


def result_to_response(result: CheckoutResult) -> CheckoutResponse:
    """Render a service result or raise its error."""
    if not result.success or result.session is None:
        raise checkout_http_error(result.error, result.redirect_path)
    return session_to_response(result.session, result.notice)


# ============================================================================
# Session Endpoints
# ============================================================================


@router.post(
    "",
    response_model=CheckoutResponse,
    status_code=status.HTTP_201_CREATED,
    responses=ERROR_RESPONSES,
    summary="Start checkout",
    description="Start a checkout session for a cart. Anonymous buyers begin at guest-info.",
)
async def start_checkout(
    request: CheckoutCreateRequest,
    service: Annotated[CheckoutService, Depends(get_service)],
    cart_factory: Annotated[Callable[[str], Cart], Depends(get_cart_factory)],
    authenticated: Annotated[bool, Depends(is_authenticated)],
) -> CheckoutResponse:
    """Start a checkout.

    Raises:
        HTTPException: AUTH_REQUIRED (with login redirect) or EMPTY_CART.
    """
    result = await service.start_checkout(cart_factory(request.cart_id), authenticated)
    return result_to_response(result)


@router.get(
    "/{checkout_id}",
    response_model=CheckoutResponse,
    responses=ERROR_RESPONSES,
    summary="Get checkout",
)
async def get_checkout(
    checkout_id: str,
    service: Annotated[CheckoutService, Depends(get_service)],
) -> CheckoutResponse:
    session = service.get_session(checkout_id)
    if session is None:
        raise checkout_http_error(
            CheckoutError(ErrorKind.SESSION_NOT_FOUND, f"Checkout not found: {checkout_id}")
        )
    return session_to_response(session)


@router.delete(
    "/{checkout_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses=ERROR_RESPONSES,
    summary="Abandon checkout",
)
async def abandon_checkout(
    checkout_id: str,
    service: Annotated[CheckoutService, Depends(get_service)],
) -> Response:
    result = await service.abandon(checkout_id)
    if not result.success:
        raise checkout_http_error(result.error)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ============================================================================
# Step Endpoints
# ============================================================================


@router.put(
    "/{checkout_id}/guest-info",
    response_model=CheckoutResponse,
    responses=ERROR_RESPONSES,
    summary="Submit guest information",
)
async def submit_guest_information(
    checkout_id: str,
    request: GuestInformationRequest,
    service: Annotated[CheckoutService, Depends(get_service)],
) -> CheckoutResponse:
    info = GuestInformation(
        email=request.email.strip(),
        create_account=request.create_account,
        password=request.password,
        marketing_opt_in=request.marketing_opt_in,
    )
    return result_to_response(await service.submit_guest_information(checkout_id, info))


@router.put(
    "/{checkout_id}/shipping-address",
    response_model=CheckoutResponse,
    responses=ERROR_RESPONSES,
    summary="Submit shipping address",
)
async def submit_shipping_address(
    checkout_id: str,
    request: AddressSchema,
    service: Annotated[CheckoutService, Depends(get_service)],
) -> CheckoutResponse:
    address = address_from_schema(request)
    return result_to_response(await service.submit_shipping_address(checkout_id, address))


@router.put(
    "/{checkout_id}/shipping-method",
    response_model=CheckoutResponse,
    responses=ERROR_RESPONSES,
    summary="Select shipping method",
)
async def select_shipping_method(
    checkout_id: str,
    request: ShippingMethodRequest,
    service: Annotated[CheckoutService, Depends(get_service)],
) -> CheckoutResponse:
    return result_to_response(await service.select_shipping_method(checkout_id, request.method_id))


@router.post(
    "/{checkout_id}/payment",
    response_model=CheckoutResponse,
    responses={**ERROR_RESPONSES, 402: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
    summary="Pay with a new card",
    description="Create a payment intent for the current total and confirm it with the collected card.",
)
async def submit_payment(
    checkout_id: str,
    request: PaymentRequest,
    service: Annotated[CheckoutService, Depends(get_service)],
) -> CheckoutResponse:
    card_data = CollectedCardData(
        payment_method_token=request.payment_method_token,
        cardholder_name=request.cardholder_name,
    )
    billing = address_from_schema(request.billing_address) if request.billing_address else None
    result = await service.submit_payment(
        checkout_id,
        card_data,
        billing_same_as_shipping=request.billing_same_as_shipping,
        billing_address=billing,
    )
    return result_to_response(result)


@router.post(
    "/{checkout_id}/payment/saved-card",
    response_model=CheckoutResponse,
    responses=ERROR_RESPONSES,
    summary="Pay with a saved card",
)
async def use_saved_card(
    checkout_id: str,
    request: SavedCardRequest,
    service: Annotated[CheckoutService, Depends(get_service)],
) -> CheckoutResponse:
    result = await service.use_saved_card(
        checkout_id,
        saved_card_id=request.saved_card_id,
        last4=request.last4,
        card_type=request.card_type,
        expiry_display=request.expiry_display,
        cardholder_name=request.cardholder_name,
    )
    return result_to_response(result)


# ============================================================================
# Navigation Endpoints
# ============================================================================


@router.post("/{checkout_id}/advance", response_model=CheckoutResponse, responses=ERROR_RESPONSES)
async def advance(
    checkout_id: str,
    service: Annotated[CheckoutService, Depends(get_service)],
) -> CheckoutResponse:
    return result_to_response(await service.advance(checkout_id))


@router.post("/{checkout_id}/retreat", response_model=CheckoutResponse, responses=ERROR_RESPONSES)
async def retreat(
    checkout_id: str,
    service: Annotated[CheckoutService, Depends(get_service)],
) -> CheckoutResponse:
    return result_to_response(await service.retreat(checkout_id))


@router.post("/{checkout_id}/jump", response_model=CheckoutResponse, responses=ERROR_RESPONSES)
async def jump_to(
    checkout_id: str,
    request: JumpRequest,
    service: Annotated[CheckoutService, Depends(get_service)],
) -> CheckoutResponse:
    return result_to_response(await service.jump_to(checkout_id, request.step))


# ============================================================================
# Coupon and Cart Endpoints
# ============================================================================


@router.post(
    "/{checkout_id}/coupon",
    response_model=CheckoutResponse,
    responses=ERROR_RESPONSES,
    summary="Apply discount code",
)
async def apply_coupon(
    checkout_id: str,
    request: CouponRequest,
    service: Annotated[CheckoutService, Depends(get_service)],
) -> CheckoutResponse:
    return result_to_response(await service.apply_coupon(checkout_id, request.code))


@router.delete(
    "/{checkout_id}/coupon",
    response_model=CheckoutResponse,
    responses=ERROR_RESPONSES,
    summary="Remove discount code",
)
async def remove_coupon(
    checkout_id: str,
    service: Annotated[CheckoutService, Depends(get_service)],
) -> CheckoutResponse:
    return result_to_response(await service.remove_coupon(checkout_id))


@router.post(
    "/{checkout_id}/cart-changed",
    response_model=CheckoutResponse,
    responses=ERROR_RESPONSES,
    summary="Notify cart change",
    description="Re-validates the applied coupon against the new cart total.",
)
async def cart_changed(
    checkout_id: str,
    service: Annotated[CheckoutService, Depends(get_service)],
) -> CheckoutResponse:
    return result_to_response(await service.cart_changed(checkout_id))


# ============================================================================
# Pricing and Order Endpoints
# ============================================================================


@router.get(
    "/{checkout_id}/pricing",
    response_model=PricingResponse,
    responses=ERROR_RESPONSES,
    summary="Get order totals",
)
async def get_pricing(
    checkout_id: str,
    service: Annotated[CheckoutService, Depends(get_service)],
) -> PricingResponse:
    result = await service.get_pricing(checkout_id)
    if not result.success or result.breakdown is None:
        raise checkout_http_error(result.error)

    breakdown = result.breakdown
    return PricingResponse(
        cart_total=money_to_schema(breakdown.cart_total),
        subtotal_ex_vat=money_to_schema(breakdown.subtotal_ex_vat),
        tax=money_to_schema(breakdown.tax),
        tax_rate=str(breakdown.tax_rate),
        shipping=money_to_schema(breakdown.shipping),
        discount=money_to_schema(breakdown.discount),
        total=money_to_schema(breakdown.total),
        free_shipping_applied=breakdown.free_shipping_applied,
        free_shipping_remaining=(
            money_to_schema(result.free_shipping_remaining)
            if result.free_shipping_remaining is not None
            else None
        ),
        shipping_options=[option_to_schema(o) for o in result.shipping_options or []],
        notice=result.notice,
    )


@router.post(
    "/{checkout_id}/place-order",
    response_model=PlaceOrderResponse,
    responses={**ERROR_RESPONSES, 502: {"model": ErrorResponse}, 504: {"model": ErrorResponse}},
    summary="Place order",
    description="Submit the order. Retries reuse the session's idempotency key.",
)
async def place_order(
    checkout_id: str,
    service: Annotated[CheckoutService, Depends(get_service)],
) -> PlaceOrderResponse:
    result = await service.place_order(checkout_id)
    if not result.success or result.order_id is None or result.redirect_path is None:
        raise checkout_http_error(result.error)
    return PlaceOrderResponse(order_id=result.order_id, redirect_path=result.redirect_path)
