"""API schemas for the checkout service.

Pydantic models for request/response validation and serialization.
"""

from typing import Any

from pydantic import BaseModel, Field

from checkout_engine.domain.state_machines import CheckoutStep


# ============================================================================
# Common Schemas
# ============================================================================


class PriceSchema(BaseModel):
    """Price representation."""

    amount: int = Field(..., description="Amount in smallest currency unit (cents)")
    currency: str = Field(default="EUR", description="ISO 4217 currency code")
    formatted: str = Field(..., description="Amount in major units, e.g. '105.99'")


class ErrorResponse(BaseModel):
    """Standard error response.

    All API errors follow this format for consistency.
    """

    error_code: str = Field(..., description="Machine-readable error code")
    message: str = Field(..., description="Human-readable error message")
    details: dict[str, Any] = Field(default_factory=dict, description="Additional error details")
    retryable: bool = Field(default=False, description="Whether retrying can succeed")
    retry_policy: str = Field(default="none", description="none, retry, reenter_payment or redirect")
    redirect_path: str | None = Field(default=None, description="Where to send the buyer")
    request_id: str | None = Field(default=None, description="Request ID for correlation")


# ============================================================================
# Buyer Detail Schemas
# ============================================================================


class AddressSchema(BaseModel):
    """Shipping or billing address.

    Blank fields are accepted; completeness is checked by the step.
    """

    full_name: str = ""
    address_line1: str = ""
    address_line2: str | None = None
    city: str = ""
    region: str = ""
    postal_code: str = ""
    country: str = ""
    phone: str = ""


class GuestInformationRequest(BaseModel):
    """Guest contact details."""

    email: str = Field(..., description="Email for the order confirmation")
    create_account: bool = False
    password: str | None = Field(default=None, description="Password when creating an account")
    marketing_opt_in: bool = False


class GuestInformationSchema(BaseModel):
    """Guest contact details as returned (never includes the password)."""

    email: str
    create_account: bool
    marketing_opt_in: bool


class ShippingMethodRequest(BaseModel):
    """Shipping method selection."""

    method_id: str = Field(..., description="standard, express or priority")


class ShippingMethodSchema(BaseModel):
    """A shipping method."""

    id: str
    name: str
    description: str
    estimated_delivery: str
    price: PriceSchema


class ShippingOptionSchema(ShippingMethodSchema):
    """A shipping method with the price this cart would pay."""

    charged_price: PriceSchema
    free_shipping_applied: bool


# ============================================================================
# Payment Schemas
# ============================================================================


class PaymentRequest(BaseModel):
    """New card payment.

    The card itself is collected by the gateway's hosted fields; only the
    resulting payment method token reaches this service.
    """

    payment_method_token: str = Field(..., min_length=1, description="Gateway payment method token")
    cardholder_name: str = Field(..., description="Name on the card")
    billing_same_as_shipping: bool = True
    billing_address: AddressSchema | None = None


class SavedCardRequest(BaseModel):
    """Payment with a stored card."""

    saved_card_id: str = Field(..., min_length=1)
    last4: str = Field(..., min_length=4, max_length=4, pattern=r"^\d{4}$")
    card_type: str = "card"
    expiry_display: str = Field(default="**/**", description="MM/YY")
    cardholder_name: str = ""


class PaymentSchema(BaseModel):
    """Masked payment details."""

    card_number_masked: str
    cardholder_name: str
    expiry_display: str
    card_type: str
    saved_card_id: str | None = None
    payment_reference: str | None = None


# ============================================================================
# Checkout Schemas
# ============================================================================


class CheckoutCreateRequest(BaseModel):
    """Request to start a checkout."""

    cart_id: str = Field(..., min_length=1, description="Cart to check out")


class JumpRequest(BaseModel):
    """Direct navigation to a step."""

    step: CheckoutStep


class CouponRequest(BaseModel):
    """Coupon code as typed by the buyer."""

    code: str = Field(..., description="Discount code")


class CouponSchema(BaseModel):
    """Applied coupon."""

    code: str
    discount_type: str
    discount_value: str
    discount: PriceSchema


class StepSchema(BaseModel):
    """A step of the stepper."""

    step: CheckoutStep
    complete: bool
    reachable: bool
    completion_info: str | None = None


class CheckoutResponse(BaseModel):
    """Checkout session response."""

    id: str
    authenticated: bool
    current_step: CheckoutStep
    steps: list[StepSchema]
    guest_information: GuestInformationSchema | None = None
    shipping_address: AddressSchema | None = None
    shipping_method: ShippingMethodSchema | None = None
    payment: PaymentSchema | None = None
    billing_same_as_shipping: bool = True
    billing_address: AddressSchema | None = None
    coupon: CouponSchema | None = None
    submitting: bool = False
    revision: int = 0
    notice: str | None = None


class PricingResponse(BaseModel):
    """Order totals for a checkout."""

    cart_total: PriceSchema
    subtotal_ex_vat: PriceSchema
    tax: PriceSchema
    tax_rate: str = Field(..., description="Effective VAT rate as a fraction")
    shipping: PriceSchema
    discount: PriceSchema
    total: PriceSchema
    free_shipping_applied: bool
    free_shipping_remaining: PriceSchema | None = None
    shipping_options: list[ShippingOptionSchema]
    notice: str | None = None


class PlaceOrderResponse(BaseModel):
    """Placed order."""

    order_id: str
    redirect_path: str
