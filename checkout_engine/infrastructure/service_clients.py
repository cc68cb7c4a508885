"""HTTP clients for the storefront services checkout depends on.

Each client talks to one service, lazily opens an ``httpx.AsyncClient`` and
normalizes responses into domain value objects. Transport failures and
unexpected status codes surface as ``ServiceClientError``.
"""

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any

import httpx
import structlog

from checkout_engine.domain.exceptions import DomainError
from checkout_engine.domain.value_objects import (
    DEFAULT_CURRENCY,
    CartLine,
    Coupon,
    DiscountType,
    FreeShippingThreshold,
    Money,
    ShippingRule,
    ShippingSettings,
    TaxSettings,
)

logger = structlog.get_logger()


class ServiceClientError(Exception):
    """Error from a storefront service call.

    Attributes:
        service: Name of the service that failed.
        message: Error description; for 4xx responses this is the
            server-provided message when there is one.
        status_code: HTTP status, None for transport failures.
        timed_out: Whether the request hit its timeout.
    """

    def __init__(
        self,
        service: str,
        message: str,
        status_code: int | None = None,
        timed_out: bool = False,
    ) -> None:
        self.service = service
        self.message = message
        self.status_code = status_code
        self.timed_out = timed_out
        super().__init__(f"[{service}] {message}")

    @property
    def is_transport_error(self) -> bool:
        """Request never got an HTTP response."""
        return self.status_code is None

    @property
    def is_server_error(self) -> bool:
        return self.status_code is not None and self.status_code >= 500


def error_message(response: httpx.Response, default: str) -> str:
    """Extract the human-readable message from an error response body."""
    try:
        data = response.json()
    except ValueError:
        return response.text or default
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict):
            error = error.get("message")
        message = data.get("message") or error
        if message:
            return str(message)
    return default


class ServiceClient:
    """Base class with the shared connection handling."""

    service_name = "service"

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        request_id: str | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        """Initialize client.

        Args:
            base_url: Service base URL.
            timeout: Request timeout in seconds.
            request_id: Optional request ID for correlation.
            headers: Extra headers sent with every request.
        """
        self.base_url = base_url
        self.timeout = timeout
        self.request_id = request_id
        self._headers = headers or {}
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            headers = dict(self._headers)
            if self.request_id:
                headers["X-Request-ID"] = self.request_id
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                headers=headers,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        """Send a request, translating transport failures.

        Raises:
            ServiceClientError: On timeout or connection failure.
        """
        try:
            client = await self._get_client()
            return await client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            logger.warning(
                "Service request timed out",
                service=self.service_name,
                path=path,
                error=str(e),
            )
            raise ServiceClientError(
                self.service_name, f"Request timed out: {path}", timed_out=True
            ) from e
        except httpx.RequestError as e:
            logger.error(
                "Service request failed",
                service=self.service_name,
                path=path,
                error=str(e),
            )
            raise ServiceClientError(
                self.service_name, f"Request failed: {str(e)}"
            ) from e


# ============================================================================
# Store Settings
# ============================================================================


def _require_object(data: Any, what: str) -> dict[str, Any]:
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object for {what}, got {type(data).__name__}")
    return data


def _unwrap(data: dict[str, Any], key: str) -> dict[str, Any]:
    inner = _require_object(data, key).get(key)
    return inner if isinstance(inner, dict) else data


def _shipping_rule(data: Any, fallback: ShippingRule, currency: str) -> ShippingRule:
    if not data:
        return fallback
    data = _require_object(data, "shipping rule")
    return ShippingRule(
        price=Money.parse(data.get("price", fallback.price.to_decimal()), currency),
        active=bool(data.get("active", fallback.active)),
    )


def parse_tax_settings(data: dict[str, Any]) -> TaxSettings:
    """Build tax settings from the settings service payload.

    Raises:
        ValueError: If the rate is missing or malformed.
    """
    data = _unwrap(data, "taxSettings")
    if "rate" not in data:
        raise ValueError("Tax settings payload has no rate")
    return TaxSettings.from_percent(
        data["rate"],
        active=bool(data.get("active", True)),
        include_in_price=bool(data.get("includeInPrice", True)),
    )


def parse_shipping_settings(data: dict[str, Any], currency: str = DEFAULT_CURRENCY) -> ShippingSettings:
    """Build shipping settings, filling absent tiers from the defaults.

    Raises:
        ValueError: On a malformed payload, including negative prices.
    """
    data = _unwrap(data, "shippingSettings")
    defaults = ShippingSettings.defaults(currency)
    threshold = _require_object(data.get("freeThreshold") or {}, "freeThreshold")
    try:
        return ShippingSettings(
            standard=_shipping_rule(data.get("standard"), defaults.standard, currency),
            express=_shipping_rule(data.get("express"), defaults.express, currency),
            free_threshold=FreeShippingThreshold(
                price=Money.parse(threshold.get("price", 0), currency),
                active=bool(threshold.get("active", False)),
            ),
        )
    except DomainError as e:
        raise ValueError(f"Invalid shipping settings: {e.message}") from e


class StoreSettingsClient(ServiceClient):
    """Reads tax and shipping configuration."""

    service_name = "store-settings"

    def __init__(self, base_url: str, timeout: float = 3.0, currency: str = DEFAULT_CURRENCY, **kwargs: Any) -> None:
        super().__init__(base_url, timeout=timeout, **kwargs)
        self.currency = currency

    async def _get_json(self, path: str) -> dict[str, Any]:
        response = await self._request("GET", path)
        if response.status_code != 200:
            raise ServiceClientError(
                self.service_name,
                f"Failed to load {path}: {response.text}",
                response.status_code,
            )
        return _require_object(response.json(), path)

    async def get_tax_settings(self) -> TaxSettings:
        """Fetch tax settings.

        Raises:
            ServiceClientError: On API error.
            ValueError: On a malformed payload.
        """
        return parse_tax_settings(await self._get_json("/settings/tax"))

    async def get_shipping_settings(self) -> ShippingSettings:
        """Fetch shipping settings.

        Raises:
            ServiceClientError: On API error.
            ValueError: On a malformed payload.
        """
        return parse_shipping_settings(await self._get_json("/settings/shipping"), self.currency)


# ============================================================================
# Coupons
# ============================================================================


@dataclass
class CouponValidation:
    """Answer of the coupon service.

    Attributes:
        valid: Whether the coupon applies to the cart.
        coupon: Coupon details when valid.
        discount_amount: Server-computed discount when valid.
        reason: Rejection reason when invalid.
    """

    valid: bool
    coupon: Coupon | None = None
    discount_amount: Money | None = None
    reason: str | None = None

    @classmethod
    def from_api_response(cls, data: dict[str, Any], code: str, currency: str) -> "CouponValidation":
        """Create from API response data.

        Raises:
            ValueError: On a malformed or negative discount.
        """
        coupon_data = _require_object(data.get("coupon") or {}, "coupon")
        try:
            value = Decimal(str(coupon_data.get("value", 0)))
        except InvalidOperation as e:
            raise ValueError(f"Invalid coupon value: {coupon_data.get('value')!r}") from e
        discount_type = (
            DiscountType.PERCENTAGE
            if coupon_data.get("type") == DiscountType.PERCENTAGE.value
            else DiscountType.FIXED
        )
        try:
            discount = Money.parse(data.get("discountAmount", 0), currency)
        except DomainError as e:
            raise ValueError(f"Invalid discount amount: {e.message}") from e
        return cls(
            valid=True,
            coupon=Coupon(
                code=Coupon.normalize_code(coupon_data.get("code") or code),
                discount_type=discount_type,
                discount_value=value,
            ),
            discount_amount=discount,
        )


class CouponClient(ServiceClient):
    """Validates coupon codes against a cart total."""

    service_name = "coupons"

    async def validate(self, code: str, cart_total: Money) -> CouponValidation:
        """Ask the coupon service for the discount on ``cart_total``.

        Args:
            code: Normalized coupon code.
            cart_total: Cart total the discount applies to.

        Returns:
            Validation result; 4xx answers are rejections, not errors.

        Raises:
            ServiceClientError: On transport failure or 5xx.
            ValueError: On a malformed success payload.
        """
        response = await self._request(
            "POST",
            "/coupons/validate",
            json={"code": code, "cartTotal": str(cart_total.to_decimal())},
        )

        if 400 <= response.status_code < 500:
            reason = error_message(response, "Invalid coupon code")
            logger.info("Coupon rejected", code=code, status=response.status_code, reason=reason)
            return CouponValidation(valid=False, reason=reason)

        if response.status_code != 200:
            raise ServiceClientError(
                self.service_name,
                f"Failed to validate coupon: {response.text}",
                response.status_code,
            )

        data = _require_object(response.json(), "coupon validation")
        if data.get("valid") is False:
            return CouponValidation(valid=False, reason=data.get("error") or "Invalid coupon code")
        return CouponValidation.from_api_response(data, code, cart_total.currency)


# ============================================================================
# Orders
# ============================================================================


class OrderServiceClient(ServiceClient):
    """Creates orders in the order-persistence service."""

    service_name = "orders"

    async def create_order(self, payload: dict[str, Any], idempotency_key: str) -> str:
        """Create an order.

        The service de-duplicates on the ``Idempotency-Key`` header, so
        replaying the same key returns the original order.

        Args:
            payload: Serialized order payload.
            idempotency_key: Key shared by every attempt of one checkout.

        Returns:
            Order ID.

        Raises:
            ServiceClientError: On API error, with the server's message.
        """
        response = await self._request(
            "POST",
            "/orders",
            json=payload,
            headers={"Idempotency-Key": idempotency_key},
        )

        if response.status_code not in (200, 201):
            raise ServiceClientError(
                self.service_name,
                error_message(response, "Failed to create order"),
                response.status_code,
            )

        data = response.json()
        order_id = data.get("orderId") or data.get("id")
        if not order_id:
            raise ServiceClientError(
                self.service_name,
                "Order response has no order ID",
                response.status_code,
            )
        return str(order_id)


# ============================================================================
# Cart
# ============================================================================


def parse_cart_line(data: dict[str, Any], currency: str) -> CartLine:
    """Build a cart line from the cart service payload.

    Raises:
        ValueError: On a malformed line, including a negative price.
    """
    data = _require_object(data, "cart line")
    try:
        return CartLine(
            product_id=str(data.get("productId") or data.get("id") or ""),
            name=data.get("name", ""),
            unit_price=Money.parse(data.get("price", 0), currency),
            quantity=int(data.get("quantity", 1)),
            is_digital=bool(data.get("isDigital", False)),
        )
    except DomainError as e:
        raise ValueError(f"Invalid cart line: {e.message}") from e


class CartServiceClient(ServiceClient):
    """Reads and clears buyer carts."""

    service_name = "cart"

    def __init__(self, base_url: str, timeout: float = 5.0, currency: str = DEFAULT_CURRENCY, **kwargs: Any) -> None:
        super().__init__(base_url, timeout=timeout, **kwargs)
        self.currency = currency

    async def get_lines(self, cart_id: str) -> list[CartLine]:
        """Get the lines of a cart; an unknown cart is empty.

        Raises:
            ServiceClientError: On API error (except 404) or a malformed payload.
        """
        response = await self._request("GET", f"/carts/{cart_id}")
        if response.status_code == 404:
            return []
        if response.status_code != 200:
            raise ServiceClientError(
                self.service_name,
                f"Failed to get cart: {response.text}",
                response.status_code,
            )
        try:
            items = _require_object(response.json(), "cart").get("items", [])
            return [parse_cart_line(item, self.currency) for item in items]
        except (ValueError, TypeError) as e:
            raise ServiceClientError(
                self.service_name,
                f"Malformed cart payload: {e}",
                response.status_code,
            ) from e

    async def clear(self, cart_id: str) -> None:
        """Empty a cart.

        Raises:
            ServiceClientError: On API error (except 404).
        """
        response = await self._request("DELETE", f"/carts/{cart_id}")
        if response.status_code not in (200, 204, 404):
            raise ServiceClientError(
                self.service_name,
                f"Failed to clear cart: {response.text}",
                response.status_code,
            )


class RemoteCart:
    """Cart collaborator bound to one cart of the cart service."""

    def __init__(self, client: CartServiceClient, cart_id: str) -> None:
        self.client = client
        self.cart_id = cart_id

    async def get_lines(self) -> list[CartLine]:
        return await self.client.get_lines(self.cart_id)

    async def clear(self) -> None:
        await self.client.clear(self.cart_id)
