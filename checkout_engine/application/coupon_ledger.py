"""Coupon application and re-validation.

The discount amount always comes from the coupon service; the ledger
never computes one locally. It also never touches checkout state: callers
decide what to do with the result.
"""

import asyncio
from dataclasses import dataclass

import structlog

from checkout_engine.application.ports import CouponValidator
from checkout_engine.domain.exceptions import CheckoutError, DomainError, ErrorKind
from checkout_engine.domain.value_objects import AppliedCoupon, Coupon, Money
from checkout_engine.infrastructure.service_clients import ServiceClientError

logger = structlog.get_logger()


@dataclass
class CouponResult:
    """Result of a coupon operation.

    Attributes:
        success: Whether the operation succeeded.
        applied: Coupon to keep on the checkout; None means no coupon.
        error: Why the coupon could not be applied.
    """

    success: bool
    applied: AppliedCoupon | None = None
    error: CheckoutError | None = None

    @property
    def error_code(self) -> str | None:
        return self.error.kind.value if self.error else None


class CouponLedger:
    """Validates coupon codes through the coupon service."""

    def __init__(self, validator: CouponValidator, timeout_seconds: float = 5.0) -> None:
        self.validator = validator
        self.timeout_seconds = timeout_seconds

    async def apply(self, code: str, cart_total: Money) -> CouponResult:
        """Validate a code against the current cart total.

        Args:
            code: Code as typed by the buyer.
            cart_total: Cart total the discount is computed against.

        Returns:
            Applied coupon on success; COUPON_REJECTED, TIMEOUT_ERROR or
            NETWORK_ERROR otherwise.
        """
        normalized = Coupon.normalize_code(code)
        if not normalized:
            return CouponResult(
                success=False,
                error=CheckoutError(ErrorKind.COUPON_REJECTED, "Please enter a discount code"),
            )

        try:
            validation = await asyncio.wait_for(
                self.validator.validate(normalized, cart_total),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning("Coupon validation timed out", code=normalized)
            return CouponResult(success=False, error=CheckoutError(ErrorKind.TIMEOUT_ERROR))
        except ServiceClientError as e:
            kind = ErrorKind.TIMEOUT_ERROR if e.timed_out else ErrorKind.NETWORK_ERROR
            logger.warning("Coupon validation failed", code=normalized, error=e.message)
            return CouponResult(success=False, error=CheckoutError(kind, e.message))
        except (ValueError, DomainError) as e:
            logger.error("Malformed coupon response", code=normalized, error=str(e))
            return CouponResult(success=False, error=CheckoutError(ErrorKind.NETWORK_ERROR, str(e)))

        if not validation.valid or validation.coupon is None or validation.discount_amount is None:
            return CouponResult(
                success=False,
                error=CheckoutError(
                    ErrorKind.COUPON_REJECTED,
                    validation.reason or "Invalid coupon code",
                    details={"code": normalized},
                ),
            )

        applied = AppliedCoupon(
            coupon=validation.coupon,
            discount_amount=validation.discount_amount,
            cart_total=cart_total,
        )
        logger.info(
            "Coupon applied",
            code=applied.code,
            discount_cents=applied.discount_amount.amount_cents,
            cart_total_cents=cart_total.amount_cents,
        )
        return CouponResult(success=True, applied=applied)

    def remove(self) -> CouponResult:
        """Drop the coupon. Always succeeds."""
        return CouponResult(success=True, applied=None)

    async def revalidate(self, applied: AppliedCoupon, new_cart_total: Money) -> CouponResult:
        """Re-check a coupon after the cart total changed.

        Returns:
            The same coupon when the total is unchanged, a re-validated
            coupon with a fresh discount, or a failed result with no
            coupon (the caller clears it).
        """
        if applied.is_valid_for(new_cart_total):
            return CouponResult(success=True, applied=applied)

        result = await self.apply(applied.code, new_cart_total)
        if not result.success:
            logger.info(
                "Coupon cleared after cart change",
                code=applied.code,
                error_code=result.error_code,
            )
        return result
