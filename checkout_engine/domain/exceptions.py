"""Domain exceptions and the checkout error taxonomy.

Two kinds of failure live here:

- ``DomainError`` subclasses are raised when an invariant is violated by
  the calling code (negative money, mixed currencies, malformed values).
  They indicate programming errors and are not shown to buyers.
- ``CheckoutError`` values describe expected, recoverable checkout failures.
  They are returned inside result objects, never raised, and each one maps
  to a short buyer-facing message and a retry policy.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class DomainError(Exception):
    """Base class for all domain exceptions.

    All domain errors should inherit from this class to allow
    catching domain-specific errors at the application layer.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize domain error.

        Args:
            message: Human-readable error message.
            details: Optional dictionary with additional error context.
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}


# ============================================================================
# Money Errors
# ============================================================================


class MoneyError(DomainError):
    """Base class for money-related errors."""

    pass


class CurrencyMismatchError(MoneyError):
    """Raised when attempting to combine money with different currencies."""

    def __init__(self, currency1: str, currency2: str) -> None:
        super().__init__(
            f"Cannot combine money with different currencies: {currency1} and {currency2}",
            details={"currency1": currency1, "currency2": currency2},
        )


class NegativeMoneyError(MoneyError):
    """Raised when attempting to create money with negative amount."""

    def __init__(self, amount: int) -> None:
        super().__init__(
            f"Money amount cannot be negative: {amount}",
            details={"amount": amount},
        )


# ============================================================================
# Checkout Error Taxonomy
# ============================================================================


class RetryPolicy(str, Enum):
    """How a buyer may recover from a surfaced error."""

    NONE = "none"  # buyer must correct input
    RETRY = "retry"  # replay the same request
    REENTER_PAYMENT = "reenter_payment"
    REDIRECT = "redirect"


class ErrorKind(str, Enum):
    """Closed set of checkout failure kinds."""

    STEP_INCOMPLETE = "STEP_INCOMPLETE"
    COUPON_REJECTED = "COUPON_REJECTED"
    GATEWAY_UNAVAILABLE = "GATEWAY_UNAVAILABLE"
    PAYMENT_DECLINED = "PAYMENT_DECLINED"
    PAYMENT_GATEWAY_ERROR = "PAYMENT_GATEWAY_ERROR"
    SETTINGS_FETCH_FAILED = "SETTINGS_FETCH_FAILED"
    INCOMPLETE_CHECKOUT = "INCOMPLETE_CHECKOUT"
    ORDER_CREATION_FAILED = "ORDER_CREATION_FAILED"
    NETWORK_ERROR = "NETWORK_ERROR"
    TIMEOUT_ERROR = "TIMEOUT_ERROR"
    AUTH_REQUIRED = "AUTH_REQUIRED"
    SUBMISSION_IN_PROGRESS = "SUBMISSION_IN_PROGRESS"
    STALE_RESPONSE = "STALE_RESPONSE"
    EMPTY_CART = "EMPTY_CART"
    SESSION_NOT_FOUND = "SESSION_NOT_FOUND"

    @property
    def retry_policy(self) -> RetryPolicy:
        """Get the recovery policy for this kind."""
        return _RETRY_POLICIES.get(self, RetryPolicy.NONE)

    @property
    def is_retryable(self) -> bool:
        """Check whether the buyer is offered a retry action."""
        return self.retry_policy in {RetryPolicy.RETRY, RetryPolicy.REENTER_PAYMENT}

    @property
    def user_message(self) -> str:
        """Get the short buyer-facing message."""
        return _USER_MESSAGES[self]


_RETRY_POLICIES: dict[ErrorKind, RetryPolicy] = {
    ErrorKind.GATEWAY_UNAVAILABLE: RetryPolicy.RETRY,
    ErrorKind.PAYMENT_GATEWAY_ERROR: RetryPolicy.RETRY,
    ErrorKind.NETWORK_ERROR: RetryPolicy.RETRY,
    ErrorKind.TIMEOUT_ERROR: RetryPolicy.RETRY,
    ErrorKind.ORDER_CREATION_FAILED: RetryPolicy.RETRY,
    ErrorKind.PAYMENT_DECLINED: RetryPolicy.REENTER_PAYMENT,
    ErrorKind.AUTH_REQUIRED: RetryPolicy.REDIRECT,
}

_USER_MESSAGES: dict[ErrorKind, str] = {
    ErrorKind.STEP_INCOMPLETE: "Please complete this step before continuing.",
    ErrorKind.COUPON_REJECTED: "This discount code cannot be applied.",
    ErrorKind.GATEWAY_UNAVAILABLE: "Payments are temporarily unavailable. Please try again.",
    ErrorKind.PAYMENT_DECLINED: "Your card was declined. Please use different payment details.",
    ErrorKind.PAYMENT_GATEWAY_ERROR: "Something went wrong while processing your payment. Please try again.",
    ErrorKind.SETTINGS_FETCH_FAILED: "Store settings could not be loaded.",
    ErrorKind.INCOMPLETE_CHECKOUT: "Some checkout details are missing.",
    ErrorKind.ORDER_CREATION_FAILED: "We could not place your order. Please try again.",
    ErrorKind.NETWORK_ERROR: "Connection problem. Please try again.",
    ErrorKind.TIMEOUT_ERROR: "The request took too long. Please try again.",
    ErrorKind.AUTH_REQUIRED: "Please log in to continue with checkout.",
    ErrorKind.SUBMISSION_IN_PROGRESS: "Your previous action is still being processed.",
    ErrorKind.STALE_RESPONSE: "Your checkout changed while this was loading.",
    ErrorKind.EMPTY_CART: "Your cart is empty.",
    ErrorKind.SESSION_NOT_FOUND: "Your checkout session has expired.",
}


@dataclass(frozen=True)
class CheckoutError:
    """A recoverable checkout failure.

    Attributes:
        kind: Error classification.
        reason: Detail for logs and inline display (e.g. coupon rejection
            reason or server message). Never a stack trace.
        details: Additional structured context.
    """

    kind: ErrorKind
    reason: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def message(self) -> str:
        """Buyer-facing message.

        Coupon rejections and order failures carry a server-provided
        human-readable reason, which is shown instead of the generic text.
        """
        if self.reason and self.kind in {
            ErrorKind.COUPON_REJECTED,
            ErrorKind.ORDER_CREATION_FAILED,
            ErrorKind.PAYMENT_DECLINED,
            ErrorKind.STEP_INCOMPLETE,
            ErrorKind.INCOMPLETE_CHECKOUT,
        }:
            return self.reason
        return self.kind.user_message

    @property
    def retryable(self) -> bool:
        """Check whether a retry action should be offered."""
        return self.kind.is_retryable

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.reason or self.kind.user_message}"
