"""Payment gateway adapter.

Wraps the gateway client with the failure handling checkout needs:

- Intent creation is retried with exponential backoff and guarded by a
  circuit breaker that fails fast while the gateway is known to be down.
- Confirmation is never retried: a second confirm could charge twice.
- Only masked card data ever leaves this module.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

import structlog

from checkout_engine.application.ports import PaymentGateway
from checkout_engine.domain.exceptions import CheckoutError, ErrorKind
from checkout_engine.domain.value_objects import (
    CollectedCardData,
    Money,
    PaymentOutcome,
    ShippingAddress,
)
from checkout_engine.infrastructure.payment_gateway import PaymentIntent
from checkout_engine.infrastructure.service_clients import ServiceClientError

logger = structlog.get_logger()


# ============================================================================
# Retry and Circuit Breaker
# ============================================================================


@dataclass(frozen=True)
class BackoffPolicy:
    """Bounded retry with exponential backoff."""

    attempts: int = 3
    backoff_initial: float = 0.2
    backoff_factor: float = 2.0
    backoff_max: float = 2.0

    def delay(self, attempt: int) -> float:
        """Pause after the given failed attempt (1-based)."""
        return min(self.backoff_initial * self.backoff_factor ** (attempt - 1), self.backoff_max)


class BreakerState(str, Enum):
    """Circuit breaker states.

    State Diagram:
        CLOSED --(threshold failures)--> OPEN
        OPEN --(cooldown elapsed)--> HALF_OPEN
        HALF_OPEN --(success)--> CLOSED
        HALF_OPEN --(failure)--> OPEN
    """

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Counts consecutive gateway failures and short-circuits calls."""

    def __init__(
        self,
        failure_threshold: int = 5,
        cooldown_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._failures = 0
        self._opened_at: float | None = None

    @property
    def state(self) -> BreakerState:
        if self._opened_at is None:
            return BreakerState.CLOSED
        if self._clock() - self._opened_at >= self.cooldown_seconds:
            return BreakerState.HALF_OPEN
        return BreakerState.OPEN

    @property
    def consecutive_failures(self) -> int:
        return self._failures

    def allow_request(self) -> bool:
        return self.state != BreakerState.OPEN

    def record_success(self) -> None:
        self._failures = 0
        self._opened_at = None

    def record_failure(self) -> None:
        self._failures += 1
        state = self.state
        if state == BreakerState.HALF_OPEN or (
            state == BreakerState.CLOSED and self._failures >= self.failure_threshold
        ):
            logger.warning("Payment gateway circuit opened", failures=self._failures)
            self._opened_at = self._clock()


# ============================================================================
# Results
# ============================================================================


@dataclass
class IntentResult:
    """Result of creating a payment intent."""

    success: bool
    intent: PaymentIntent | None = None
    error: CheckoutError | None = None


@dataclass
class ConfirmResult:
    """Result of confirming a payment."""

    success: bool
    outcome: PaymentOutcome | None = None
    error: CheckoutError | None = None


def billing_details(
    cardholder_name: str,
    address: ShippingAddress | None,
    email: str | None = None,
) -> dict[str, Any]:
    """Billing details in the gateway's format."""
    details: dict[str, Any] = {"name": cardholder_name}
    if email:
        details["email"] = email
    if address is not None:
        details["phone"] = address.phone or None
        details["address"] = {
            "line1": address.address_line1,
            "line2": address.address_line2,
            "city": address.city,
            "state": address.region,
            "postal_code": address.postal_code,
            "country": address.country,
        }
    return details


# ============================================================================
# Adapter
# ============================================================================


class PaymentAdapter:
    """Creates and confirms payments through the gateway."""

    def __init__(
        self,
        gateway: PaymentGateway,
        backoff: BackoffPolicy | None = None,
        breaker: CircuitBreaker | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize adapter.

        Args:
            gateway: Payment gateway client.
            backoff: Retry policy for intent creation.
            breaker: Circuit breaker shared by all sessions.
            sleep: Awaitable sleep used between retries.
        """
        self.gateway = gateway
        self.backoff = backoff or BackoffPolicy()
        self.breaker = breaker or CircuitBreaker()
        self._sleep = sleep

    async def create_intent(self, amount_minor_units: int, currency: str) -> IntentResult:
        """Create a payment intent for the order total.

        Transport failures and 5xx responses are retried; 4xx responses
        are not.

        Returns:
            Intent with its client secret, GATEWAY_UNAVAILABLE when the
            gateway cannot be reached, or PAYMENT_GATEWAY_ERROR when it
            refuses the request.
        """
        if not self.breaker.allow_request():
            logger.warning("Payment gateway circuit open, failing fast")
            return IntentResult(
                success=False,
                error=CheckoutError(ErrorKind.GATEWAY_UNAVAILABLE, "Payment gateway circuit is open"),
            )

        last_error: ServiceClientError | None = None
        for attempt in range(1, self.backoff.attempts + 1):
            try:
                intent = await self.gateway.create_payment_intent(amount_minor_units, currency)
            except ServiceClientError as e:
                if not (e.is_transport_error or e.is_server_error):
                    logger.error("Payment intent rejected", status_code=e.status_code, error=e.message)
                    return IntentResult(
                        success=False,
                        error=CheckoutError(ErrorKind.PAYMENT_GATEWAY_ERROR, e.message),
                    )
                last_error = e
                self.breaker.record_failure()
                logger.warning(
                    "Payment intent attempt failed",
                    attempt=attempt,
                    max_attempts=self.backoff.attempts,
                    error=e.message,
                )
                if attempt == self.backoff.attempts or not self.breaker.allow_request():
                    break
                await self._sleep(self.backoff.delay(attempt))
            else:
                self.breaker.record_success()
                return IntentResult(success=True, intent=intent)

        return IntentResult(
            success=False,
            error=CheckoutError(
                ErrorKind.GATEWAY_UNAVAILABLE,
                last_error.message if last_error else None,
            ),
        )

    async def confirm(
        self,
        client_secret: str,
        card_data: CollectedCardData,
        billing: dict[str, Any] | None = None,
        expected_amount: Money | None = None,
    ) -> ConfirmResult:
        """Confirm a payment with the collected card.

        Never retried automatically.

        Args:
            client_secret: Client secret of the intent.
            card_data: Payment method token and cardholder name.
            billing: Billing details for the gateway.
            expected_amount: Amount the intent was created for; recorded
                when the gateway does not echo it.

        Returns:
            Masked payment outcome, PAYMENT_DECLINED, or PAYMENT_GATEWAY_ERROR.
        """
        try:
            confirmation = await self.gateway.confirm_payment_intent(
                client_secret,
                card_data.payment_method_token,
                billing or billing_details(card_data.cardholder_name, None),
            )
        except ValueError as e:
            return ConfirmResult(
                success=False,
                error=CheckoutError(ErrorKind.PAYMENT_GATEWAY_ERROR, str(e)),
            )
        except ServiceClientError as e:
            logger.error("Payment confirmation failed", status_code=e.status_code, error=e.message)
            return ConfirmResult(
                success=False,
                error=CheckoutError(ErrorKind.PAYMENT_GATEWAY_ERROR, e.message),
            )

        if not confirmation.succeeded:
            logger.info("Payment declined", intent_id=confirmation.intent_id, status=confirmation.status)
            return ConfirmResult(
                success=False,
                error=CheckoutError(
                    ErrorKind.PAYMENT_DECLINED,
                    confirmation.decline_message,
                    details={"status": confirmation.status},
                ),
            )

        if confirmation.amount and confirmation.currency:
            amount_charged = Money(amount_cents=confirmation.amount, currency=confirmation.currency)
        else:
            amount_charged = expected_amount

        outcome = PaymentOutcome(
            card_number_masked=PaymentOutcome.mask(confirmation.last4),
            cardholder_name=card_data.cardholder_name,
            expiry_display=confirmation.expiry_display,
            card_type=confirmation.card_brand,
            payment_reference=confirmation.intent_id,
            amount_charged=amount_charged,
        )
        logger.info(
            "Payment confirmed",
            intent_id=confirmation.intent_id,
            card_type=outcome.card_type,
        )
        return ConfirmResult(success=True, outcome=outcome)
