"""Checkout step state machine.

The buyer moves through an ordered sequence of steps. Moves are governed
by an explicit transition table (step -> previous/next) and a completion
predicate per step, so that ``advance``, ``retreat`` and ``jump_to`` are
total functions over the table. Rejected moves are reported as results
carrying ``ErrorKind.STEP_INCOMPLETE``; they never raise.
"""

from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

from checkout_engine.domain.exceptions import CheckoutError, ErrorKind

if TYPE_CHECKING:
    from checkout_engine.domain.checkout import CheckoutState


# ============================================================================
# Steps
# ============================================================================


class CheckoutStep(str, Enum):
    """Checkout steps in presentation order.

    State diagram:
        GUEST_INFO (anonymous buyers only)
          │ advance
          ▼
        SHIPPING_ADDRESS
          │ advance
          ▼
        SHIPPING_METHOD
          │ advance
          ▼
        PAYMENT
          │ advance
          ▼
        REVIEW ──── place order (terminal action, not a step)

    ``retreat`` walks the arrows backwards and is always allowed.
    """

    GUEST_INFO = "guest-info"
    SHIPPING_ADDRESS = "shipping-address"
    SHIPPING_METHOD = "shipping-method"
    PAYMENT = "payment"
    REVIEW = "review"


STEP_ORDER: tuple[CheckoutStep, ...] = (
    CheckoutStep.GUEST_INFO,
    CheckoutStep.SHIPPING_ADDRESS,
    CheckoutStep.SHIPPING_METHOD,
    CheckoutStep.PAYMENT,
    CheckoutStep.REVIEW,
)


def step_sequence(authenticated: bool) -> tuple[CheckoutStep, ...]:
    """Get the steps a buyer goes through.

    Args:
        authenticated: Whether the buyer is logged in.

    Returns:
        Ordered steps; guest information is skipped for logged-in buyers.
    """
    if authenticated:
        return tuple(step for step in STEP_ORDER if step != CheckoutStep.GUEST_INFO)
    return STEP_ORDER


@dataclass(frozen=True)
class StepLink:
    """Neighbours of a step in the transition table."""

    previous: CheckoutStep | None
    next: CheckoutStep | None


def build_transition_table(steps: tuple[CheckoutStep, ...]) -> dict[CheckoutStep, StepLink]:
    """Build the step -> neighbours table for an ordered step sequence."""
    table: dict[CheckoutStep, StepLink] = {}
    for index, step in enumerate(steps):
        table[step] = StepLink(
            previous=steps[index - 1] if index > 0 else None,
            next=steps[index + 1] if index + 1 < len(steps) else None,
        )
    return table


# ============================================================================
# Completion Predicates
# ============================================================================


def _guest_info_complete(state: "CheckoutState") -> bool:
    return state.guest_information is not None and state.guest_information.is_complete()


def _shipping_address_complete(state: "CheckoutState") -> bool:
    return state.shipping_address is not None and state.shipping_address.is_complete()


def _shipping_method_complete(state: "CheckoutState") -> bool:
    return state.shipping_method is not None


def _payment_complete(state: "CheckoutState") -> bool:
    return state.has_payment() and state.billing_satisfied()


def _review_complete(state: "CheckoutState") -> bool:
    for step in step_sequence(state.authenticated):
        if step == CheckoutStep.REVIEW:
            return True
        if not is_complete(step, state):
            return False
    return True


_COMPLETION_PREDICATES: dict[CheckoutStep, Callable[["CheckoutState"], bool]] = {
    CheckoutStep.GUEST_INFO: _guest_info_complete,
    CheckoutStep.SHIPPING_ADDRESS: _shipping_address_complete,
    CheckoutStep.SHIPPING_METHOD: _shipping_method_complete,
    CheckoutStep.PAYMENT: _payment_complete,
    CheckoutStep.REVIEW: _review_complete,
}


def is_complete(step: CheckoutStep, state: "CheckoutState") -> bool:
    """Check whether a step's data is fully and validly populated.

    Args:
        step: Step to check.
        state: Checkout state holding the entered data.

    Returns:
        True if the step is complete.
    """
    return _COMPLETION_PREDICATES[step](state)


# ============================================================================
# Transition Result
# ============================================================================


@dataclass(frozen=True)
class StepTransition:
    """Represents a step transition result.

    Attributes:
        from_step: Step before the attempt.
        to_step: Step after the attempt (unchanged when rejected).
        success: Whether the move happened.
        error: Reason the move was rejected.
    """

    from_step: CheckoutStep
    to_step: CheckoutStep
    success: bool = True
    error: CheckoutError | None = None

    @classmethod
    def successful(cls, from_step: CheckoutStep, to_step: CheckoutStep) -> "StepTransition":
        return cls(from_step=from_step, to_step=to_step, success=True)

    @classmethod
    def rejected(cls, current: CheckoutStep, reason: str, target: CheckoutStep | None = None) -> "StepTransition":
        return cls(
            from_step=current,
            to_step=current,
            success=False,
            error=CheckoutError(
                kind=ErrorKind.STEP_INCOMPLETE,
                reason=reason,
                details={
                    "current_step": current.value,
                    "target_step": target.value if target else None,
                },
            ),
        )


# ============================================================================
# State Machine
# ============================================================================


class CheckoutStateMachine:
    """Drives ``CheckoutState.current_step`` through the step table.

    The machine only ever changes the current step; business data is
    written by the step's submit handler before ``advance`` is invoked.
    """

    def __init__(self, state: "CheckoutState") -> None:
        self.state = state
        self.steps = step_sequence(state.authenticated)
        self._table = build_transition_table(self.steps)

    @property
    def current_step(self) -> CheckoutStep:
        return self.state.current_step

    def is_complete(self, step: CheckoutStep) -> bool:
        return step in self._table and is_complete(step, self.state)

    def advance(self) -> StepTransition:
        """Move to the step after the current one.

        Returns:
            Successful transition, or a STEP_INCOMPLETE rejection if the
            current step is incomplete or has no successor.
        """
        current = self.current_step
        link = self._table[current]
        if link.next is None:
            return StepTransition.rejected(current, "Order submission follows the review step")
        if not self.is_complete(current):
            return StepTransition.rejected(current, _incomplete_reason(current), target=link.next)
        self.state.move_to(link.next)
        return StepTransition.successful(current, link.next)

    def retreat(self) -> StepTransition:
        """Move to the step before the current one.

        Always permitted; entered data stays in the state. At the first
        step this is a successful no-op.
        """
        current = self.current_step
        previous = self._table[current].previous
        if previous is None:
            return StepTransition.successful(current, current)
        self.state.move_to(previous)
        return StepTransition.successful(current, previous)

    def can_jump_to(self, step: CheckoutStep) -> bool:
        """Check the jump rules.

        A jump is allowed to the current step, to any step that is
        already complete, or to the immediate successor of a complete
        current step.
        """
        if step not in self._table:
            return False
        current = self.current_step
        if step == current:
            return True
        if self.is_complete(step):
            return True
        return self._table[current].next == step and self.is_complete(current)

    def jump_to(self, step: CheckoutStep) -> StepTransition:
        """Move directly to a step if the jump rules allow it."""
        current = self.current_step
        if step not in self._table:
            return StepTransition.rejected(current, f"Step '{step.value}' is not part of this checkout", target=step)
        if not self.can_jump_to(step):
            return StepTransition.rejected(current, _incomplete_reason(current), target=step)
        if step != current:
            self.state.move_to(step)
        return StepTransition.successful(current, step)

    def reachable_steps(self) -> list[CheckoutStep]:
        """List the steps the buyer can currently jump to."""
        return [step for step in self.steps if self.can_jump_to(step)]

    def completion_info(self, step: CheckoutStep) -> str | None:
        """Short summary of a completed step for the stepper."""
        if not self.is_complete(step):
            return None
        state = self.state
        if step == CheckoutStep.GUEST_INFO and state.guest_information:
            return state.guest_information.email
        if step == CheckoutStep.SHIPPING_ADDRESS and state.shipping_address:
            return f"{state.shipping_address.city}, {state.shipping_address.country}"
        if step == CheckoutStep.SHIPPING_METHOD and state.shipping_method:
            return state.shipping_method.name
        if step == CheckoutStep.PAYMENT and state.payment_outcome:
            return state.payment_outcome.card_number_masked
        return None


def _incomplete_reason(step: CheckoutStep) -> str:
    return {
        CheckoutStep.GUEST_INFO: "Please enter a valid email address",
        CheckoutStep.SHIPPING_ADDRESS: "Please complete all required address fields",
        CheckoutStep.SHIPPING_METHOD: "Please select a shipping method",
        CheckoutStep.PAYMENT: "Please provide payment details",
        CheckoutStep.REVIEW: "Please complete all previous steps",
    }[step]
