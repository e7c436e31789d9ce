"""
Payment State Machine
=====================
Formal payment lifecycle for one checkout session.

State invariants:
- Navigation and realtime side effects query the state, never a loose flag
- All transitions are validated and logged
- An emptied cart means "abandoned" only outside AWAITING_PAYMENT/SUCCEEDED
"""

import logging
from enum import Enum
from typing import Callable, List, Optional
from datetime import datetime

from prometheus_client import Counter

logger = logging.getLogger(__name__)


payment_state_transitions = Counter(
    'payment_state_transitions_total',
    'Payment state transitions',
    ['from_state', 'to_state']
)


class PaymentState(Enum):
    """
    Payment lifecycle states.

    State flow:
        IDLE -> AWAITING_PAYMENT -> SUCCEEDED -> IDLE
                        |  ^
                        v  |
                       FAILED -> IDLE
    """
    IDLE = "idle"                          # No payment form shown
    AWAITING_PAYMENT = "awaiting_payment"  # Payment form shown, handle issued
    SUCCEEDED = "succeeded"                # Processor confirmed, confirmation visible
    FAILED = "failed"                      # Processor declined, order kept for retry


class StateTransitionError(Exception):
    """Raised when an invalid state transition is attempted."""
    pass


StateListener = Callable[[PaymentState, PaymentState], None]


class PaymentStateMachine:
    """
    Manages payment state transitions with validation.

    Enforces:
    - Valid transition paths only
    - State change logging
    - Listener notification after each transition
    """

    VALID_TRANSITIONS = {
        PaymentState.IDLE: {PaymentState.AWAITING_PAYMENT},
        PaymentState.AWAITING_PAYMENT: {PaymentState.SUCCEEDED, PaymentState.FAILED},
        PaymentState.FAILED: {PaymentState.AWAITING_PAYMENT, PaymentState.IDLE},
        PaymentState.SUCCEEDED: {PaymentState.IDLE},
    }

    # States in which the cart emptying is expected
    GUARDED_STATES = frozenset({PaymentState.AWAITING_PAYMENT, PaymentState.SUCCEEDED})

    def __init__(self, session_id: str, initial_state: PaymentState = PaymentState.IDLE):
        self.session_id = session_id
        self._current_state = initial_state
        self._state_history = [(initial_state, datetime.utcnow())]
        self._transition_count = 0
        self._listeners: List[StateListener] = []

        self.order_id: Optional[str] = None
        self.last_error: Optional[str] = None

        logger.info(
            "Payment state machine initialized",
            extra={
                "session_id": session_id,
                "initial_state": initial_state.value
            }
        )

    @property
    def current_state(self) -> PaymentState:
        return self._current_state

    def add_listener(self, listener: StateListener):
        """Call listener(old, new) after every transition."""
        self._listeners.append(listener)

    def can_transition_to(self, target_state: PaymentState) -> bool:
        return target_state in self.VALID_TRANSITIONS.get(self._current_state, set())

    def transition(self, target_state: PaymentState, reason: Optional[str] = None) -> bool:
        """
        Attempt state transition with validation.

        Args:
            target_state: Desired next state
            reason: Optional reason for transition

        Returns:
            True if transition succeeded

        Raises:
            StateTransitionError: If transition is invalid
        """
        if not self.can_transition_to(target_state):
            error_msg = (
                f"Invalid transition: {self._current_state.value} -> {target_state.value}"
            )
            logger.error(
                error_msg,
                extra={
                    "session_id": self.session_id,
                    "from_state": self._current_state.value,
                    "to_state": target_state.value,
                    "reason": reason
                }
            )
            raise StateTransitionError(error_msg)

        old_state = self._current_state
        self._current_state = target_state
        self._transition_count += 1
        self._state_history.append((target_state, datetime.utcnow()))
        payment_state_transitions.labels(
            from_state=old_state.value,
            to_state=target_state.value
        ).inc()

        logger.info(
            f"Payment state transition: {old_state.value} -> {target_state.value}",
            extra={
                "session_id": self.session_id,
                "order_id": self.order_id,
                "from_state": old_state.value,
                "to_state": target_state.value,
                "reason": reason,
                "transition_count": self._transition_count
            }
        )

        for listener in list(self._listeners):
            try:
                listener(old_state, target_state)
            except Exception as e:
                logger.error(f"Payment state listener failed: {str(e)}", exc_info=True)

        return True

    def blocks_empty_cart_redirect(self) -> bool:
        """True while an empty cart must not be read as 'nothing to buy'."""
        return self._current_state in self.GUARDED_STATES

    def suspends_realtime(self) -> bool:
        """True while realtime refreshes must stay out of the way."""
        return self._current_state in self.GUARDED_STATES

    def get_history(self) -> list:
        """Get state transition history."""
        return [
            {
                "state": state.value,
                "timestamp": ts.isoformat(),
                "duration_seconds": (
                    (self._state_history[i + 1][1] - ts).total_seconds()
                    if i + 1 < len(self._state_history)
                    else (datetime.utcnow() - ts).total_seconds()
                )
            }
            for i, (state, ts) in enumerate(self._state_history)
        ]

    def __repr__(self):
        return f"<PaymentStateMachine session_id={self.session_id} state={self._current_state.value}>"
