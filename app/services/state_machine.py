from enum import Enum
from typing import Optional


class OrderState(str, Enum):
    NO_ORDER = "no_order"
    INCOMPLETE = "incomplete"
    PENDING_CONFIRMATION = "pending_confirmation"


class ExtractionStatus(str, Enum):
    INVALID = "invalid"
    NOT_INVOICE = "not_invoice"
    INCOMPLETE = "incomplete"
    PENDING_CONFIRMATION = "pending_confirmation"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    ERROR = "error"


# Outcomes that leave the stored order exactly as it was.
TRANSIENT_STATUSES = {
    ExtractionStatus.INVALID,
    ExtractionStatus.NOT_INVOICE,
    ExtractionStatus.ERROR,
}

# Outcomes that delete the stored order.
TERMINAL_STATUSES = {
    ExtractionStatus.CONFIRMED,
    ExtractionStatus.CANCELLED,
}

VALID_TRANSITIONS = {
    OrderState.NO_ORDER: [OrderState.INCOMPLETE, OrderState.PENDING_CONFIRMATION],
    OrderState.INCOMPLETE: [OrderState.INCOMPLETE, OrderState.PENDING_CONFIRMATION, OrderState.NO_ORDER],
    OrderState.PENDING_CONFIRMATION: [
        OrderState.INCOMPLETE,
        OrderState.PENDING_CONFIRMATION,
        OrderState.NO_ORDER,
    ],
}

STATUS_TARGETS = {
    ExtractionStatus.INCOMPLETE: OrderState.INCOMPLETE,
    ExtractionStatus.PENDING_CONFIRMATION: OrderState.PENDING_CONFIRMATION,
    ExtractionStatus.CONFIRMED: OrderState.NO_ORDER,
    ExtractionStatus.CANCELLED: OrderState.NO_ORDER,
}


class InvalidTransitionError(Exception):
    def __init__(self, from_state: OrderState, to_state: OrderState):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"Invalid transition: {from_state.value} -> {to_state.value}")


def can_transition(from_state: OrderState, to_state: OrderState) -> bool:
    """Check if transition is valid."""
    allowed = VALID_TRANSITIONS.get(from_state, [])
    return to_state in allowed


def transition(from_state: OrderState, to_state: OrderState) -> OrderState:
    """Perform state transition. Raises InvalidTransitionError if not allowed."""
    if not can_transition(from_state, to_state):
        raise InvalidTransitionError(from_state, to_state)
    return to_state


def next_state(current: OrderState, status: ExtractionStatus) -> OrderState:
    """Stored state after an analyzer outcome."""
    if status in TRANSIENT_STATUSES:
        return current
    target: Optional[OrderState] = STATUS_TARGETS.get(status)
    if target is None:
        return current
    return transition(current, target)


def cancel_order(current_state: OrderState) -> OrderState:
    """Explicit cancel command: always ends with no stored order."""
    if current_state == OrderState.NO_ORDER:
        return OrderState.NO_ORDER
    return transition(current_state, OrderState.NO_ORDER)
