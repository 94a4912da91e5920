from app.services.state_machine import (
    ExtractionStatus,
    InvalidTransitionError,
    OrderState,
    can_transition,
    cancel_order,
    next_state,
    transition,
)
