from app.services.guest_verification import (
    GuestAction,
    GuestFlowState,
    InvalidTransitionError,
    can_transition,
    reduce_guest_flow,
    transition,
)
from app.services.idempotency_service import (
    mark_failed,
    mark_processed,
    start_processing,
)
