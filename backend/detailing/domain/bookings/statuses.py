from enum import Enum

from detailing.domain.errors import AlreadyTerminal, InvalidTransition


class BookingStatus(str, Enum):
    pending = "pending"
    assigned = "assigned"
    in_progress = "in_progress"
    pending_approval = "pending_approval"
    completed = "completed"
    cancelled = "cancelled"


TERMINAL_STATUSES = frozenset({BookingStatus.completed, BookingStatus.cancelled})

# Union of every edge any caller may take; intents narrow it further.
BOOKING_TRANSITIONS: dict[BookingStatus, frozenset[BookingStatus]] = {
    BookingStatus.pending: frozenset({BookingStatus.assigned, BookingStatus.cancelled}),
    BookingStatus.assigned: frozenset(
        {
            BookingStatus.in_progress,
            BookingStatus.pending_approval,
            BookingStatus.pending,
            BookingStatus.cancelled,
        }
    ),
    BookingStatus.in_progress: frozenset(
        {BookingStatus.pending_approval, BookingStatus.completed, BookingStatus.cancelled}
    ),
    BookingStatus.pending_approval: frozenset({BookingStatus.in_progress, BookingStatus.cancelled}),
    BookingStatus.completed: frozenset(),
    BookingStatus.cancelled: frozenset(),
}


def is_terminal(status: BookingStatus) -> bool:
    return status in TERMINAL_STATUSES


def assert_valid_booking_transition(
    current: BookingStatus,
    target: BookingStatus,
    *,
    allowed_from: frozenset[BookingStatus] | set[BookingStatus] | None = None,
) -> None:
    if is_terminal(current):
        raise AlreadyTerminal(
            detail=f"Booking is already {current.value}; nothing was changed.",
        )
    if allowed_from is not None and current not in allowed_from:
        raise InvalidTransition(
            detail=f"Cannot move booking from {current.value} to {target.value}; nothing was changed.",
        )
    if target not in BOOKING_TRANSITIONS[current]:
        raise InvalidTransition(
            detail=f"Cannot move booking from {current.value} to {target.value}; nothing was changed.",
        )
