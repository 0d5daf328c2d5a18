"""Status vocabularies and transition tables for trips, requests and payments.

Every mutating service checks `is_allowed` before issuing its guarded update;
the tables are the only place legal moves are defined.
"""

from enum import Enum


class TripStatus(str, Enum):
    ANNOUNCED = "ANNOUNCED"
    TRAVELING = "TRAVELING"
    AT_DESTINATION = "AT_DESTINATION"
    RETURNING = "RETURNING"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class RequestStatus(str, Enum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    PURCHASED = "PURCHASED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    AUTHORIZED = "AUTHORIZED"
    CAPTURED = "CAPTURED"
    TRANSFERRED = "TRANSFERRED"
    REFUNDED = "REFUNDED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class PaymentType(str, Enum):
    CHARGE = "charge"
    REFUND = "refund"
    PAYOUT = "payout"


# Trip status only moves forward along the journey. A trip can only be
# cancelled before it departs.
TRIP_JOURNEY = [
    TripStatus.ANNOUNCED,
    TripStatus.TRAVELING,
    TripStatus.AT_DESTINATION,
    TripStatus.RETURNING,
    TripStatus.COMPLETED,
]
TRIP_TRANSITIONS: dict[TripStatus, set[TripStatus]] = {
    status: set(TRIP_JOURNEY[index + 1 :]) for index, status in enumerate(TRIP_JOURNEY)
}
TRIP_TRANSITIONS[TripStatus.ANNOUNCED].add(TripStatus.CANCELLED)
TRIP_TRANSITIONS[TripStatus.CANCELLED] = set()

# Trips that still hand out capacity to new acceptances.
RESERVABLE_TRIP_STATUSES = {TripStatus.ANNOUNCED, TripStatus.TRAVELING, TripStatus.AT_DESTINATION}

REQUEST_TRANSITIONS: dict[RequestStatus, set[RequestStatus]] = {
    RequestStatus.PENDING: {RequestStatus.ACCEPTED, RequestStatus.CANCELLED},
    RequestStatus.ACCEPTED: {RequestStatus.PURCHASED, RequestStatus.CANCELLED},
    RequestStatus.PURCHASED: {RequestStatus.DELIVERED, RequestStatus.CANCELLED},
    RequestStatus.DELIVERED: set(),
    RequestStatus.CANCELLED: set(),
}

# Requests in these statuses hold exactly one unit of their trip's capacity.
CAPACITY_HOLDING_STATUSES = {RequestStatus.ACCEPTED, RequestStatus.PURCHASED, RequestStatus.DELIVERED}

PAYMENT_TRANSITIONS: dict[PaymentStatus, set[PaymentStatus]] = {
    PaymentStatus.PENDING: {PaymentStatus.AUTHORIZED, PaymentStatus.FAILED, PaymentStatus.CANCELLED},
    PaymentStatus.AUTHORIZED: {PaymentStatus.CAPTURED, PaymentStatus.CANCELLED, PaymentStatus.FAILED},
    PaymentStatus.CAPTURED: {PaymentStatus.TRANSFERRED, PaymentStatus.REFUNDED},
    PaymentStatus.TRANSFERRED: {PaymentStatus.REFUNDED},
    # Re-entered for additional partial refunds while refunded < captured.
    PaymentStatus.REFUNDED: {PaymentStatus.REFUNDED},
    PaymentStatus.FAILED: set(),
    PaymentStatus.CANCELLED: set(),
}

REFUNDABLE_PAYMENT_STATUSES = {PaymentStatus.CAPTURED, PaymentStatus.TRANSFERRED, PaymentStatus.REFUNDED}


def is_allowed(table: dict, current: str, new: str) -> bool:
    """Return whether `current -> new` is a legal move in `table`."""

    status_type = type(next(iter(table)))
    try:
        current_status = status_type(current)
        new_status = status_type(new)
    except ValueError:
        return False
    return new_status in table.get(current_status, set())


def is_terminal(table: dict, status: str) -> bool:
    """Return whether no move leaves `status` other than a self-loop."""

    status_type = type(next(iter(table)))
    current = status_type(status)
    return not (table[current] - {current})


def validate_transition(table: dict, current: str, new: str) -> None:
    """Raise when a transition is not allowed by the state machine."""

    if not is_allowed(table, current, new):
        raise ValueError(f"Invalid transition: {_value(current)} -> {_value(new)}")


def _value(status) -> str:
    return status.value if isinstance(status, Enum) else str(status)
