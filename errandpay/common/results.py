"""Typed outcomes returned by the marketplace services.

Expected business branches (a full trip, an illegal move, bad input) come back
as one of the failure variants below instead of being raised, so callers can
branch on `outcome.ok` and map `http_status` without parsing messages.
Infrastructure problems (provider outages, database errors) still raise.
"""

from dataclasses import dataclass, field
from typing import Any, ClassVar, Generic, TypeVar, Union


T = TypeVar("T")


@dataclass(frozen=True)
class Ok(Generic[T]):
    """Successful outcome wrapping the resulting entity or value."""

    value: T
    ok: ClassVar[bool] = True


@dataclass(frozen=True)
class Failure:
    """Common shape of every business failure variant."""

    message: str
    details: dict[str, Any] = field(default_factory=dict)
    ok: ClassVar[bool] = False
    code: ClassVar[str] = "ERROR"
    http_status: ClassVar[int] = 400

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


@dataclass(frozen=True)
class ValidationError(Failure):
    """Malformed input; the caller must change the request before retrying."""

    code: ClassVar[str] = "VALIDATION_ERROR"
    http_status: ClassVar[int] = 422


@dataclass(frozen=True)
class NotFoundError(Failure):
    code: ClassVar[str] = "NOT_FOUND"
    http_status: ClassVar[int] = 404


@dataclass(frozen=True)
class CapacityExhausted(Failure):
    """The trip has no capacity left to reserve. Expected, not retried."""

    code: ClassVar[str] = "CAPACITY_EXHAUSTED"
    http_status: ClassVar[int] = 409


@dataclass(frozen=True)
class InvalidStatusTransition(Failure):
    code: ClassVar[str] = "INVALID_STATUS_TRANSITION"
    http_status: ClassVar[int] = 409


@dataclass(frozen=True)
class PayoutAccountMissing(Failure):
    """Recipient has no connected payout account; nothing was sent to the provider."""

    code: ClassVar[str] = "PAYOUT_ACCOUNT_MISSING"
    http_status: ClassVar[int] = 422


Outcome = Union[
    Ok,
    ValidationError,
    NotFoundError,
    CapacityExhausted,
    InvalidStatusTransition,
    PayoutAccountMissing,
]


def not_found(entity_type: str, entity_id: str) -> NotFoundError:
    return NotFoundError(f"{entity_type} not found", {"entity_type": entity_type, "id": entity_id})


def invalid_transition(entity_type: str, entity_id: str, current: str, target: str) -> InvalidStatusTransition:
    return InvalidStatusTransition(
        f"{entity_type} cannot move from {current} to {target}",
        {"entity_type": entity_type, "id": entity_id, "from_status": current, "to_status": target},
    )


class ConcurrencyConflict(RuntimeError):
    """A guarded update lost a race against another writer of the same row."""
