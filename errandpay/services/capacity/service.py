"""Capacity ledger for trip carrying slots.

`reserve` and `release` are single conditional UPDATE statements, so the
availability check and the decrement happen in one step on the trip row. They
run inside the caller's session: the request lifecycle reserves and flips the
request status in one transaction, and rolls both back together.
"""

from sqlalchemy import case, select, update

from errandpay.common.logging import logger
from errandpay.common.metrics import capacity_releases_total, capacity_reservations_total
from errandpay.common.results import CapacityExhausted, Ok, ValidationError, not_found
from errandpay.common.state_machine import RESERVABLE_TRIP_STATUSES
from errandpay.services.marketplace.models import Trip


SERVICE_NAME = "capacity-ledger"
_RESERVABLE = [status.value for status in RESERVABLE_TRIP_STATUSES]


def reserve(db, trip_id: str, amount: int = 1):
    """Take `amount` slots from the trip if that many are still free.

    Returns `Ok(available_capacity)` after the decrement, `CapacityExhausted`
    when the trip is full or no longer taking requests, `NotFoundError` when
    the trip does not exist.
    """

    if amount < 1:
        return ValidationError("reservation amount must be at least 1", {"amount": amount})

    result = db.execute(
        update(Trip)
        .where(
            Trip.id == trip_id,
            Trip.available_capacity >= amount,
            Trip.status.in_(_RESERVABLE),
        )
        .values(available_capacity=Trip.available_capacity - amount)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 1:
        available = db.execute(select(Trip.available_capacity).where(Trip.id == trip_id)).scalar_one()
        capacity_reservations_total.labels(service=SERVICE_NAME, outcome="reserved").inc()
        logger.info("capacity_reserved trip_id=%s amount=%s available=%s", trip_id, amount, available)
        return Ok(available)

    row = db.execute(select(Trip.status, Trip.available_capacity).where(Trip.id == trip_id)).one_or_none()
    if row is None:
        return not_found("trip", trip_id)
    capacity_reservations_total.labels(service=SERVICE_NAME, outcome="exhausted").inc()
    # Expected outcome of competing acceptances, so INFO rather than an error.
    logger.info(
        "capacity_exhausted trip_id=%s requested=%s available=%s trip_status=%s",
        trip_id,
        amount,
        row.available_capacity,
        row.status,
    )
    return CapacityExhausted(
        "trip has no capacity left",
        {"trip_id": trip_id, "requested": amount, "available": row.available_capacity, "trip_status": row.status},
    )


def release(db, trip_id: str, amount: int = 1):
    """Give `amount` slots back, saturating at the trip's capacity.

    Calling it more often than `reserve` never pushes availability above
    capacity, so duplicate cancellation signals are harmless.
    """

    if amount < 1:
        return ValidationError("release amount must be at least 1", {"amount": amount})

    restored = Trip.available_capacity + amount
    result = db.execute(
        update(Trip)
        .where(Trip.id == trip_id)
        .values(available_capacity=case((restored > Trip.capacity, Trip.capacity), else_=restored))
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return not_found("trip", trip_id)
    available = db.execute(select(Trip.available_capacity).where(Trip.id == trip_id)).scalar_one()
    capacity_releases_total.labels(service=SERVICE_NAME).inc()
    logger.info("capacity_released trip_id=%s amount=%s available=%s", trip_id, amount, available)
    return Ok(available)


class CapacityLedger:
    """Standalone wrapper that runs each ledger call in its own transaction."""

    def __init__(self, session_factory) -> None:
        self.session_factory = session_factory

    def reserve(self, trip_id: str, amount: int = 1):
        with self.session_factory() as db:
            outcome = reserve(db, trip_id, amount)
            if outcome.ok:
                db.commit()
            else:
                db.rollback()
            return outcome

    def release(self, trip_id: str, amount: int = 1):
        with self.session_factory() as db:
            outcome = release(db, trip_id, amount)
            if outcome.ok:
                db.commit()
            else:
                db.rollback()
            return outcome

    def available(self, trip_id: str):
        with self.session_factory() as db:
            available = db.execute(select(Trip.available_capacity).where(Trip.id == trip_id)).scalar_one_or_none()
            if available is None:
                return not_found("trip", trip_id)
            return Ok(available)
