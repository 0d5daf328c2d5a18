"""Trip creation and journey status progression.

Trip status only moves forward (ANNOUNCED -> ... -> COMPLETED); only an
announced trip can be cancelled. `available_capacity` is never written here
after creation; the capacity ledger owns it.
"""

from sqlalchemy import select

from errandpay.common.events import utcnow
from errandpay.common.logging import logger
from errandpay.common.metrics import invalid_transitions_total, request_transitions_total
from errandpay.common.outbox import enqueue_status_change
from errandpay.common.results import ConcurrencyConflict, Ok, ValidationError, invalid_transition, not_found
from errandpay.common.state_machine import TRIP_TRANSITIONS, RequestStatus, TripStatus, is_allowed
from errandpay.services.marketplace.models import DeliveryRequest, OutboxEvent, Trip
from errandpay.services.marketplace.transitions import guarded_transition


class TripService:
    """Owns the trip row apart from its capacity counter."""

    def __init__(self, session_factory, service_name: str = "trips") -> None:
        self.session_factory = session_factory
        self.service_name = service_name

    def create_trip(self, traveler_id: str, destination: str, capacity: int, departure_at=None):
        if not traveler_id or not destination:
            return ValidationError("traveler_id and destination are required")
        if capacity < 1:
            return ValidationError("capacity must be at least 1", {"capacity": capacity})

        with self.session_factory() as db:
            trip = Trip(
                traveler_id=traveler_id,
                destination=destination,
                departure_at=departure_at,
                capacity=capacity,
                available_capacity=capacity,
                status=TripStatus.ANNOUNCED.value,
                state_version=0,
            )
            db.add(trip)
            db.flush()
            enqueue_status_change(db, OutboxEvent, "trip", trip.id, None, TripStatus.ANNOUNCED)
            db.commit()
            logger.info("trip_created trip_id=%s capacity=%s", trip.id, capacity)
            return Ok(trip)

    def get_trip(self, trip_id: str):
        with self.session_factory() as db:
            trip = db.get(Trip, trip_id)
            if trip is None:
                return not_found("trip", trip_id)
            return Ok(trip)

    def _reject(self, trip: Trip, target: str):
        invalid_transitions_total.labels(service=self.service_name, entity_type="trip").inc()
        logger.warning("invalid trip transition trip_id=%s from=%s to=%s", trip.id, trip.status, target)
        return invalid_transition("trip", trip.id, trip.status, target)

    def advance(self, trip_id: str, new_status: TripStatus | str):
        """Move a trip forward along its journey, or cancel it."""

        target = getattr(new_status, "value", new_status)
        if target == TripStatus.CANCELLED.value:
            return self.cancel(trip_id)
        with self.session_factory() as db:
            trip = db.get(Trip, trip_id)
            if trip is None:
                return not_found("trip", trip_id)
            if not is_allowed(TRIP_TRANSITIONS, trip.status, target):
                return self._reject(trip, target)
            if not guarded_transition(db, Trip, trip, new_status):
                db.rollback()
                raise ConcurrencyConflict(f"trip {trip_id} changed while moving to {target}")
            db.commit()
            return Ok(trip)

    def cancel(self, trip_id: str):
        """Cancel an announced trip that no accepted request depends on.

        Its pending requests are cancelled in the same transaction. While any
        request holds capacity the trip is refused; those requests have to be
        cancelled (and refunded) through the request lifecycle first.
        """

        with self.session_factory() as db:
            trip = db.get(Trip, trip_id)
            if trip is None:
                return not_found("trip", trip_id)
            if not is_allowed(TRIP_TRANSITIONS, trip.status, TripStatus.CANCELLED):
                return self._reject(trip, TripStatus.CANCELLED.value)
            if trip.available_capacity < trip.capacity:
                return _has_commitments(trip)

            pending = db.execute(
                select(DeliveryRequest).where(
                    DeliveryRequest.trip_id == trip_id,
                    DeliveryRequest.status == RequestStatus.PENDING.value,
                )
            ).scalars().all()
            now = utcnow()
            cancelled = [
                request
                for request in pending
                if guarded_transition(
                    db,
                    DeliveryRequest,
                    request,
                    RequestStatus.CANCELLED,
                    check_version=False,
                    cancelled_at=now,
                    cancel_reason="trip_cancelled",
                )
            ]
            # An acceptance that reserved capacity since the read fails this guard.
            if not guarded_transition(
                db, Trip, trip, TripStatus.CANCELLED, where=(Trip.available_capacity == Trip.capacity,)
            ):
                db.rollback()
                current = db.get(Trip, trip_id)
                if current.available_capacity < current.capacity:
                    return _has_commitments(current)
                raise ConcurrencyConflict(f"trip {trip_id} changed while cancelling")
            db.commit()

        for request in cancelled:
            request_transitions_total.labels(
                service=self.service_name,
                from_status=RequestStatus.PENDING.value,
                to_status=RequestStatus.CANCELLED.value,
            ).inc()
        logger.info("trip_cancelled trip_id=%s pending_requests_cancelled=%s", trip_id, len(cancelled))
        return Ok(trip)


def _has_commitments(trip: Trip) -> ValidationError:
    committed = trip.capacity - trip.available_capacity
    logger.info("trip cancel refused trip_id=%s committed=%s", trip.id, committed)
    return ValidationError(
        "trip has accepted requests; cancel them first",
        {"trip_id": trip.id, "committed_capacity": committed},
    )
