"""Trip creation and journey progression."""

from sqlalchemy import select

from errandpay.common.results import InvalidStatusTransition, ValidationError
from errandpay.common.state_machine import RequestStatus, TripStatus
from errandpay.services.marketplace.models import OutboxEvent


def test_create_trip_starts_announced_with_full_capacity(trips):
    trip = trips.create_trip("traveler-1", "Whole Foods", 3).value

    assert trip.status == TripStatus.ANNOUNCED.value
    assert trip.available_capacity == trip.capacity == 3


def test_create_trip_validation(trips):
    assert isinstance(trips.create_trip("traveler-1", "Whole Foods", 0), ValidationError)
    assert isinstance(trips.create_trip("", "Whole Foods", 2), ValidationError)


def test_trip_moves_forward_only(make_trip, trips):
    trip = make_trip()

    assert trips.advance(trip.id, TripStatus.TRAVELING).value.status == "TRAVELING"
    assert trips.advance(trip.id, "AT_DESTINATION").value.status == "AT_DESTINATION"
    outcome = trips.advance(trip.id, TripStatus.ANNOUNCED)

    assert isinstance(outcome, InvalidStatusTransition)
    assert outcome.details["from_status"] == "AT_DESTINATION"


def test_cancelled_trip_is_final(make_trip, trips):
    trip = make_trip()

    assert trips.cancel(trip.id).ok
    assert isinstance(trips.advance(trip.id, TripStatus.TRAVELING), InvalidStatusTransition)


def test_departed_trip_cannot_be_cancelled(make_trip, make_request, trips, lifecycle):
    trip = make_trip()
    request = make_request(trip.id)
    lifecycle.accept(request.id)
    lifecycle.authorize_payment(request.id, "cus_requester")
    lifecycle.mark_purchased(request.id)
    trips.advance(trip.id, TripStatus.TRAVELING)

    outcome = trips.cancel(trip.id)

    assert isinstance(outcome, InvalidStatusTransition)
    assert trips.get_trip(trip.id).value.status == TripStatus.TRAVELING.value
    assert lifecycle.deliver(request.id).ok


def test_trip_with_accepted_requests_is_not_cancelled(make_trip, make_request, trips, lifecycle, ledger):
    trip = make_trip(capacity=2)
    accepted = make_request(trip.id)
    pending = make_request(trip.id)
    lifecycle.accept(accepted.id)

    outcome = trips.advance(trip.id, TripStatus.CANCELLED)

    assert isinstance(outcome, ValidationError)
    assert outcome.details["committed_capacity"] == 1
    assert trips.get_trip(trip.id).value.status == TripStatus.ANNOUNCED.value
    assert lifecycle.get_request(pending.id).value.status == RequestStatus.PENDING.value

    assert lifecycle.cancel(accepted.id).ok
    assert trips.cancel(trip.id).ok
    assert ledger.available(trip.id).value == 2


def test_cancelling_a_trip_cancels_its_pending_requests(make_trip, make_request, trips, lifecycle, session_factory):
    trip = make_trip(capacity=2)
    first = make_request(trip.id)
    second = make_request(trip.id)

    assert trips.cancel(trip.id).value.status == TripStatus.CANCELLED.value

    for request in (first, second):
        cancelled = lifecycle.get_request(request.id).value
        assert cancelled.status == RequestStatus.CANCELLED.value
        assert cancelled.cancel_reason == "trip_cancelled"
        assert isinstance(lifecycle.accept(request.id), InvalidStatusTransition)
    with session_factory() as db:
        rows = db.execute(select(OutboxEvent)).scalars().all()
    cancelled_ids = [row.aggregate_id for row in rows if row.payload["payload"]["to_status"] == "CANCELLED"]
    assert sorted(cancelled_ids) == sorted([trip.id, first.id, second.id])
