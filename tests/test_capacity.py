"""Capacity ledger: reservations never oversell and releases never overfill."""

import threading

from errandpay.common.results import CapacityExhausted, NotFoundError, ValidationError
from errandpay.common.state_machine import RequestStatus, TripStatus


def test_reserve_decrements_until_exhausted(make_trip, ledger):
    trip = make_trip(capacity=2)

    assert ledger.reserve(trip.id).value == 1
    assert ledger.reserve(trip.id).value == 0
    outcome = ledger.reserve(trip.id)

    assert isinstance(outcome, CapacityExhausted)
    assert outcome.details["available"] == 0
    assert ledger.available(trip.id).value == 0


def test_reserve_more_than_available_changes_nothing(make_trip, ledger):
    trip = make_trip(capacity=2)

    assert isinstance(ledger.reserve(trip.id, 3), CapacityExhausted)
    assert ledger.available(trip.id).value == 2


def test_reserve_rejects_non_positive_amount(make_trip, ledger):
    trip = make_trip(capacity=2)

    assert isinstance(ledger.reserve(trip.id, 0), ValidationError)


def test_unknown_trip(ledger):
    assert isinstance(ledger.reserve("missing"), NotFoundError)
    assert isinstance(ledger.release("missing"), NotFoundError)


def test_release_saturates_at_capacity(make_trip, ledger):
    trip = make_trip(capacity=2)
    ledger.reserve(trip.id)

    assert ledger.release(trip.id).value == 2
    assert ledger.release(trip.id).value == 2
    assert ledger.release(trip.id, 5).value == 2


def test_closed_trip_has_no_reservable_capacity(make_trip, ledger, trips):
    trip = make_trip(capacity=2)
    trips.advance(trip.id, TripStatus.COMPLETED)

    assert isinstance(ledger.reserve(trip.id), CapacityExhausted)


def test_two_concurrent_accepts_for_last_slot(make_trip, make_request, lifecycle, ledger):
    trip = make_trip(capacity=1)
    first = make_request(trip.id)
    second = make_request(trip.id)
    barrier = threading.Barrier(2)
    outcomes = {}

    def accept(request_id):
        barrier.wait()
        outcomes[request_id] = lifecycle.accept(request_id)

    threads = [threading.Thread(target=accept, args=(r.id,)) for r in (first, second)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    winners = [rid for rid, outcome in outcomes.items() if outcome.ok]
    losers = [rid for rid, outcome in outcomes.items() if isinstance(outcome, CapacityExhausted)]
    assert len(winners) == 1
    assert len(losers) == 1
    assert lifecycle.get_request(winners[0]).value.status == RequestStatus.ACCEPTED.value
    assert lifecycle.get_request(losers[0]).value.status == RequestStatus.PENDING.value
    assert ledger.available(trip.id).value == 0


def test_many_concurrent_accepts_never_oversell(make_trip, make_request, lifecycle, ledger):
    trip = make_trip(capacity=3)
    requests = [make_request(trip.id) for _ in range(10)]
    barrier = threading.Barrier(len(requests))
    results = []
    lock = threading.Lock()

    def accept(request_id):
        barrier.wait()
        outcome = lifecycle.accept(request_id)
        with lock:
            results.append(outcome)

    threads = [threading.Thread(target=accept, args=(r.id,)) for r in requests]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sum(1 for outcome in results if outcome.ok) == 3
    assert sum(1 for outcome in results if isinstance(outcome, CapacityExhausted)) == 7
    assert ledger.available(trip.id).value == 0
    accepted = [r for r in requests if lifecycle.get_request(r.id).value.status == RequestStatus.ACCEPTED.value]
    assert len(accepted) == 3
