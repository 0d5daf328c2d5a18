"""Shared fixtures: a throwaway SQLite store per test and the simulated provider."""

import pytest

from errandpay.common.db import Base, make_session_factory
from errandpay.services.capacity.service import CapacityLedger
from errandpay.services.escrow.provider import SimulatedPaymentProvider
from errandpay.services.escrow.service import EscrowService
from errandpay.services.marketplace import models  # noqa: F401  registers tables on Base
from errandpay.services.requests.service import RequestLifecycleService
from errandpay.services.trips.service import TripService
from errandpay.services.webhooks.service import WebhookReconciler


WEBHOOK_SECRET = "whsec_test_secret"


class FakeDedupCache:
    """Dict-backed stand-in for the Redis client's get/setex."""

    def __init__(self) -> None:
        self.store: dict[str, str] = {}
        self.ttls: dict[str, int] = {}

    def get(self, key: str):
        return self.store.get(key)

    def setex(self, key: str, ttl: int, value: str) -> None:
        self.store[key] = value
        self.ttls[key] = ttl


@pytest.fixture
def session_factory(tmp_path):
    factory = make_session_factory(
        f"sqlite:///{tmp_path / 'errandpay.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    engine = factory.kw["bind"]
    Base.metadata.create_all(engine)
    yield factory
    engine.dispose()


@pytest.fixture
def provider():
    return SimulatedPaymentProvider()


@pytest.fixture
def trips(session_factory):
    return TripService(session_factory)


@pytest.fixture
def ledger(session_factory):
    return CapacityLedger(session_factory)


@pytest.fixture
def escrow(session_factory, provider):
    return EscrowService(session_factory, provider, platform_fee_bps=0, default_currency="USD")


@pytest.fixture
def lifecycle(session_factory, escrow):
    return RequestLifecycleService(session_factory, escrow)


@pytest.fixture
def dedup_cache():
    return FakeDedupCache()


@pytest.fixture
def reconciler(escrow, dedup_cache):
    return WebhookReconciler(escrow, dedup_cache, secret=WEBHOOK_SECRET, tolerance_seconds=300, dedup_ttl_seconds=600)


@pytest.fixture
def make_trip(trips):
    def _make(capacity: int = 2, destination: str = "Trader Joe's"):
        outcome = trips.create_trip("traveler-1", destination, capacity)
        assert outcome.ok
        return outcome.value

    return _make


@pytest.fixture
def make_request(lifecycle):
    def _make(trip_id: str, delivery_fee_cents: int = 500, tip_cents: int = 0, price_cents: int = 1500):
        outcome = lifecycle.create_request(
            trip_id,
            "requester-1",
            [{"name": "oat milk", "quantity": 1, "estimated_price_cents": price_cents}],
            max_item_budget_cents=2000,
            delivery_fee_cents=delivery_fee_cents,
            tip_cents=tip_cents,
        )
        assert outcome.ok, outcome
        return outcome.value

    return _make
