"""Marketplace HTTP surface: outcomes map to status codes."""

import pytest
from fastapi.testclient import TestClient

from errandpay.services.marketplace.main import Services, create_app


@pytest.fixture
def client(session_factory, provider):
    return TestClient(create_app(Services(session_factory, provider)))


def _trip(client, capacity=1):
    resp = client.post("/trips", json={"traveler_id": "traveler-1", "destination": "Costco", "capacity": capacity})
    assert resp.status_code == 201
    return resp.json()


def _request(client, trip_id, requester="requester-1"):
    resp = client.post(
        "/requests",
        json={
            "trip_id": trip_id,
            "requester_id": requester,
            "items": [{"name": "olive oil", "quantity": 2, "estimated_price_cents": 900}],
            "max_item_budget_cents": 2000,
            "delivery_fee_cents": 400,
            "tip_cents": 100,
        },
    )
    assert resp.status_code == 201
    return resp.json()


def test_request_flow_over_http(client):
    trip = _trip(client, capacity=2)
    request = _request(client, trip["id"])

    assert client.get(f"/requests/{request['id']}/cost").json()["total_cents"] == 2300
    assert client.post(f"/requests/{request['id']}/accept").json()["status"] == "ACCEPTED"
    payment = client.post(f"/requests/{request['id']}/authorize", json={"payer_ref": "cus_1"}).json()
    assert payment["status"] == "AUTHORIZED"
    assert payment["amount_cents"] == 2300
    assert client.post(f"/requests/{request['id']}/purchase").json()["status"] == "PURCHASED"
    assert client.post(f"/requests/{request['id']}/deliver").json()["status"] == "DELIVERED"

    missing_account = client.post(f"/requests/{request['id']}/payout", json={"recipient_account_ref": None})
    assert missing_account.status_code == 422
    assert missing_account.json()["detail"]["code"] == "PAYOUT_ACCOUNT_MISSING"

    paid = client.post(f"/requests/{request['id']}/payout", json={"recipient_account_ref": "acct_traveler"})
    assert paid.json()["status"] == "TRANSFERRED"
    assert client.get(f"/trips/{trip['id']}").json()["available_capacity"] == 1


def test_capacity_exhausted_is_a_conflict(client):
    trip = _trip(client, capacity=1)
    first = _request(client, trip["id"])
    second = _request(client, trip["id"], requester="requester-2")

    assert client.post(f"/requests/{first['id']}/accept").status_code == 200
    resp = client.post(f"/requests/{second['id']}/accept")

    assert resp.status_code == 409
    assert resp.json()["detail"]["code"] == "CAPACITY_EXHAUSTED"
    assert client.get(f"/requests/{second['id']}").json()["status"] == "PENDING"


def test_invalid_transition_and_not_found(client):
    trip = _trip(client)
    request = _request(client, trip["id"])

    resp = client.post(f"/requests/{request['id']}/deliver")
    assert resp.status_code == 409
    assert resp.json()["detail"]["code"] == "INVALID_STATUS_TRANSITION"
    assert client.get("/requests/nope").status_code == 404
    assert client.post("/trips/nope/status", json={"status": "TRAVELING"}).status_code == 404


def test_over_refund_is_unprocessable(client):
    trip = _trip(client)
    request = _request(client, trip["id"])
    client.post(f"/requests/{request['id']}/accept")
    payment = client.post(f"/requests/{request['id']}/authorize", json={"payer_ref": "cus_1"}).json()
    client.post(f"/payments/{payment['id']}/capture")

    resp = client.post(f"/payments/{payment['id']}/refund", json={"amount_cents": 5000})

    assert resp.status_code == 422
    assert client.get(f"/payments/{payment['id']}").json()["status"] == "CAPTURED"


def test_provider_decline_maps_to_bad_gateway(client):
    trip = _trip(client)
    request = _request(client, trip["id"])
    client.post(f"/requests/{request['id']}/accept")

    resp = client.post(f"/requests/{request['id']}/authorize", json={"payer_ref": "force-decline-card"})

    assert resp.status_code == 502
    assert resp.json()["detail"]["retryable"] is False


def test_pending_list_and_actual_prices_over_http(client):
    trip = _trip(client, capacity=2)
    request = _request(client, trip["id"])

    assert [r["id"] for r in client.get(f"/trips/{trip['id']}/requests").json()] == [request["id"]]
    assert client.get("/trips/nope/requests").status_code == 404

    client.post(f"/requests/{request['id']}/accept")
    client.post(f"/requests/{request['id']}/authorize", json={"payer_ref": "cus_1"})
    resp = client.post(f"/requests/{request['id']}/purchase", json={"actual_item_prices_cents": [800]})

    assert resp.status_code == 200
    cost = client.get(f"/requests/{request['id']}/cost").json()
    assert cost["actual_prices"] is True
    assert cost["total_cents"] == 2100
