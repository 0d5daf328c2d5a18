"""Fire concurrent accepts at one trip and check it is never oversold."""

import argparse
import asyncio
import time
from collections import Counter
from uuid import uuid4

import httpx


async def setup(client: httpx.AsyncClient, base_url: str, capacity: int, requests: int) -> tuple[str, list[str]]:
    """Create one trip and `requests` pending requests attached to it."""

    resp = await client.post(
        f"{base_url}/trips",
        json={"traveler_id": f"traveler-{uuid4()}", "destination": "Costco", "capacity": capacity},
    )
    resp.raise_for_status()
    trip_id = resp.json()["id"]
    request_ids = []
    for i in range(requests):
        resp = await client.post(
            f"{base_url}/requests",
            json={
                "trip_id": trip_id,
                "requester_id": f"requester-{i}",
                "items": [{"name": "paper towels", "quantity": 1, "estimated_price_cents": 1999}],
                "max_item_budget_cents": 2500,
                "delivery_fee_cents": 500,
            },
        )
        resp.raise_for_status()
        request_ids.append(resp.json()["id"])
    return trip_id, request_ids


async def run(base_url: str, capacity: int, requests: int) -> None:
    async with httpx.AsyncClient(timeout=10.0) as client:
        trip_id, request_ids = await setup(client, base_url, capacity, requests)

        async def accept(request_id: str) -> int:
            try:
                resp = await client.post(f"{base_url}/requests/{request_id}/accept")
                return resp.status_code
            except httpx.HTTPError:
                return 599

        started = time.perf_counter()
        codes = await asyncio.gather(*(accept(request_id) for request_id in request_ids))
        elapsed_ms = (time.perf_counter() - started) * 1000
        trip = (await client.get(f"{base_url}/trips/{trip_id}")).json()

    counts = Counter(codes)
    print(f"trip_id={trip_id}")
    print(f"accepted={counts.get(200, 0)}")
    print(f"capacity_exhausted={counts.get(409, 0)}")
    print(f"other={sum(v for k, v in counts.items() if k not in (200, 409))}")
    print(f"available_capacity={trip['available_capacity']}")
    print(f"elapsed_ms={elapsed_ms:.2f}")
    if counts.get(200, 0) > capacity or trip["available_capacity"] < 0:
        raise SystemExit("trip was oversold")


if __name__ == "__main__":
    parser = argparse.ArgumentParser()
    parser.add_argument("--base-url", default="http://localhost:8000")
    parser.add_argument("--capacity", type=int, default=3)
    parser.add_argument("--requests", type=int, default=50)
    args = parser.parse_args()
    asyncio.run(run(args.base_url, args.capacity, args.requests))
