"""Sign a webhook payload the way Stripe does and post it to the webhook endpoint.

Useful for replaying deliveries by hand: send the same file twice to see the
dedup window, or send a stale event to watch it become a no-op.
"""

import argparse
import hashlib
import hmac
import json
import time
from pathlib import Path
from uuid import uuid4

import httpx

from errandpay.services.webhooks.signature import SIGNATURE_HEADER


def stripe_signature(raw: bytes, secret: str) -> str:
    """`Stripe-Signature` value for `raw`, as Stripe computes it when delivering."""

    timestamp = int(time.time())
    digest = hmac.new(secret.encode("utf-8"), f"{timestamp}.".encode("utf-8") + raw, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def build_event(event_type: str, intent_id: str, amount_cents: int | None) -> dict:
    """Minimal event body for `--type/--intent` invocations."""

    obj = {"id": intent_id, "object": "payment_intent"}
    if event_type == "charge.refunded":
        obj = {"id": f"ch_{uuid4().hex[:24]}", "object": "charge", "payment_intent": intent_id}
        if amount_cents is not None:
            obj["amount_refunded"] = amount_cents
    elif amount_cents is not None:
        obj["amount_received"] = amount_cents
    return {
        "id": f"evt_{uuid4().hex[:24]}",
        "type": event_type,
        "created": int(time.time()),
        "data": {"object": obj},
    }


def main() -> None:
    """Parse CLI args, sign the body, post it and print the response."""

    parser = argparse.ArgumentParser(description="Send a signed payment webhook.")
    parser.add_argument("--url", default="http://localhost:8001/webhooks/payments")
    parser.add_argument("--secret", required=True)
    parser.add_argument("--file", dest="json_file", default=None, help="Path to a full event JSON body")
    parser.add_argument("--type", dest="event_type", default=None, help="Event type, e.g. payment_intent.succeeded")
    parser.add_argument("--intent", dest="intent_id", default=None, help="Provider payment intent id")
    parser.add_argument("--amount-cents", type=int, default=None)
    args = parser.parse_args()

    if args.json_file:
        raw = Path(args.json_file).read_bytes()
    elif args.event_type and args.intent_id:
        raw = json.dumps(build_event(args.event_type, args.intent_id, args.amount_cents)).encode("utf-8")
    else:
        raise SystemExit("Provide --file, or both --type and --intent")

    resp = httpx.post(
        args.url,
        content=raw,
        headers={SIGNATURE_HEADER: stripe_signature(raw, args.secret), "content-type": "application/json"},
        timeout=10.0,
    )
    print(f"status={resp.status_code} body={resp.text}")


if __name__ == "__main__":
    main()
