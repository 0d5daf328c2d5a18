"""Provider webhook verification.

Deliveries carry a `Stripe-Signature` header (`t=<unix>,v1=<hex>[,v1=...]`).
The stripe library checks the digest against the endpoint secret and the
timestamp against the tolerance window before the body is trusted.
"""

import json

import stripe


SIGNATURE_HEADER = "Stripe-Signature"


class WebhookVerificationError(Exception):
    """The delivery cannot be trusted: bad header, bad digest or stale timestamp."""


def construct_event(raw: bytes, header: str | None, secret: str, tolerance_seconds: int) -> dict:
    """Verify `header` against `raw` and return the event as plain dicts.

    Raises `WebhookVerificationError` when the delivery is not signed with
    `secret`. A correctly signed body that is not a JSON event raises
    `ValueError`, `TypeError` or `AttributeError` from the stripe parser.
    """

    if not secret:
        raise WebhookVerificationError("webhook secret is not configured")
    if not header:
        raise WebhookVerificationError("missing signature header")
    try:
        stripe.Webhook.construct_event(raw, header, secret, tolerance=tolerance_seconds or None)
    except stripe.SignatureVerificationError as exc:
        raise WebhookVerificationError(str(exc)) from exc
    # Handlers branch on the JSON shapes, not on stripe resource classes.
    return json.loads(raw)
