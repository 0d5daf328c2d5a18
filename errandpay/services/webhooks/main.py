"""HTTP endpoint receiving payment-provider webhooks.

200 acknowledges a delivery (applied, duplicate or deliberately ignored), 400
rejects one that failed verification, 500 asks the provider to retry later.
"""

import redis
from fastapi import FastAPI, Header, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from errandpay.common.config import settings
from errandpay.common.db import get_session_factory
from errandpay.common.http import install_metrics_middleware
from errandpay.common.logging import configure_logging, trace_id_ctx
from errandpay.common.metrics import metrics_response
from errandpay.common.startup import log_startup_config
from errandpay.common.tracing import instrument_app, setup_tracing
from errandpay.services.escrow.provider import StripePaymentProvider
from errandpay.services.escrow.service import EscrowService
from errandpay.services.webhooks.service import WebhookReconciler
from errandpay.services.webhooks.signature import SIGNATURE_HEADER


def create_app(reconciler: WebhookReconciler) -> FastAPI:
    app = FastAPI(title="errandpay webhooks")
    install_metrics_middleware(app, reconciler.service_name)

    @app.post("/webhooks/payments")
    async def receive_payment_webhook(
        request: Request,
        stripe_signature: str | None = Header(default=None, alias=SIGNATURE_HEADER),
    ):
        """Verify and apply one provider delivery."""

        trace_id_ctx.set(request.headers.get("x-trace-id", ""))
        raw = await request.body()
        result = await run_in_threadpool(reconciler.handle, raw, stripe_signature)
        return JSONResponse(
            status_code=result.status_code,
            content={"received": result.ack, "reason": result.reason},
        )

    @app.get("/metrics")
    def metrics():
        """Prometheus scrape endpoint."""

        return metrics_response()

    @app.get("/health")
    def health():
        """Container health check endpoint."""

        return {"ok": True}

    return app


def build_reconciler() -> WebhookReconciler:
    escrow = EscrowService(get_session_factory(), StripePaymentProvider(), service_name=settings.service_name)
    dedup_cache = redis.Redis.from_url(settings.redis_url, decode_responses=True)
    return WebhookReconciler(escrow, dedup_cache, service_name=settings.service_name)


configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings.service_name,
    ["SERVICE_NAME", "POSTGRES_DSN", "REDIS_URL", "WEBHOOK_SECRET", "WEBHOOK_TOLERANCE_SECONDS"],
)
app = create_app(build_reconciler())
instrument_app(app)
