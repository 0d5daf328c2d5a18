"""Pieces shared by the FastAPI entrypoints."""

from time import perf_counter

from fastapi import FastAPI, HTTPException, Request

from errandpay.common.metrics import http_request_duration_seconds, http_requests_total
from errandpay.common.results import Failure


def install_metrics_middleware(app: FastAPI, service_name: str) -> None:
    """Record request count and latency for every HTTP call."""

    @app.middleware("http")
    async def metrics_middleware(request: Request, call_next):
        start = perf_counter()
        route = request.url.path
        method = request.method
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            route_obj = request.scope.get("route")
            if route_obj is not None and getattr(route_obj, "path", None):
                route = route_obj.path
            return response
        finally:
            elapsed = max(0.0, perf_counter() - start)
            http_request_duration_seconds.labels(service=service_name, route=route, method=method).observe(elapsed)
            http_requests_total.labels(
                service=service_name,
                route=route,
                method=method,
                status_code=str(status_code),
            ).inc()


def unwrap(outcome):
    """Return the value of an `Ok`, or raise the failure as an HTTP error."""

    if isinstance(outcome, Failure):
        raise HTTPException(status_code=outcome.http_status, detail=outcome.to_dict())
    return outcome.value
