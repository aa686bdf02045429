"""PastCare Billing – Instrumentation.

Structured logging and Prometheus metrics with per-tenant request labels.
"""

import time
import logging
from typing import Callable

import structlog
from fastapi import FastAPI, Request, Response, APIRouter
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    Counter,
    Histogram,
    generate_latest,
)

router = APIRouter(tags=["monitoring"])

# --- HTTP Metrics ---

REQUEST_COUNT = Counter(
    "pastcare_http_requests_total",
    "Total HTTP requests by method, endpoint, status and tenant",
    ["method", "endpoint", "status", "tenant_id"],
)

REQUEST_LATENCY = Histogram(
    "pastcare_http_request_duration_seconds",
    "HTTP request latency by method, endpoint and tenant",
    ["method", "endpoint", "tenant_id"],
)

# --- Billing Metrics ---

BILLING_RECONCILIATIONS = Counter(
    "pastcare_billing_reconciliations_total",
    "Gateway outcomes reconciled, by result (applied, duplicate, conflict, unknown)",
    ["result"],
)

BILLING_GATEWAY_CALLS = Counter(
    "pastcare_billing_gateway_calls_total",
    "Paystack API calls by operation and result",
    ["operation", "result"],
)

BILLING_TRANSITIONS = Counter(
    "pastcare_billing_transitions_total",
    "Subscription status transitions by event and target status",
    ["event", "status"],
)


@router.get("/metrics")
def metrics():
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


def setup_logging(log_level: str = "info"):
    """Configure structlog with JSON output."""
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def setup_instrumentation(app: FastAPI, log_level: str = "info") -> None:
    """Attach middleware for per-tenant metric tracking."""
    setup_logging(log_level)

    @app.middleware("http")
    async def metrics_middleware(request: Request, call_next: Callable) -> Response:
        start_time = time.time()

        tenant_id = request.headers.get("x-tenant-id", "unknown")
        path = request.url.path
        status = "500"

        try:
            response = await call_next(request)
            status = str(response.status_code)
        finally:
            duration = time.time() - start_time
            REQUEST_COUNT.labels(
                method=request.method,
                endpoint=path,
                status=status,
                tenant_id=tenant_id,
            ).inc()

            REQUEST_LATENCY.labels(
                method=request.method,
                endpoint=path,
                tenant_id=tenant_id,
            ).observe(duration)

        return response
