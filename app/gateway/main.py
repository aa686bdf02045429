"""PastCare Billing – HTTP Gateway.

FastAPI app exposing the billing router, health and Prometheus metrics.
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.billing.catalog import seed_plans
from app.core.db import SessionLocal, run_migrations
from app.core.instrumentation import router as metrics_router, setup_instrumentation
from app.gateway.routers.billing import router as billing_router
from app.gateway.routers.billing_admin import router as billing_admin_router
from config.settings import Settings, get_settings

logger = structlog.get_logger()

VERSION = "1.0.0"

settings: Settings = get_settings()


def _parse_cors_origins(raw: str) -> list[str]:
    origins = [origin.strip() for origin in (raw or "").split(",") if origin.strip()]
    return origins or ["http://localhost:4200"]


def _enforce_startup_guards() -> None:
    if settings.is_production and not settings.paystack_secret_key:
        raise RuntimeError("Refusing startup in production without PAYSTACK_SECRET_KEY.")


@asynccontextmanager
async def lifespan(app: FastAPI):  # type: ignore[type-arg]
    """Application lifespan: schema bootstrap and plan seed on startup."""
    _enforce_startup_guards()
    run_migrations()
    # Seed billing plans (idempotent)
    db = SessionLocal()
    try:
        seed_plans(db)
        db.commit()
    except Exception as exc:
        db.rollback()
        logger.warning("pastcare.billing.plan_seed_skipped", error=str(exc))
    finally:
        db.close()
    logger.info("pastcare.billing.startup", version=VERSION, env=settings.environment)
    yield
    logger.info("pastcare.billing.shutdown")


app = FastAPI(
    title="PastCare Billing",
    description="PastCare – Subscription & Billing Lifecycle Engine – FastAPI + Paystack",
    version=VERSION,
    lifespan=lifespan,
)

setup_instrumentation(app, settings.log_level)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_parse_cors_origins(settings.cors_allowed_origins),
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)

app.include_router(billing_router)
app.include_router(billing_admin_router)
app.include_router(metrics_router)


@app.get("/health")
async def health_check() -> dict[str, Any]:
    """Health endpoint – returns service status."""
    return {
        "status": "ok",
        "service": "pastcare-billing",
        "version": VERSION,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
