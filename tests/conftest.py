"""PastCare Billing – Pytest Configuration.

Shared fixtures for all tests.
"""

import os

# Force testing mode to allow SQLite fallback in app/core/db.py
os.environ["ENVIRONMENT"] = "testing"
if "DATABASE_URL" in os.environ:
    del os.environ["DATABASE_URL"]

import json
from datetime import datetime, timezone
from decimal import Decimal
from itertools import count

import httpx
import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.billing.catalog import get_plan_by_name, seed_plans
from app.billing.paystack import PaystackClient
from app.billing.service import BillingService
from app.core.db import Base
from app.core import models  # noqa: F401
from app.gateway.main import app
from app.gateway.routers.billing import get_billing_service
from config.settings import Settings

SECRET_KEY = "sk_test_0123456789abcdef"
NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakePaystack:
    """In-memory Paystack API behind an ``httpx.MockTransport``."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.transactions: dict[str, dict] = {}
        self.reject_initialize = False
        self.timeout = False
        self.charge_status = "success"
        self._ids = count(4000001)

    def transaction(
        self,
        reference: str,
        amount: Decimal,
        status: str = "success",
        authorization_code: str = "AUTH_test123",
        currency: str = "GHS",
    ) -> dict:
        """Register (and return) the verify payload Paystack would report for ``reference``."""
        data = {
            "id": next(self._ids),
            "reference": reference,
            "status": status,
            "amount": int(Decimal(amount) * 100),
            "currency": currency,
            "channel": "card",
            "gateway_response": "Approved" if status == "success" else "Declined",
            "paid_at": "2025-03-01T12:05:00.000Z" if status == "success" else None,
            "authorization": {
                "authorization_code": authorization_code,
                "last4": "4081",
                "brand": "visa",
                "channel": "card",
                "reusable": True,
            },
            "customer": {"customer_code": "CUS_test001", "email": "admin@church.org"},
        }
        self.transactions[reference] = data
        return data

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.timeout:
            raise httpx.ReadTimeout("timed out", request=request)
        path = request.url.path

        if path == "/transaction/initialize":
            if self.reject_initialize:
                return httpx.Response(400, json={"status": False, "message": "Invalid email address"})
            body = json.loads(request.content)
            access_code = f"ac_{body['reference'][-8:]}"
            return httpx.Response(200, json={
                "status": True,
                "message": "Authorization URL created",
                "data": {
                    "authorization_url": f"https://checkout.paystack.com/{access_code}",
                    "access_code": access_code,
                    "reference": body["reference"],
                },
            })

        if path.startswith("/transaction/verify/"):
            data = self.transactions.get(path.rsplit("/", 1)[-1])
            if data is None:
                return httpx.Response(400, json={"status": False, "message": "Transaction reference not found"})
            return httpx.Response(200, json={"status": True, "message": "Verification successful", "data": data})

        if path == "/transaction/charge_authorization":
            body = json.loads(request.content)
            data = self.transaction(
                body["reference"],
                Decimal(body["amount"]) / 100,
                status=self.charge_status,
                authorization_code=body["authorization_code"],
            )
            return httpx.Response(200, json={"status": True, "message": "Charge attempted", "data": data})

        return httpx.Response(404, json={"status": False, "message": "Not found"})

    def paths(self) -> list[str]:
        return [request.url.path for request in self.requests]


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        environment="testing",
        paystack_secret_key=SECRET_KEY,
        paystack_callback_url="https://app.pastcare.test/billing/callback",
    )


@pytest.fixture
def session_factory():
    """Fresh in-memory database per test, seeded with the default plans."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    db = factory()
    try:
        seed_plans(db)
        db.commit()
    finally:
        db.close()
    yield factory
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def paystack() -> FakePaystack:
    return FakePaystack()


@pytest.fixture
def gateway(paystack, settings) -> PaystackClient:
    client = PaystackClient(
        secret_key=settings.paystack_secret_key,
        base_url=settings.paystack_base_url,
        timeout=settings.paystack_timeout_seconds,
        transport=httpx.MockTransport(paystack.handler),
    )
    yield client
    client.close()


@pytest.fixture
def service(session_factory, gateway, settings) -> BillingService:
    return BillingService(session_factory=session_factory, gateway=gateway, settings=settings)


@pytest.fixture
def plans(db):
    """Seeded plans by name."""
    return {name: get_plan_by_name(db, name) for name in ("STARTER", "PROFESSIONAL", "ENTERPRISE")}


@pytest.fixture
async def client(service):
    """Async test client for the FastAPI gateway, bound to the test service."""
    app.dependency_overrides[get_billing_service] = lambda: service
    transport = ASGITransport(app=app)
    try:
        async with AsyncClient(transport=transport, base_url="http://test") as ac:
            yield ac
    finally:
        app.dependency_overrides.pop(get_billing_service, None)
