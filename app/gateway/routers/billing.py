"""app/gateway/routers/billing.py: Subscription API + Paystack Webhook.

Endpoints (prefix /billing, tenant from the ``X-Tenant-ID`` header):
    GET  /billing/plans                  → Active plan catalog
    GET  /billing/subscription           → Current subscription (lazy refresh)
    POST /billing/subscription           → Signup (trial on the free plan by default)
    POST /billing/initialize             → PENDING payment + Paystack checkout URL
    POST /billing/verify/{reference}     → Verify-by-reference after the redirect
    POST /billing/cancel                 → Soft cancel
    POST /billing/reactivate             → Undo a cancel before ends_at
    POST /billing/downgrade              → Move to the free plan
    GET  /billing/payments               → Payment history
    GET  /billing/usage                  → Storage / user usage vs. plan limits
    POST /billing/webhook/paystack       → Paystack webhook (HMAC-SHA512 signed)

Paystack events handled:
    charge.success / charge.failed       → payment SUCCESS / FAILED
    refund.processed                     → payment REFUNDED
    charge.dispute.create                → payment CHARGEBACK
"""
from __future__ import annotations

import json as _json
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, Response
from fastapi.concurrency import run_in_threadpool

from app.billing import state_machine as sm
from app.billing.errors import (
    BillingError,
    GatewayRejected,
    GatewayUnavailable,
    InvalidTransition,
    PaymentNotFound,
    PlanInUse,
    PlanNotFound,
    ReactivationWindowExpired,
    ReconciliationConflict,
    SubscriptionExists,
    SubscriptionNotFound,
)
from app.billing.paystack import SIGNATURE_HEADER, outcome_from_webhook, verify_signature
from app.billing.service import BillingService
from app.gateway.schemas import (
    InitializeUpgradeRequest,
    InitializeUpgradeResponse,
    PaymentOut,
    PlanOut,
    SignupRequest,
    SubscriptionOut,
    UsageOut,
    VerifyResponse,
)

logger = structlog.get_logger()

router = APIRouter(prefix="/billing", tags=["billing"])

_ERROR_STATUS: list[tuple[type[BillingError], int]] = [
    (PlanNotFound, 404),
    (SubscriptionNotFound, 404),
    (PaymentNotFound, 404),
    (InvalidTransition, 409),
    (ReconciliationConflict, 409),
    (SubscriptionExists, 409),
    (PlanInUse, 409),
    (ReactivationWindowExpired, 410),
    (GatewayRejected, 502),
    (GatewayUnavailable, 503),
]


# ── Helpers ────────────────────────────────────────────────────────────────────

_service: Optional[BillingService] = None


def get_billing_service() -> BillingService:
    """Shared service instance. Tests override this dependency."""
    global _service
    if _service is None:
        _service = BillingService()
    return _service


def get_tenant_id(x_tenant_id: Optional[str] = Header(default=None)) -> int:
    if not x_tenant_id:
        raise HTTPException(status_code=400, detail="X-Tenant-ID header required")
    try:
        return int(x_tenant_id)
    except ValueError:
        raise HTTPException(status_code=400, detail="X-Tenant-ID must be an integer") from None


def _http_error(exc: BillingError) -> HTTPException:
    for error_type, status_code in _ERROR_STATUS:
        if isinstance(exc, error_type):
            return HTTPException(status_code=status_code, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


async def _call(func, *args, **kwargs):
    """Run a blocking service call off the event loop, mapping billing errors to HTTP."""
    try:
        return await run_in_threadpool(func, *args, **kwargs)
    except BillingError as exc:
        raise _http_error(exc) from exc
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc


def _subscription_out(subscription) -> SubscriptionOut:
    out = SubscriptionOut.model_validate(subscription)
    out.plan = PlanOut.from_plan(subscription.plan)
    out.days_remaining_in_trial = sm.days_remaining_in_trial(subscription)
    out.has_access = sm.has_access(subscription)
    return out


# ── Plans & subscription ───────────────────────────────────────────────────────

@router.get("/plans", response_model=list[PlanOut])
async def list_plans(service: BillingService = Depends(get_billing_service)) -> list[PlanOut]:
    plans = await _call(service.list_plans)
    return [PlanOut.from_plan(plan) for plan in plans]


@router.get("/subscription", response_model=SubscriptionOut)
async def get_subscription(
    tenant_id: int = Depends(get_tenant_id),
    service: BillingService = Depends(get_billing_service),
) -> SubscriptionOut:
    return _subscription_out(await _call(service.get_subscription, tenant_id))


@router.post("/subscription", response_model=SubscriptionOut, status_code=201)
async def create_subscription(
    body: SignupRequest,
    tenant_id: int = Depends(get_tenant_id),
    service: BillingService = Depends(get_billing_service),
) -> SubscriptionOut:
    subscription = await _call(
        service.create_subscription,
        tenant_id,
        plan_id=body.plan_id,
        trial_days=body.trial_days,
        tenant_name=body.tenant_name,
        email=body.email,
    )
    return _subscription_out(subscription)


# ── Payments ───────────────────────────────────────────────────────────────────

@router.post("/initialize", response_model=InitializeUpgradeResponse)
async def initialize_upgrade(
    body: InitializeUpgradeRequest,
    tenant_id: int = Depends(get_tenant_id),
    service: BillingService = Depends(get_billing_service),
) -> InitializeUpgradeResponse:
    checkout = await _call(
        service.initialize_upgrade,
        tenant_id,
        body.plan_id,
        body.email,
        callback_url=body.callback_url,
        months=body.months,
    )
    return InitializeUpgradeResponse(
        redirect_url=checkout.redirect_url,
        reference=checkout.reference,
        access_code=checkout.access_code,
        amount=checkout.amount,
        currency=checkout.currency,
    )


@router.post("/verify/{reference}", response_model=VerifyResponse)
async def verify_payment(
    reference: str,
    tenant_id: int = Depends(get_tenant_id),
    service: BillingService = Depends(get_billing_service),
) -> VerifyResponse:
    """Called from the Paystack redirect callback page."""
    payments = await _call(service.payment_history, tenant_id)
    if not any(payment.reference == reference for payment in payments):
        raise HTTPException(status_code=404, detail=f"Payment not found: {reference}")

    result = await _call(service.verify, reference)
    if result is None:
        return VerifyResponse(reference=reference, payment_status="PENDING")
    return VerifyResponse(
        reference=result.reference,
        payment_status=result.payment_status,
        subscription_status=result.subscription_status,
        changed=result.changed,
    )


@router.get("/payments", response_model=list[PaymentOut])
async def list_payments(
    tenant_id: int = Depends(get_tenant_id),
    service: BillingService = Depends(get_billing_service),
) -> list[PaymentOut]:
    payments = await _call(service.payment_history, tenant_id)
    return [PaymentOut.model_validate(payment) for payment in payments]


# ── Lifecycle ──────────────────────────────────────────────────────────────────

@router.post("/cancel", response_model=SubscriptionOut)
async def cancel_subscription(
    tenant_id: int = Depends(get_tenant_id),
    service: BillingService = Depends(get_billing_service),
) -> SubscriptionOut:
    return _subscription_out(await _call(service.cancel, tenant_id))


@router.post("/reactivate", response_model=SubscriptionOut)
async def reactivate_subscription(
    tenant_id: int = Depends(get_tenant_id),
    service: BillingService = Depends(get_billing_service),
) -> SubscriptionOut:
    return _subscription_out(await _call(service.reactivate, tenant_id))


@router.post("/downgrade", response_model=SubscriptionOut)
async def downgrade_subscription(
    tenant_id: int = Depends(get_tenant_id),
    service: BillingService = Depends(get_billing_service),
) -> SubscriptionOut:
    return _subscription_out(await _call(service.downgrade_to_free, tenant_id))


@router.get("/usage", response_model=UsageOut)
async def get_usage(
    used_mb: float = Query(0, ge=0),
    user_count: int = Query(0, ge=0),
    tenant_id: int = Depends(get_tenant_id),
    service: BillingService = Depends(get_billing_service),
) -> UsageOut:
    return UsageOut(**await _call(service.usage, tenant_id, used_mb, user_count))


# ── Webhook ────────────────────────────────────────────────────────────────────

@router.post("/webhook/paystack", include_in_schema=False)
async def paystack_webhook(
    request: Request,
    service: BillingService = Depends(get_billing_service),
) -> Response:
    """Paystack Webhook: HMAC-verified, always answers 200 once the signature is valid."""
    payload = await request.body()
    signature = request.headers.get(SIGNATURE_HEADER, "")

    secret_key = service.settings.paystack_secret_key.strip()
    if not secret_key:
        logger.warning("billing.webhook.no_secret_configured")
        return Response(content="secret key not configured", status_code=400)
    if not verify_signature(secret_key, payload, signature):
        logger.warning("billing.webhook.sig_invalid")
        return Response(content="invalid signature", status_code=400)

    try:
        event = _json.loads(payload)
    except ValueError:
        return Response(content="invalid payload", status_code=400)
    if not isinstance(event, dict):
        return Response(content="invalid payload", status_code=400)

    event_type = event.get("event", "")
    logger.info("billing.webhook.received", event_type=event_type)

    outcome = outcome_from_webhook(event)
    if outcome is not None:
        try:
            await run_in_threadpool(service.reconcile, outcome)
        except Exception as exc:
            logger.error(
                "billing.webhook.handler_error",
                event_type=event_type,
                reference=outcome.reference,
                error=str(exc),
            )

    return Response(
        content=_json.dumps({"received": True}),
        status_code=200,
        media_type="application/json",
    )
