"""PastCare Billing – Platform Admin Router.

Platform-operator endpoints, guarded by the ``X-Admin-Token`` header
(``settings.admin_api_token``; an empty token disables the whole router).

Endpoints
---------
Plans:
    GET    /admin/billing/plans                          → All plans, inactive included
    POST   /admin/billing/plans                          → Create a plan
    PATCH  /admin/billing/plans/{plan_id}                → Partial update (pricing frozen while in use)
    POST   /admin/billing/plans/{plan_id}/activate       → Show in the catalog
    POST   /admin/billing/plans/{plan_id}/deactivate     → Hide from the catalog
    DELETE /admin/billing/plans/{plan_id}                → Delete an unreferenced plan

Tenants:
    POST   /admin/billing/tenants/{id}/promotional-credits  → Grant free months
    DELETE /admin/billing/tenants/{id}/promotional-credits  → Revoke free months
    GET    /admin/billing/tenants/{id}/grace-period         → Grace period status
    POST   /admin/billing/tenants/{id}/grace-period         → Grant / reset grace days
    DELETE /admin/billing/tenants/{id}/grace-period         → Revoke grace (may suspend)
    POST   /admin/billing/tenants/{id}/manual-activate      → Activate without a gateway payment

Reporting:
    GET    /admin/billing/stats                          → Subscription and payment counters
"""
from __future__ import annotations

import hmac
from typing import Any, Optional

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException

from app.billing.service import BillingService
from app.gateway.routers.billing import _call, _subscription_out, get_billing_service
from app.gateway.schemas import (
    GracePeriodRequest,
    GracePeriodStatusOut,
    ManualActivationRequest,
    PlanCreateRequest,
    PlanOut,
    PlanUpdateRequest,
    PromotionalCreditRequest,
    SubscriptionOut,
)

logger = structlog.get_logger()


def require_platform_admin(
    x_admin_token: Optional[str] = Header(default=None, alias="x-admin-token"),
    service: BillingService = Depends(get_billing_service),
) -> None:
    expected = (service.settings.admin_api_token or "").strip()
    if not expected:
        raise HTTPException(status_code=403, detail="Admin API disabled")
    if not hmac.compare_digest(expected, (x_admin_token or "").strip()):
        logger.warning("billing.admin.forbidden", reason="invalid_token")
        raise HTTPException(status_code=403, detail="Invalid admin token")


router = APIRouter(
    prefix="/admin/billing",
    tags=["admin-billing"],
    dependencies=[Depends(require_platform_admin)],
)


# ── Plans ──────────────────────────────────────────────────────────────────────

@router.get("/plans", response_model=list[PlanOut])
async def list_all_plans(service: BillingService = Depends(get_billing_service)) -> list[PlanOut]:
    plans = await _call(service.list_all_plans)
    return [PlanOut.from_plan(plan) for plan in plans]


@router.post("/plans", response_model=PlanOut, status_code=201)
async def create_plan(
    body: PlanCreateRequest,
    service: BillingService = Depends(get_billing_service),
) -> PlanOut:
    plan = await _call(service.create_plan, **body.model_dump())
    logger.info("billing.admin.plan_created", plan=plan.name)
    return PlanOut.from_plan(plan)


@router.patch("/plans/{plan_id}", response_model=PlanOut)
async def update_plan(
    plan_id: int,
    body: PlanUpdateRequest,
    service: BillingService = Depends(get_billing_service),
) -> PlanOut:
    plan = await _call(service.update_plan, plan_id, **body.model_dump(exclude_unset=True))
    return PlanOut.from_plan(plan)


@router.post("/plans/{plan_id}/activate", response_model=PlanOut)
async def activate_plan(plan_id: int, service: BillingService = Depends(get_billing_service)) -> PlanOut:
    return PlanOut.from_plan(await _call(service.set_plan_active, plan_id, True))


@router.post("/plans/{plan_id}/deactivate", response_model=PlanOut)
async def deactivate_plan(plan_id: int, service: BillingService = Depends(get_billing_service)) -> PlanOut:
    return PlanOut.from_plan(await _call(service.set_plan_active, plan_id, False))


@router.delete("/plans/{plan_id}")
async def delete_plan(plan_id: int, service: BillingService = Depends(get_billing_service)) -> dict[str, Any]:
    await _call(service.delete_plan, plan_id)
    return {"status": "deleted", "plan_id": plan_id}


# ── Tenants ────────────────────────────────────────────────────────────────────

@router.post("/tenants/{tenant_id}/promotional-credits", response_model=SubscriptionOut)
async def grant_promotional_credits(
    tenant_id: int,
    body: PromotionalCreditRequest,
    service: BillingService = Depends(get_billing_service),
) -> SubscriptionOut:
    subscription = await _call(
        service.grant_promotional_credits,
        tenant_id,
        body.months,
        note=body.note,
        granted_by=body.granted_by,
    )
    return _subscription_out(subscription)


@router.delete("/tenants/{tenant_id}/promotional-credits", response_model=SubscriptionOut)
async def revoke_promotional_credits(
    tenant_id: int,
    service: BillingService = Depends(get_billing_service),
) -> SubscriptionOut:
    return _subscription_out(await _call(service.revoke_promotional_credits, tenant_id))


@router.get("/tenants/{tenant_id}/grace-period", response_model=GracePeriodStatusOut)
async def grace_period_status(
    tenant_id: int,
    service: BillingService = Depends(get_billing_service),
) -> GracePeriodStatusOut:
    return GracePeriodStatusOut(**await _call(service.grace_period_status, tenant_id))


@router.post("/tenants/{tenant_id}/grace-period", response_model=SubscriptionOut)
async def grant_grace_period(
    tenant_id: int,
    body: GracePeriodRequest,
    service: BillingService = Depends(get_billing_service),
) -> SubscriptionOut:
    subscription = await _call(service.grant_grace_period, tenant_id, body.days, extend=body.extend)
    return _subscription_out(subscription)


@router.delete("/tenants/{tenant_id}/grace-period", response_model=SubscriptionOut)
async def revoke_grace_period(
    tenant_id: int,
    service: BillingService = Depends(get_billing_service),
) -> SubscriptionOut:
    return _subscription_out(await _call(service.revoke_grace_period, tenant_id))


@router.post("/tenants/{tenant_id}/manual-activate", response_model=SubscriptionOut)
async def manually_activate(
    tenant_id: int,
    body: ManualActivationRequest,
    service: BillingService = Depends(get_billing_service),
) -> SubscriptionOut:
    subscription = await _call(
        service.manually_activate,
        tenant_id,
        body.plan_id,
        months=body.months,
        reason=body.reason,
        category=body.category,
        granted_by=body.granted_by,
    )
    return _subscription_out(subscription)


# ── Reporting ──────────────────────────────────────────────────────────────────

@router.get("/stats")
async def subscription_stats(service: BillingService = Depends(get_billing_service)) -> dict[str, Any]:
    return await _call(service.subscription_stats)
