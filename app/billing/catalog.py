"""PastCare Billing – Plan Catalog.

Reference data for pricing tiers. Plans are looked up freely (no locking);
administrative changes follow two rules:

- price, limits and billing interval are frozen while any non-canceled
  subscription references the plan (``PlanInUse``);
- a plan referenced by any subscription or payment is never deleted, only
  deactivated, and the free plan can never be deactivated.
"""

from __future__ import annotations

import json
from decimal import Decimal
from typing import Any, Optional

import structlog
from sqlalchemy.orm import Session

from app.billing.enums import BillingInterval, SubscriptionStatus
from app.billing.errors import PlanInUse, PlanNotFound
from app.core.models import Payment, Plan, Subscription

logger = structlog.get_logger()

# Fields that define what a subscriber pays for.
FROZEN_FIELDS = frozenset({"price", "billing_interval", "storage_limit_mb", "user_limit", "is_free"})
EDITABLE_FIELDS = frozenset({"display_name", "description", "features", "display_order", "paystack_plan_code"})

DEFAULT_PLANS: list[dict[str, Any]] = [
    {
        "name": "STARTER",
        "display_name": "Starter Plan",
        "description": "For small fellowships getting started",
        "price": Decimal("0.00"),
        "billing_interval": "MONTHLY",
        "storage_limit_mb": 2048,  # 2GB
        "user_limit": 5,
        "is_free": True,
        "display_order": 1,
        "features": ["Member directory", "Attendance tracking", "2GB storage", "5 users"],
    },
    {
        "name": "PROFESSIONAL",
        "display_name": "Professional Plan",
        "description": "For growing congregations",
        "price": Decimal("50.00"),
        "billing_interval": "MONTHLY",
        "storage_limit_mb": 10240,  # 10GB
        "user_limit": 50,
        "is_free": False,
        "display_order": 2,
        "features": ["Everything in Starter", "Pastoral care", "SMS campaigns", "10GB storage", "50 users"],
    },
    {
        "name": "ENTERPRISE",
        "display_name": "Enterprise Plan",
        "description": "For multi-branch churches",
        "price": Decimal("150.00"),
        "billing_interval": "MONTHLY",
        "storage_limit_mb": 51200,  # 50GB
        "user_limit": -1,
        "is_free": False,
        "display_order": 3,
        "features": ["Everything in Professional", "Multi-branch reporting", "50GB storage", "Unlimited users"],
    },
]


def features_of(plan: Plan) -> list[str]:
    """Features as a list. Legacy rows store a comma-separated string."""
    raw = (plan.features_json or "").strip()
    if not raw:
        return []
    try:
        value = json.loads(raw)
    except ValueError:
        return [part.strip() for part in raw.split(",") if part.strip()]
    return [str(item) for item in value] if isinstance(value, list) else []


def _live_subscription_count(db: Session, plan_id: int) -> int:
    return (
        db.query(Subscription)
        .filter(
            Subscription.plan_id == plan_id,
            Subscription.status != SubscriptionStatus.CANCELED.value,
        )
        .count()
    )


def is_referenced(db: Session, plan_id: int) -> bool:
    return _live_subscription_count(db, plan_id) > 0


# ── Reads ────────────────────────────────────────────────────────────────────

def get_plan(db: Session, plan_id: int) -> Plan:
    plan = db.get(Plan, plan_id)
    if plan is None:
        raise PlanNotFound(f"Plan not found: {plan_id}")
    return plan


def get_plan_by_name(db: Session, name: str) -> Plan:
    plan = db.query(Plan).filter(Plan.name == name.upper()).first()
    if plan is None:
        raise PlanNotFound(f"Plan not found: {name}")
    return plan


def get_free_plan(db: Session) -> Plan:
    plan = (
        db.query(Plan)
        .filter(Plan.is_free.is_(True))
        .order_by(Plan.is_active.desc(), Plan.display_order.asc())
        .first()
    )
    if plan is None:
        raise PlanNotFound("No free plan configured")
    return plan


def list_active_plans(db: Session) -> list[Plan]:
    return db.query(Plan).filter(Plan.is_active.is_(True)).order_by(Plan.display_order.asc()).all()


def list_all_plans(db: Session) -> list[Plan]:
    return db.query(Plan).order_by(Plan.display_order.asc()).all()


# ── Administration ───────────────────────────────────────────────────────────

def create_plan(db: Session, **data: Any) -> Plan:
    name = str(data.pop("name")).upper()
    if db.query(Plan).filter(Plan.name == name).first():
        raise ValueError(f"Plan with name '{name}' already exists")
    features = data.pop("features", None)
    data["billing_interval"] = BillingInterval(data.get("billing_interval", "MONTHLY")).value
    plan = Plan(name=name, features_json=json.dumps(features or []), **data)
    db.add(plan)
    db.flush()
    logger.info("billing.catalog.plan_created", plan=name, plan_id=plan.id)
    return plan


def update_plan(db: Session, plan_id: int, **changes: Any) -> Plan:
    """Update a plan. Pricing and limits are frozen while the plan is in use."""
    plan = get_plan(db, plan_id)
    unknown = set(changes) - FROZEN_FIELDS - EDITABLE_FIELDS
    if unknown:
        raise ValueError(f"Unknown plan fields: {', '.join(sorted(unknown))}")

    frozen = {
        key for key in set(changes) & FROZEN_FIELDS
        if changes[key] is not None and changes[key] != getattr(plan, key)
    }
    if frozen and is_referenced(db, plan.id):
        raise PlanInUse(
            f"Plan {plan.name} is referenced by live subscriptions; cannot change {', '.join(sorted(frozen))}"
        )

    for key, value in changes.items():
        if value is None:
            continue
        if key == "features":
            plan.features_json = json.dumps(list(value))
        elif key == "billing_interval":
            plan.billing_interval = BillingInterval(value).value
        else:
            setattr(plan, key, value)
    db.flush()
    logger.info("billing.catalog.plan_updated", plan=plan.name, fields=sorted(changes))
    return plan


def deactivate_plan(db: Session, plan_id: int) -> Plan:
    plan = get_plan(db, plan_id)
    if plan.is_free:
        raise PlanInUse("Cannot deactivate the free plan")
    plan.is_active = False
    db.flush()
    logger.info("billing.catalog.plan_deactivated", plan=plan.name)
    return plan


def activate_plan(db: Session, plan_id: int) -> Plan:
    plan = get_plan(db, plan_id)
    plan.is_active = True
    db.flush()
    return plan


def delete_plan(db: Session, plan_id: int) -> None:
    plan = get_plan(db, plan_id)
    if db.query(Subscription).filter(Subscription.plan_id == plan.id).count():
        raise PlanInUse(f"Plan {plan.name} is referenced by subscriptions; deactivate it instead")
    if db.query(Payment).filter(Payment.plan_id == plan.id).count():
        raise PlanInUse(f"Plan {plan.name} is referenced by payments; deactivate it instead")
    db.delete(plan)
    db.flush()
    logger.info("billing.catalog.plan_deleted", plan=plan.name)


def seed_plans(db: Session, plans: Optional[list[dict[str, Any]]] = None) -> int:
    """Insert the default plans that do not exist yet. Returns the number created."""
    created = 0
    for data in plans or DEFAULT_PLANS:
        if db.query(Plan).filter(Plan.name == data["name"]).first():
            continue
        create_plan(db, **dict(data))
        created += 1
    if created:
        logger.info("billing.catalog.plans_seeded", count=created)
    return created
