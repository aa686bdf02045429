"""Plan catalog: seed, lookup, frozen pricing, deactivate/delete guards."""

from decimal import Decimal

import pytest

from app.billing import catalog
from app.billing.errors import PlanInUse, PlanNotFound
from app.core.models import Payment, Subscription, Tenant


@pytest.fixture
def referenced(db, plans):
    """PROFESSIONAL plan with a live subscriber."""
    db.add(Tenant(id=11, name="Bethel", email="bethel@example.org"))
    db.add(Subscription(tenant_id=11, plan_id=plans["PROFESSIONAL"].id, status="ACTIVE"))
    db.commit()
    return plans["PROFESSIONAL"]


def test_seed_is_idempotent(db):
    assert catalog.seed_plans(db) == 0
    assert [plan.name for plan in catalog.list_active_plans(db)] == ["STARTER", "PROFESSIONAL", "ENTERPRISE"]


def test_free_plan_lookup(db):
    free = catalog.get_free_plan(db)
    assert free.name == "STARTER"
    assert free.price == Decimal("0.00")


def test_get_plan_by_name_is_case_insensitive(db):
    assert catalog.get_plan_by_name(db, "professional").user_limit == 50
    with pytest.raises(PlanNotFound):
        catalog.get_plan_by_name(db, "PLATINUM")


def test_features_roundtrip(db):
    plan = catalog.create_plan(
        db, name="mission", display_name="Mission Plan", price=Decimal("25.00"), features=["SMS", "Reports"],
    )
    assert plan.name == "MISSION"
    assert catalog.features_of(plan) == ["SMS", "Reports"]


def test_duplicate_plan_name_rejected(db):
    with pytest.raises(ValueError):
        catalog.create_plan(db, name="starter", display_name="Again", price=Decimal("0"))


def test_unreferenced_plan_price_can_change(db, plans):
    plan = catalog.update_plan(db, plans["ENTERPRISE"].id, price=Decimal("175.00"))
    assert plan.price == Decimal("175.00")


def test_referenced_plan_price_is_frozen(db, referenced):
    with pytest.raises(PlanInUse):
        catalog.update_plan(db, referenced.id, price=Decimal("60.00"))
    assert referenced.price == Decimal("50.00")


def test_referenced_plan_display_fields_remain_editable(db, referenced):
    plan = catalog.update_plan(db, referenced.id, display_name="Pro", price=Decimal("50.00"))
    assert plan.display_name == "Pro"


def test_canceled_subscribers_do_not_freeze_pricing(db, plans):
    db.add(Tenant(id=12, name="Zion", email=None))
    db.add(Subscription(tenant_id=12, plan_id=plans["ENTERPRISE"].id, status="CANCELED"))
    db.commit()
    assert catalog.update_plan(db, plans["ENTERPRISE"].id, user_limit=500).user_limit == 500


def test_unknown_field_rejected(db, plans):
    with pytest.raises(ValueError):
        catalog.update_plan(db, plans["STARTER"].id, colour="blue")


def test_free_plan_cannot_be_deactivated(db, plans):
    with pytest.raises(PlanInUse):
        catalog.deactivate_plan(db, plans["STARTER"].id)


def test_deactivated_plan_hidden_from_catalog(db, plans):
    catalog.deactivate_plan(db, plans["ENTERPRISE"].id)
    db.flush()
    assert "ENTERPRISE" not in [plan.name for plan in catalog.list_active_plans(db)]
    assert "ENTERPRISE" in [plan.name for plan in catalog.list_all_plans(db)]
    catalog.activate_plan(db, plans["ENTERPRISE"].id)
    db.flush()
    assert "ENTERPRISE" in [plan.name for plan in catalog.list_active_plans(db)]


def test_referenced_plan_cannot_be_deleted(db, referenced):
    with pytest.raises(PlanInUse):
        catalog.delete_plan(db, referenced.id)


def test_unreferenced_plan_can_be_deleted(db, plans):
    catalog.delete_plan(db, plans["ENTERPRISE"].id)
    with pytest.raises(PlanNotFound):
        catalog.get_plan(db, plans["ENTERPRISE"].id)


def test_plan_referenced_by_payment_cannot_be_deleted(db, plans):
    db.add(Tenant(id=13, name="Zion", email="zion@example.org"))
    sub = Subscription(tenant_id=13, plan_id=plans["STARTER"].id, status="ACTIVE")
    db.add(sub)
    db.flush()
    db.add(Payment(
        tenant_id=13,
        subscription_id=sub.id,
        plan_id=plans["ENTERPRISE"].id,
        amount=Decimal("150.00"),
        currency="GHS",
        status="FAILED",
        reference="SUB-zion-enterprise",
        payment_type="SUBSCRIPTION",
    ))
    db.commit()

    with pytest.raises(PlanInUse):
        catalog.delete_plan(db, plans["ENTERPRISE"].id)
    assert catalog.get_plan(db, plans["ENTERPRISE"].id).name == "ENTERPRISE"
