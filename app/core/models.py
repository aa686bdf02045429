from datetime import datetime, timezone

from sqlalchemy import Column, Integer, String, DateTime, Text, Boolean, Numeric, ForeignKey, CheckConstraint
from sqlalchemy.orm import relationship

from app.core.db import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Tenant(Base):
    """A church organization, the billing unit."""

    __tablename__ = "tenants"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    email = Column(String, nullable=True)  # Billing contact, used for renewal charges
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=_utcnow)


class Plan(Base):
    """Subscription plan (pricing tier).

    Pricing, limits and interval are frozen once a live subscription points at
    the plan; see app.billing.catalog.update_plan.
    """

    __tablename__ = "subscription_plans"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(50), unique=True, nullable=False)      # "STARTER", "PROFESSIONAL"
    display_name = Column(String(100), nullable=False)          # "Professional Plan"
    description = Column(Text, nullable=True)
    price = Column(Numeric(10, 2), nullable=False, default=0)   # Per billing interval
    billing_interval = Column(String(20), nullable=False, default="MONTHLY")  # MONTHLY | YEARLY
    storage_limit_mb = Column(Integer, nullable=False, default=0)  # 0 = no limit data
    user_limit = Column(Integer, nullable=False, default=-1)       # -1 = unlimited
    is_free = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=True)
    features_json = Column(Text, nullable=True)                 # JSON list of feature strings for UI display
    display_order = Column(Integer, nullable=False, default=0)
    paystack_plan_code = Column(String(100), nullable=True)

    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)


class Subscription(Base):
    """One subscription per tenant. Never deleted; cancellation is a status."""

    __tablename__ = "church_subscriptions"
    __table_args__ = (
        CheckConstraint("grace_period_days >= 0", name="ck_subscription_grace_days"),
        CheckConstraint("failed_payment_attempts >= 0", name="ck_subscription_failed_attempts"),
        CheckConstraint("free_months_remaining >= 0", name="ck_subscription_free_months"),
    )

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id"), nullable=False, unique=True)
    plan_id = Column(Integer, ForeignKey("subscription_plans.id"), nullable=False)

    # Status: TRIALING | ACTIVE | PAST_DUE | CANCELED | SUSPENDED
    status = Column(String(20), nullable=False, default="TRIALING")

    trial_end_date = Column(DateTime, nullable=True)
    current_period_start = Column(DateTime, nullable=True)
    current_period_end = Column(DateTime, nullable=True)
    next_billing_date = Column(DateTime, nullable=True)
    canceled_at = Column(DateTime, nullable=True)
    ends_at = Column(DateTime, nullable=True)

    paystack_customer_code = Column(String(100), nullable=True)
    paystack_subscription_code = Column(String(100), nullable=True)
    paystack_authorization_code = Column(String(100), nullable=True)  # For recurring charges
    payment_method_type = Column(String(50), nullable=True)           # CARD, MOBILE_MONEY, ...
    card_last4 = Column(String(4), nullable=True)
    card_brand = Column(String(50), nullable=True)

    auto_renew = Column(Boolean, nullable=False, default=True)
    grace_period_days = Column(Integer, nullable=False, default=7)
    failed_payment_attempts = Column(Integer, nullable=False, default=0)

    # Promotional credit (free months consumed by renewals before charging)
    free_months_remaining = Column(Integer, nullable=False, default=0)
    promotional_note = Column(String(255), nullable=True)
    promotional_granted_by = Column(Integer, nullable=True)
    promotional_granted_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    plan = relationship("Plan", lazy="joined")


class Payment(Base):
    """Append-once record of a payment attempt and its terminal outcome."""

    __tablename__ = "payments"
    __table_args__ = (
        CheckConstraint("amount >= 0", name="ck_payment_amount"),
        CheckConstraint("period_months >= 1", name="ck_payment_period_months"),
    )

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id"), nullable=False, index=True)
    subscription_id = Column(Integer, ForeignKey("church_subscriptions.id"), nullable=False, index=True)
    plan_id = Column(Integer, ForeignKey("subscription_plans.id"), nullable=True)

    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(10), nullable=False, default="GHS")
    # Status: PENDING | SUCCESS | FAILED | REFUNDED | CHARGEBACK
    status = Column(String(20), nullable=False, default="PENDING")
    reference = Column(String(100), nullable=False, unique=True, index=True)
    # Type: SUBSCRIPTION | UPGRADE | DOWNGRADE | ONE_TIME
    payment_type = Column(String(20), nullable=False, default="SUBSCRIPTION")
    description = Column(Text, nullable=True)
    period_months = Column(Integer, nullable=False, default=1)
    is_renewal = Column(Boolean, nullable=False, default=False)  # Scheduled charge on the saved authorization

    gateway_transaction_id = Column(String(100), nullable=True)
    authorization_code = Column(String(100), nullable=True)
    payment_method = Column(String(50), nullable=True)
    card_last4 = Column(String(4), nullable=True)
    card_brand = Column(String(50), nullable=True)
    outcome_source = Column(String(20), nullable=True)  # webhook | verify | charge | system

    # Conflict queue for operator review
    needs_review = Column(Boolean, nullable=False, default=False)
    review_note = Column(Text, nullable=True)

    payment_date = Column(DateTime, nullable=True)
    failure_reason = Column(Text, nullable=True)
    refund_amount = Column(Numeric(10, 2), nullable=True)
    refund_date = Column(DateTime, nullable=True)
    refund_reason = Column(Text, nullable=True)

    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    plan = relationship("Plan", lazy="joined")
