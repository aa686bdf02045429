"""PastCare Billing – API Schemas.

Pydantic request/response models for the ``/billing`` router. Responses are
built straight from ORM rows (``from_attributes``).
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.billing.catalog import features_of


class PlanOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    display_name: str
    description: Optional[str] = None
    price: Decimal
    billing_interval: str
    storage_limit_mb: int
    user_limit: int
    is_free: bool
    is_active: bool
    display_order: int
    features: list[str] = Field(default_factory=list)

    @classmethod
    def from_plan(cls, plan: Any) -> "PlanOut":
        out = cls.model_validate(plan)
        out.features = features_of(plan)
        return out


class SubscriptionOut(BaseModel):
    """Subscription state as shown on the billing page."""

    model_config = ConfigDict(from_attributes=True)

    tenant_id: int
    status: str
    plan: PlanOut
    trial_end_date: Optional[datetime] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    next_billing_date: Optional[datetime] = None
    canceled_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None
    auto_renew: bool
    grace_period_days: int
    failed_payment_attempts: int
    free_months_remaining: int = 0
    payment_method_type: Optional[str] = None
    card_last4: Optional[str] = None
    card_brand: Optional[str] = None
    days_remaining_in_trial: Optional[int] = None
    has_access: bool = False


class PaymentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    reference: str
    amount: Decimal
    currency: str
    status: str
    payment_type: str
    description: Optional[str] = None
    period_months: int
    payment_method: Optional[str] = None
    card_last4: Optional[str] = None
    payment_date: Optional[datetime] = None
    failure_reason: Optional[str] = None
    refund_amount: Optional[Decimal] = None
    refund_date: Optional[datetime] = None
    created_at: Optional[datetime] = None


class SignupRequest(BaseModel):
    plan_id: Optional[int] = None
    trial_days: Optional[int] = Field(default=None, ge=0, le=365)
    tenant_name: Optional[str] = None
    email: Optional[str] = None


class InitializeUpgradeRequest(BaseModel):
    plan_id: int
    email: str
    callback_url: Optional[str] = None
    months: int = Field(default=1, ge=1, le=36)

    @field_validator("email")
    @classmethod
    def _email_has_at(cls, value: str) -> str:
        value = value.strip()
        if "@" not in value:
            raise ValueError("invalid email address")
        return value


class InitializeUpgradeResponse(BaseModel):
    redirect_url: str
    reference: str
    access_code: str
    amount: Decimal
    currency: str


class VerifyResponse(BaseModel):
    reference: str
    payment_status: str
    subscription_status: Optional[str] = None
    changed: bool = False


class UsageOut(BaseModel):
    storage_used_mb: float
    storage_limit_mb: int
    storage_percent: float
    user_count: int
    user_limit: int
    user_percent: float
    storage_exceeded: bool
    users_exceeded: bool
    prompt_upgrade: bool


# ── Platform admin ────────────────────────────────────────────────────────────

class PlanCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=50)
    display_name: str = Field(min_length=1, max_length=100)
    description: Optional[str] = None
    price: Decimal = Field(ge=0)
    billing_interval: str = "MONTHLY"
    storage_limit_mb: int = Field(default=0, ge=0)
    user_limit: int = Field(default=-1, ge=-1)
    is_free: bool = False
    display_order: int = 0
    features: list[str] = Field(default_factory=list)
    paystack_plan_code: Optional[str] = None


class PlanUpdateRequest(BaseModel):
    """Partial update. Pricing fields are rejected while the plan is in use."""

    display_name: Optional[str] = None
    description: Optional[str] = None
    price: Optional[Decimal] = Field(default=None, ge=0)
    billing_interval: Optional[str] = None
    storage_limit_mb: Optional[int] = Field(default=None, ge=0)
    user_limit: Optional[int] = Field(default=None, ge=-1)
    is_free: Optional[bool] = None
    display_order: Optional[int] = None
    features: Optional[list[str]] = None
    paystack_plan_code: Optional[str] = None


class PromotionalCreditRequest(BaseModel):
    months: int = Field(ge=1, le=24)
    note: Optional[str] = Field(default=None, max_length=255)
    granted_by: Optional[int] = None


class GracePeriodRequest(BaseModel):
    days: int = Field(ge=1, le=30)
    extend: bool = True


class GracePeriodStatusOut(BaseModel):
    status: str
    in_grace_period: bool
    grace_period_days: int
    grace_period_end: Optional[datetime] = None
    days_remaining: Optional[int] = None


class ManualActivationRequest(BaseModel):
    plan_id: int
    months: int = Field(default=1, ge=1, le=36)
    reason: str = Field(min_length=1)
    # PAYMENT_CALLBACK_FAILED, ALTERNATIVE_PAYMENT, GRACE_PERIOD_EXTENSION, PROMOTIONAL, EMERGENCY_OVERRIDE
    category: Optional[str] = None
    granted_by: Optional[int] = None
