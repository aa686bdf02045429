"""Subscription state machine: transition table, timing rules, field effects."""

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from app.billing import state_machine as sm
from app.billing.errors import InvalidTransition, ReactivationWindowExpired
from app.billing.state_machine import Event

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)

FREE = SimpleNamespace(id=1, is_free=True, billing_interval="MONTHLY")
PRO = SimpleNamespace(id=2, is_free=False, billing_interval="MONTHLY")


def _sub(**overrides):
    fields = dict(
        tenant_id=1,
        plan_id=PRO.id,
        plan=PRO,
        status="ACTIVE",
        trial_end_date=None,
        current_period_start=None,
        current_period_end=None,
        next_billing_date=None,
        canceled_at=None,
        ends_at=None,
        paystack_customer_code=None,
        paystack_subscription_code=None,
        paystack_authorization_code=None,
        payment_method_type=None,
        card_last4=None,
        card_brand=None,
        auto_renew=True,
        grace_period_days=7,
        failed_payment_attempts=0,
        free_months_remaining=0,
    )
    fields.update(overrides)
    return SimpleNamespace(**fields)


def _payment(**overrides):
    fields = dict(
        plan_id=PRO.id,
        plan=PRO,
        period_months=1,
        authorization_code="AUTH_abc",
        payment_method="CARD",
        card_last4="4081",
        card_brand="VISA",
    )
    fields.update(overrides)
    return SimpleNamespace(**fields)


# ── Transition table ─────────────────────────────────────────────────────────

@pytest.mark.parametrize(
    "status,event,target",
    [
        ("TRIALING", Event.PAYMENT_SUCCEEDED, "ACTIVE"),
        ("ACTIVE", Event.RENEWAL_FAILED, "PAST_DUE"),
        ("PAST_DUE", Event.RENEWAL_FAILED, "PAST_DUE"),
        ("PAST_DUE", Event.GRACE_EXPIRED, "SUSPENDED"),
        ("SUSPENDED", Event.PAYMENT_SUCCEEDED, "ACTIVE"),
        ("CANCELED", Event.REACTIVATE, "ACTIVE"),
        ("SUSPENDED", Event.DOWNGRADE_TO_FREE, "ACTIVE"),
    ],
)
def test_legal_transitions(status, event, target):
    assert sm.next_status(status, event) == target


@pytest.mark.parametrize(
    "status,event",
    [
        ("ACTIVE", Event.GRACE_EXPIRED),
        ("TRIALING", Event.RENEWAL_FAILED),
        ("SUSPENDED", Event.CANCEL),
        ("SUSPENDED", Event.REACTIVATE),
        ("ACTIVE", Event.REACTIVATE),
        ("CANCELED", Event.CANCEL),
    ],
)
def test_illegal_transition_leaves_row_untouched(status, event):
    sub = _sub(status=status)
    with pytest.raises(InvalidTransition) as exc_info:
        sm.transition(sub, event)
    assert sub.status == status
    assert exc_info.value.status == status


# ── Trial timing ─────────────────────────────────────────────────────────────

def test_days_remaining_in_trial_rounds_up():
    sub = _sub(status="TRIALING", trial_end_date=NOW + timedelta(days=3, hours=1))
    assert sm.days_remaining_in_trial(sub, NOW) == 4


def test_days_remaining_in_trial_never_negative():
    sub = _sub(status="TRIALING", trial_end_date=NOW - timedelta(days=2))
    assert sm.days_remaining_in_trial(sub, NOW) == 0


def test_days_remaining_in_trial_none_without_trial():
    assert sm.days_remaining_in_trial(_sub(), NOW) is None


def test_days_remaining_handles_naive_database_datetimes():
    sub = _sub(status="TRIALING", trial_end_date=(NOW + timedelta(days=1)).replace(tzinfo=None))
    assert sm.days_remaining_in_trial(sub, NOW) == 1


def test_free_plan_trial_expiry_activates():
    sub = _sub(status="TRIALING", plan=FREE, plan_id=FREE.id, trial_end_date=NOW - timedelta(minutes=1))
    assert sm.apply_due_transitions(sub, NOW) is Event.TRIAL_ENDED
    assert sub.status == "ACTIVE"
    assert sub.current_period_start == NOW


def test_paid_plan_trial_expiry_stays_trialing_without_access():
    sub = _sub(status="TRIALING", trial_end_date=NOW - timedelta(minutes=1))
    assert sm.apply_due_transitions(sub, NOW) is None
    assert sub.status == "TRIALING"
    assert sm.has_access(sub, NOW) is False


# ── Grace period ─────────────────────────────────────────────────────────────

def test_grace_boundary_is_strict():
    period_end = NOW - timedelta(days=7)
    sub = _sub(status="PAST_DUE", current_period_end=period_end, grace_period_days=7)
    assert sm.grace_expired(sub, NOW) is False
    assert sm.is_in_grace_period(sub, NOW) is True
    assert sm.grace_expired(sub, NOW + timedelta(seconds=1)) is True


def test_grace_expiry_suspends_past_due():
    sub = _sub(status="PAST_DUE", current_period_end=NOW - timedelta(days=8), grace_period_days=7)
    assert sm.apply_due_transitions(sub, NOW) is Event.GRACE_EXPIRED
    assert sub.status == "SUSPENDED"
    assert sm.has_access(sub, NOW) is False


def test_past_due_without_period_end_is_never_suspended():
    sub = _sub(status="PAST_DUE", current_period_end=None)
    assert sm.apply_due_transitions(sub, NOW + timedelta(days=365)) is None
    assert sub.status == "PAST_DUE"


# ── Field effects ────────────────────────────────────────────────────────────

def test_payment_success_sets_billing_period_and_card():
    sub = _sub(status="PAST_DUE", failed_payment_attempts=2, plan=FREE, plan_id=FREE.id)
    sm.apply_payment_success(sub, _payment(period_months=12), NOW, customer_code="CUS_1")
    assert sub.status == "ACTIVE"
    assert sub.plan_id == PRO.id
    assert sub.current_period_start == NOW
    assert sub.current_period_end == NOW.replace(year=2026)
    assert sub.next_billing_date == sub.current_period_end
    assert sub.failed_payment_attempts == 0
    assert sub.paystack_authorization_code == "AUTH_abc"
    assert sub.paystack_customer_code == "CUS_1"
    assert sub.card_last4 == "4081"


def test_add_months_clamps_to_month_end():
    jan31 = datetime(2025, 1, 31, tzinfo=timezone.utc)
    assert sm.add_months(jan31, 1) == datetime(2025, 2, 28, tzinfo=timezone.utc)
    assert sm.add_months(jan31, 13) == datetime(2026, 2, 28, tzinfo=timezone.utc)


def test_renewal_failure_counts_attempts():
    sub = _sub(status="ACTIVE")
    sm.apply_renewal_failure(sub)
    sm.apply_renewal_failure(sub)
    assert sub.status == "PAST_DUE"
    assert sub.failed_payment_attempts == 2


def test_renewal_failure_schedules_retry():
    sub = _sub(status="ACTIVE", next_billing_date=NOW - timedelta(hours=1))
    sm.apply_renewal_failure(sub, NOW, retry_after=timedelta(hours=24))
    assert sub.next_billing_date == NOW + timedelta(hours=24)


def test_cancel_keeps_access_until_period_end():
    period_end = NOW + timedelta(days=10)
    sub = _sub(status="ACTIVE", current_period_end=period_end)
    assert sm.apply_cancel(sub, NOW) is True
    assert sub.status == "CANCELED"
    assert sub.canceled_at == NOW
    assert sub.ends_at == period_end
    assert sub.auto_renew is False
    assert sm.has_access(sub, NOW + timedelta(days=9)) is True
    assert sm.has_access(sub, period_end) is False


def test_cancel_during_trial_ends_with_trial():
    trial_end = NOW + timedelta(days=5)
    sub = _sub(status="TRIALING", trial_end_date=trial_end)
    sm.apply_cancel(sub, NOW)
    assert sub.ends_at == trial_end


def test_cancel_is_idempotent():
    sub = _sub(status="ACTIVE", current_period_end=NOW + timedelta(days=3))
    sm.apply_cancel(sub, NOW)
    first = (sub.canceled_at, sub.ends_at)
    assert sm.apply_cancel(sub, NOW + timedelta(days=1)) is False
    assert (sub.canceled_at, sub.ends_at) == first


def test_reactivate_before_ends_at():
    sub = _sub(status="ACTIVE", current_period_end=NOW + timedelta(days=10))
    sm.apply_cancel(sub, NOW)
    assert sm.apply_reactivate(sub, NOW + timedelta(days=1)) == "ACTIVE"
    assert sub.canceled_at is None
    assert sub.ends_at is None
    assert sub.auto_renew is True


def test_reactivate_canceled_trial_bills_at_trial_end():
    trial_end = NOW + timedelta(days=5)
    sub = _sub(status="TRIALING", trial_end_date=trial_end)
    sm.apply_cancel(sub, NOW)
    assert sm.apply_reactivate(sub, NOW + timedelta(days=1)) == "ACTIVE"
    assert sub.current_period_end == trial_end
    assert sub.next_billing_date == trial_end


def test_reactivate_canceled_free_trial_has_no_billing_date():
    sub = _sub(status="TRIALING", plan=FREE, plan_id=FREE.id, trial_end_date=NOW + timedelta(days=5))
    sm.apply_cancel(sub, NOW)
    assert sm.apply_reactivate(sub, NOW) == "ACTIVE"
    assert sub.next_billing_date is None


def test_cancel_while_past_due_clears_failed_attempts():
    sub = _sub(status="PAST_DUE", failed_payment_attempts=2, current_period_end=NOW - timedelta(days=1))
    sm.apply_cancel(sub, NOW)
    assert sub.status == "CANCELED"
    assert sub.failed_payment_attempts == 0
    with pytest.raises(ReactivationWindowExpired):
        sm.apply_reactivate(sub, NOW)


def test_reactivate_after_ends_at_fails():
    sub = _sub(status="ACTIVE", current_period_end=NOW + timedelta(days=1))
    sm.apply_cancel(sub, NOW)
    with pytest.raises(ReactivationWindowExpired):
        sm.apply_reactivate(sub, NOW + timedelta(days=1))
    assert sub.status == "CANCELED"


def test_reactivate_requires_canceled():
    with pytest.raises(InvalidTransition):
        sm.apply_reactivate(_sub(status="SUSPENDED"), NOW)


def test_downgrade_clears_gateway_codes_but_keeps_customer():
    sub = _sub(
        status="SUSPENDED",
        failed_payment_attempts=3,
        paystack_customer_code="CUS_1",
        paystack_subscription_code="SUB_1",
        paystack_authorization_code="AUTH_1",
        current_period_end=NOW - timedelta(days=30),
    )
    sm.apply_downgrade_to_free(sub, FREE, NOW)
    assert sub.status == "ACTIVE"
    assert sub.plan_id == FREE.id
    assert sub.paystack_customer_code == "CUS_1"
    assert sub.paystack_subscription_code is None
    assert sub.paystack_authorization_code is None
    assert sub.failed_payment_attempts == 0
    assert sub.current_period_end is None
