"""PastCare Billing – Subscription State Machine.

Single enumerated status plus an explicit transition table. Every status
change on a Subscription goes through :func:`transition`; a ``(status,
event)`` pair that is not in :data:`TRANSITIONS` raises
:class:`InvalidTransition` before any field is touched.

The ``apply_*`` helpers mutate an ORM ``Subscription`` in place and never
commit. Locking and persistence belong to ``app.billing.service``.

Timing rules
------------
- Trial:  ``days_remaining_in_trial`` = ceil((trial_end_date - now) / 1 day), floored at 0.
- Grace:  PAST_DUE becomes SUSPENDED once ``now > current_period_end + grace_period_days``.
- Soft cancel: a canceled subscription keeps access until ``ends_at``.
"""

from __future__ import annotations

import calendar
import math
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional

from app.billing.enums import BillingInterval, SubscriptionStatus
from app.billing.errors import InvalidTransition, ReactivationWindowExpired

S = SubscriptionStatus


class Event(str, Enum):
    PAYMENT_SUCCEEDED = "payment_succeeded"
    RENEWAL_FAILED = "renewal_failed"
    TRIAL_ENDED = "trial_ended"
    GRACE_EXPIRED = "grace_expired"
    CANCEL = "cancel"
    REACTIVATE = "reactivate"
    DOWNGRADE_TO_FREE = "downgrade_to_free"


TRANSITIONS: dict[tuple[SubscriptionStatus, Event], SubscriptionStatus] = {
    (S.TRIALING, Event.PAYMENT_SUCCEEDED): S.ACTIVE,
    (S.TRIALING, Event.TRIAL_ENDED): S.ACTIVE,
    (S.TRIALING, Event.CANCEL): S.CANCELED,
    (S.ACTIVE, Event.PAYMENT_SUCCEEDED): S.ACTIVE,
    (S.ACTIVE, Event.RENEWAL_FAILED): S.PAST_DUE,
    (S.ACTIVE, Event.CANCEL): S.CANCELED,
    (S.PAST_DUE, Event.PAYMENT_SUCCEEDED): S.ACTIVE,
    (S.PAST_DUE, Event.RENEWAL_FAILED): S.PAST_DUE,
    (S.PAST_DUE, Event.GRACE_EXPIRED): S.SUSPENDED,
    (S.PAST_DUE, Event.CANCEL): S.CANCELED,
    (S.CANCELED, Event.REACTIVATE): S.ACTIVE,
    (S.CANCELED, Event.PAYMENT_SUCCEEDED): S.ACTIVE,
    (S.SUSPENDED, Event.PAYMENT_SUCCEEDED): S.ACTIVE,
}
# Downgrade to the free plan has no precondition.
for _status in SubscriptionStatus:
    TRANSITIONS[(_status, Event.DOWNGRADE_TO_FREE)] = S.ACTIVE

UPGRADEABLE = frozenset({S.TRIALING, S.ACTIVE, S.PAST_DUE})
CANCELABLE = frozenset({S.TRIALING, S.ACTIVE, S.PAST_DUE})


# ── Time helpers ─────────────────────────────────────────────────────────────

def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on round-trip)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def add_months(value: datetime, months: int) -> datetime:
    """Calendar month arithmetic, clamping the day (Jan 31 + 1 month = Feb 28/29)."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def interval_months(plan: Any) -> int:
    return BillingInterval(plan.billing_interval or BillingInterval.MONTHLY).months


# ── Transition core ──────────────────────────────────────────────────────────

def next_status(status: str, event: Event) -> SubscriptionStatus:
    """Look up the target status, raising InvalidTransition for illegal pairs."""
    current = SubscriptionStatus(status)
    try:
        return TRANSITIONS[(current, event)]
    except KeyError:
        raise InvalidTransition(event.value, current.value) from None


def transition(subscription: Any, event: Event) -> SubscriptionStatus:
    target = next_status(subscription.status, event)
    subscription.status = target.value
    return target


# ── Derived timing ───────────────────────────────────────────────────────────

def days_remaining_in_trial(subscription: Any, now: Optional[datetime] = None) -> Optional[int]:
    trial_end = as_utc(subscription.trial_end_date)
    if trial_end is None:
        return None
    now = as_utc(now) or utcnow()
    remaining = (trial_end - now).total_seconds() / 86400
    return max(0, math.ceil(remaining))


def grace_period_end(subscription: Any) -> Optional[datetime]:
    period_end = as_utc(subscription.current_period_end)
    if period_end is None:
        return None
    return period_end + timedelta(days=subscription.grace_period_days or 0)


def is_in_grace_period(subscription: Any, now: Optional[datetime] = None) -> bool:
    if subscription.status != S.PAST_DUE:
        return False
    end = grace_period_end(subscription)
    if end is None:
        return False
    return (as_utc(now) or utcnow()) <= end


def grace_expired(subscription: Any, now: Optional[datetime] = None) -> bool:
    """PAST_DUE and strictly past ``current_period_end + grace_period_days``."""
    if subscription.status != S.PAST_DUE:
        return False
    end = grace_period_end(subscription)
    # Without a paid period there is no boundary to measure grace from.
    if end is None:
        return False
    return (as_utc(now) or utcnow()) > end


def trial_expired(subscription: Any, now: Optional[datetime] = None) -> bool:
    trial_end = as_utc(subscription.trial_end_date)
    if subscription.status != S.TRIALING or trial_end is None:
        return False
    return (as_utc(now) or utcnow()) >= trial_end


def has_access(subscription: Any, now: Optional[datetime] = None) -> bool:
    """Whether the tenant may use paid features right now."""
    now = as_utc(now) or utcnow()
    status = subscription.status
    if status == S.ACTIVE:
        return True
    if status == S.TRIALING:
        return not trial_expired(subscription, now)
    if status == S.PAST_DUE:
        return not grace_expired(subscription, now)
    if status == S.CANCELED:
        ends_at = as_utc(subscription.ends_at)
        return ends_at is not None and now < ends_at
    return False


def due_event(subscription: Any, now: Optional[datetime] = None) -> Optional[Event]:
    """The time-driven event that should fire now, if any."""
    if grace_expired(subscription, now):
        return Event.GRACE_EXPIRED
    if trial_expired(subscription, now) and subscription.plan is not None and subscription.plan.is_free:
        return Event.TRIAL_ENDED
    return None


# ── Mutations ────────────────────────────────────────────────────────────────

def apply_due_transitions(subscription: Any, now: Optional[datetime] = None) -> Optional[Event]:
    """Lazy time-based transition check. Returns the event applied, if any."""
    now = as_utc(now) or utcnow()
    event = due_event(subscription, now)
    if event is None:
        return None
    transition(subscription, event)
    if event is Event.TRIAL_ENDED:
        subscription.current_period_start = now
    return event


def apply_payment_success(
    subscription: Any,
    payment: Any,
    now: Optional[datetime] = None,
    customer_code: Optional[str] = None,
) -> None:
    """Activate (or renew) the subscription for the period the payment bought."""
    now = as_utc(now) or utcnow()
    transition(subscription, Event.PAYMENT_SUCCEEDED)
    if payment.plan_id is not None:
        subscription.plan_id = payment.plan_id
        if payment.plan is not None:
            subscription.plan = payment.plan
    period_end = add_months(now, payment.period_months or 1)
    subscription.current_period_start = now
    subscription.current_period_end = period_end
    subscription.next_billing_date = period_end
    subscription.failed_payment_attempts = 0
    subscription.auto_renew = True
    subscription.canceled_at = None
    subscription.ends_at = None
    if payment.authorization_code:
        subscription.paystack_authorization_code = payment.authorization_code
    if payment.payment_method:
        subscription.payment_method_type = payment.payment_method
    if payment.card_last4:
        subscription.card_last4 = payment.card_last4
    if payment.card_brand:
        subscription.card_brand = payment.card_brand
    if customer_code:
        subscription.paystack_customer_code = customer_code


def apply_renewal_failure(
    subscription: Any, now: Optional[datetime] = None, retry_after: Optional[timedelta] = None,
) -> None:
    """Record a declined renewal; the next attempt waits ``retry_after``."""
    transition(subscription, Event.RENEWAL_FAILED)
    subscription.failed_payment_attempts = (subscription.failed_payment_attempts or 0) + 1
    if retry_after is not None:
        subscription.next_billing_date = (as_utc(now) or utcnow()) + retry_after


def apply_promotional_renewal(subscription: Any, now: Optional[datetime] = None) -> None:
    """Renew one month from a promotional credit instead of charging."""
    now = as_utc(now) or utcnow()
    if subscription.status != S.ACTIVE:
        raise InvalidTransition("renew with promotional credit", subscription.status)
    subscription.free_months_remaining -= 1
    period_end = add_months(now, 1)
    subscription.current_period_start = now
    subscription.current_period_end = period_end
    subscription.next_billing_date = period_end
    subscription.failed_payment_attempts = 0


def apply_cancel(subscription: Any, now: Optional[datetime] = None) -> bool:
    """Soft cancel. Returns False when the subscription was already canceled."""
    if subscription.status == S.CANCELED:
        return False
    now = as_utc(now) or utcnow()
    previous = subscription.status
    transition(subscription, Event.CANCEL)
    if previous == S.TRIALING:
        ends_at = subscription.trial_end_date
    else:
        ends_at = subscription.current_period_end
    subscription.canceled_at = now
    subscription.ends_at = ends_at if ends_at is not None else now
    subscription.auto_renew = False
    # failed_payment_attempts > 0 only on ACTIVE, PAST_DUE or SUSPENDED.
    subscription.failed_payment_attempts = 0
    return True


def apply_reactivate(subscription: Any, now: Optional[datetime] = None) -> SubscriptionStatus:
    now = as_utc(now) or utcnow()
    if subscription.status != S.CANCELED:
        raise InvalidTransition(Event.REACTIVATE.value, subscription.status)
    ends_at = as_utc(subscription.ends_at)
    if ends_at is None or now >= ends_at:
        raise ReactivationWindowExpired(
            f"Subscription ended at {ends_at.isoformat() if ends_at else 'cancellation'}; re-subscribe instead"
        )
    target = transition(subscription, Event.REACTIVATE)
    if subscription.current_period_end is None:
        # A reactivated trial runs to the end of the trial, then bills.
        subscription.current_period_start = now
        subscription.current_period_end = ends_at
        if subscription.plan is None or not subscription.plan.is_free:
            subscription.next_billing_date = ends_at
    subscription.canceled_at = None
    subscription.ends_at = None
    subscription.auto_renew = True
    return target


def apply_downgrade_to_free(subscription: Any, free_plan: Any, now: Optional[datetime] = None) -> None:
    now = as_utc(now) or utcnow()
    transition(subscription, Event.DOWNGRADE_TO_FREE)
    subscription.plan_id = free_plan.id
    subscription.plan = free_plan
    # Customer code is kept for a future re-subscription.
    subscription.paystack_subscription_code = None
    subscription.paystack_authorization_code = None
    subscription.failed_payment_attempts = 0
    subscription.canceled_at = None
    subscription.ends_at = None
    subscription.auto_renew = False
    subscription.current_period_start = now
    subscription.current_period_end = None
    subscription.next_billing_date = None
