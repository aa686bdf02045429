"""PastCare Billing – Usage Meter.

Pure functions comparing a tenant's storage and user consumption with its
plan limits. No I/O, no mutation, no error conditions: every result is
clamped to [0, 100].

Usage:
    from app.billing.usage import should_prompt_upgrade
    if should_prompt_upgrade(sub, used_mb=1700, user_count=3):
        ...  # show the upgrade banner
"""

from __future__ import annotations

from typing import Any

UNLIMITED_USERS = -1
DEFAULT_PROMPT_THRESHOLD = 80.0


def _clamp(value: float) -> float:
    return max(0.0, min(100.0, value))


def storage_usage_percent(used_mb: float, limit_mb: float) -> float:
    """Storage consumption as a percentage. ``limit_mb == 0`` means no limit data."""
    if not limit_mb or limit_mb <= 0:
        return 0.0
    return _clamp(used_mb / limit_mb * 100)


def user_usage_percent(user_count: int, user_limit: int) -> float:
    """User-seat consumption as a percentage. ``-1`` is unlimited."""
    if user_limit == UNLIMITED_USERS or user_limit <= 0:
        return 0.0
    return _clamp(user_count / user_limit * 100)


def should_prompt_upgrade(
    subscription: Any,
    used_mb: float,
    user_count: int,
    threshold: float = DEFAULT_PROMPT_THRESHOLD,
) -> bool:
    """True iff storage or user usage is at or above ``threshold`` percent."""
    plan = subscription.plan
    storage = storage_usage_percent(used_mb, plan.storage_limit_mb)
    users = user_usage_percent(user_count, plan.user_limit)
    return storage >= threshold or users >= threshold


def has_exceeded_storage_limit(plan: Any, used_mb: float) -> bool:
    if not plan.storage_limit_mb:
        return False
    return used_mb > plan.storage_limit_mb


def has_exceeded_user_limit(plan: Any, user_count: int) -> bool:
    return plan.user_limit != UNLIMITED_USERS and user_count > plan.user_limit


def usage_summary(
    subscription: Any,
    used_mb: float,
    user_count: int,
    threshold: float = DEFAULT_PROMPT_THRESHOLD,
) -> dict[str, Any]:
    """Display payload for the billing page."""
    plan = subscription.plan
    return {
        "storage_used_mb": used_mb,
        "storage_limit_mb": plan.storage_limit_mb,
        "storage_percent": storage_usage_percent(used_mb, plan.storage_limit_mb),
        "user_count": user_count,
        "user_limit": plan.user_limit,
        "user_percent": user_usage_percent(user_count, plan.user_limit),
        "storage_exceeded": has_exceeded_storage_limit(plan, used_mb),
        "users_exceeded": has_exceeded_user_limit(plan, user_count),
        "prompt_upgrade": should_prompt_upgrade(subscription, used_mb, user_count, threshold),
    }
