"""Enumerations shared by the billing engine.

Values are the strings persisted in the database, so every enum subclasses
``str`` and compares equal to its column value.
"""

from enum import Enum


class SubscriptionStatus(str, Enum):
    TRIALING = "TRIALING"
    ACTIVE = "ACTIVE"
    PAST_DUE = "PAST_DUE"
    CANCELED = "CANCELED"
    SUSPENDED = "SUSPENDED"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"
    CHARGEBACK = "CHARGEBACK"


class PaymentType(str, Enum):
    SUBSCRIPTION = "SUBSCRIPTION"
    UPGRADE = "UPGRADE"
    DOWNGRADE = "DOWNGRADE"
    ONE_TIME = "ONE_TIME"


class BillingInterval(str, Enum):
    MONTHLY = "MONTHLY"
    YEARLY = "YEARLY"

    @property
    def months(self) -> int:
        return 12 if self is BillingInterval.YEARLY else 1


class OutcomeSource(str, Enum):
    """Where a payment outcome came from."""

    WEBHOOK = "webhook"
    VERIFY = "verify"
    CHARGE = "charge"
    SYSTEM = "system"
