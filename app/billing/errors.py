"""Billing error hierarchy.

Every error the engine raises derives from :class:`BillingError`. The HTTP
layer maps them to status codes in ``app/gateway/routers/billing.py``.

Only :class:`ReconciliationConflict` needs a human: it means our ledger and
Paystack disagree about whether money moved.
"""

from __future__ import annotations


class BillingError(Exception):
    """Base class for billing failures."""


class InvalidTransition(BillingError):
    """Operation is not legal from the subscription's current status."""

    def __init__(self, operation: str, status: str, detail: str = "") -> None:
        self.operation = operation
        self.status = status
        message = f"Cannot {operation} a subscription in status {status}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class ReconciliationConflict(BillingError):
    """Outcome disagrees with the outcome already recorded for a reference."""

    def __init__(self, reference: str, recorded: str, received: str, detail: str = "") -> None:
        self.reference = reference
        self.recorded = recorded
        self.received = received
        message = f"Payment {reference} already recorded as {recorded}, received {received}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class GatewayUnavailable(BillingError):
    """Paystack timed out or could not be reached. Safe for the caller to retry."""


class GatewayRejected(BillingError):
    """Paystack answered but refused the request."""


class ReactivationWindowExpired(BillingError):
    """Reactivation attempted after ``ends_at``. The tenant must re-subscribe."""


class PlanNotFound(BillingError):
    pass


class PlanInUse(BillingError):
    """Plan pricing or limits cannot change while a live subscription references it."""


class SubscriptionNotFound(BillingError):
    pass


class SubscriptionExists(BillingError):
    pass


class PaymentNotFound(BillingError):
    pass
