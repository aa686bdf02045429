"""PastCare Billing – Payment Ledger.

Append-mostly record of payment attempts; the source of truth for "did money
move". A Payment row is created PENDING with a unique reference and is
afterwards changed only by :meth:`PaymentLedger.apply_outcome` or
:meth:`PaymentLedger.apply_refund`.

Status moves forward only::

    PENDING ──► SUCCESS ──► REFUNDED
        │           └─────► CHARGEBACK
        └─────► FAILED

Re-applying the recorded status is a no-op. A SUCCESS delivered after the
payment was already refunded or charged back is stale and ignored. Anything
else that disagrees with the recorded status raises
:class:`ReconciliationConflict` and flags the row for operator review; the
recorded status is never overwritten.

The ledger never commits. Callers own the transaction.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

import structlog
from sqlalchemy import func
from sqlalchemy.orm import Session

from app.billing.enums import OutcomeSource, PaymentStatus, PaymentType
from app.billing.errors import PaymentNotFound, ReconciliationConflict
from app.billing.state_machine import as_utc, utcnow
from app.core.models import Payment

logger = structlog.get_logger()

P = PaymentStatus

_FORWARD: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    P.PENDING: frozenset({P.SUCCESS, P.FAILED}),
    P.SUCCESS: frozenset({P.REFUNDED, P.CHARGEBACK}),
}
# Outcomes that an already-recorded status has moved past.
_SUPERSEDED: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    P.REFUNDED: frozenset({P.SUCCESS}),
    P.CHARGEBACK: frozenset({P.SUCCESS}),
}
_REVERSALS = frozenset({P.REFUNDED, P.CHARGEBACK})


@dataclass(frozen=True)
class GatewayOutcome:
    """A payment result reported by the gateway, normalized."""

    reference: str
    status: PaymentStatus
    source: OutcomeSource = OutcomeSource.WEBHOOK
    amount: Optional[Decimal] = None  # Major currency units
    currency: Optional[str] = None
    transaction_id: Optional[str] = None
    authorization_code: Optional[str] = None
    customer_code: Optional[str] = None
    channel: Optional[str] = None
    card_last4: Optional[str] = None
    card_brand: Optional[str] = None
    failure_reason: Optional[str] = None
    paid_at: Optional[datetime] = None
    refund_amount: Optional[Decimal] = None
    refund_reason: Optional[str] = None


@dataclass(frozen=True)
class LedgerResult:
    payment: Payment
    changed: bool
    previous_status: PaymentStatus


class PaymentLedger:
    """Creates payment attempts and applies their outcomes."""

    def __init__(self, currency: str = "GHS", reference_prefix: str = "SUB") -> None:
        self._currency = currency
        self._reference_prefix = reference_prefix

    # ── Creation ──────────────────────────────────────────────────────────────

    def new_reference(self, prefix: Optional[str] = None) -> str:
        return f"{prefix or self._reference_prefix}-{uuid.uuid4()}"

    def record_attempt(
        self,
        db: Session,
        subscription,
        plan,
        amount: Decimal,
        currency: Optional[str] = None,
        payment_type: PaymentType = PaymentType.SUBSCRIPTION,
        description: Optional[str] = None,
        period_months: int = 1,
        prefix: Optional[str] = None,
        renewal: bool = False,
    ) -> Payment:
        """Create a PENDING payment with a fresh reference (flushed, not committed)."""
        payment = Payment(
            tenant_id=subscription.tenant_id,
            subscription_id=subscription.id,
            plan_id=plan.id if plan is not None else None,
            plan=plan,
            amount=Decimal(amount),
            currency=currency or self._currency,
            status=P.PENDING.value,
            reference=self.new_reference(prefix),
            payment_type=PaymentType(payment_type).value,
            description=description,
            period_months=period_months,
            is_renewal=renewal,
        )
        db.add(payment)
        db.flush()
        logger.info(
            "billing.ledger.attempt_recorded",
            tenant_id=payment.tenant_id,
            reference=payment.reference,
            amount=str(payment.amount),
            payment_type=payment.payment_type,
        )
        return payment

    # ── Lookup ────────────────────────────────────────────────────────────────

    def find(self, db: Session, reference: str, lock: bool = False) -> Optional[Payment]:
        query = db.query(Payment).filter(Payment.reference == reference)
        if lock:
            query = query.with_for_update()
        return query.first()

    def get(self, db: Session, reference: str, lock: bool = False) -> Payment:
        payment = self.find(db, reference, lock=lock)
        if payment is None:
            raise PaymentNotFound(f"Payment not found: {reference}")
        return payment

    def history(self, db: Session, tenant_id: int) -> list[Payment]:
        return (
            db.query(Payment)
            .filter(Payment.tenant_id == tenant_id)
            .order_by(Payment.created_at.desc(), Payment.id.desc())
            .all()
        )

    def successful_payments(self, db: Session, tenant_id: int) -> list[Payment]:
        return (
            db.query(Payment)
            .filter(Payment.tenant_id == tenant_id, Payment.status == P.SUCCESS.value)
            .order_by(Payment.payment_date.desc())
            .all()
        )

    def pending_for_subscription(
        self,
        db: Session,
        subscription_id: int,
        payment_type: Optional[PaymentType] = None,
        renewal: Optional[bool] = None,
    ) -> list[Payment]:
        query = db.query(Payment).filter(
            Payment.subscription_id == subscription_id,
            Payment.status == P.PENDING.value,
        )
        if payment_type is not None:
            query = query.filter(Payment.payment_type == PaymentType(payment_type).value)
        if renewal is not None:
            query = query.filter(Payment.is_renewal.is_(renewal))
        return query.all()

    def needing_review(self, db: Session) -> list[Payment]:
        return db.query(Payment).filter(Payment.needs_review.is_(True)).all()

    def stats(self, db: Session) -> dict:
        counts = dict(
            db.query(Payment.status, func.count(Payment.id)).group_by(Payment.status).all()
        )
        revenue = (
            db.query(func.coalesce(func.sum(Payment.amount), 0))
            .filter(Payment.status == P.SUCCESS.value)
            .scalar()
        )
        return {
            "total_revenue": Decimal(str(revenue or 0)),
            "successful_payments": counts.get(P.SUCCESS.value, 0),
            "failed_payments": counts.get(P.FAILED.value, 0),
            "pending_payments": counts.get(P.PENDING.value, 0),
            "refunded_payments": counts.get(P.REFUNDED.value, 0),
            "chargebacks": counts.get(P.CHARGEBACK.value, 0),
        }

    # ── Outcomes ──────────────────────────────────────────────────────────────

    def apply_outcome(
        self, db: Session, reference: str, outcome: GatewayOutcome, now: Optional[datetime] = None,
    ) -> LedgerResult:
        """Apply a terminal outcome, enforcing the forward-only status rule."""
        if outcome.status in _REVERSALS:
            return self.apply_refund(
                db,
                reference,
                amount=outcome.refund_amount,
                reason=outcome.refund_reason,
                chargeback=PaymentStatus(outcome.status) is P.CHARGEBACK,
                now=now,
                source=outcome.source,
            )

        now = as_utc(now) or utcnow()
        payment = self.get(db, reference, lock=True)
        recorded = PaymentStatus(payment.status)
        received = PaymentStatus(outcome.status)

        if recorded is received or received in _SUPERSEDED.get(recorded, ()):
            logger.info(
                "billing.ledger.outcome_duplicate",
                reference=reference, status=recorded.value, source=OutcomeSource(outcome.source).value,
            )
            return LedgerResult(payment, False, recorded)

        if received not in _FORWARD.get(recorded, ()):
            self._conflict(payment, recorded, received, outcome.source)

        if received is P.SUCCESS and outcome.amount is not None and outcome.amount < payment.amount:
            self._conflict(
                payment, recorded, received, outcome.source,
                detail=f"paid {outcome.amount} {outcome.currency or ''}, expected {payment.amount}".strip(),
            )

        payment.status = received.value
        payment.outcome_source = OutcomeSource(outcome.source).value
        if outcome.transaction_id:
            payment.gateway_transaction_id = outcome.transaction_id
        if received is P.SUCCESS:
            payment.payment_date = as_utc(outcome.paid_at) or now
            payment.authorization_code = outcome.authorization_code
            payment.payment_method = outcome.channel.upper() if outcome.channel else None
            payment.card_last4 = outcome.card_last4
            payment.card_brand = outcome.card_brand.upper() if outcome.card_brand else None
        else:
            payment.failure_reason = outcome.failure_reason or "Payment failed"

        logger.info(
            "billing.ledger.outcome_applied",
            reference=reference,
            previous=recorded.value,
            status=received.value,
            source=OutcomeSource(outcome.source).value,
        )
        return LedgerResult(payment, True, recorded)

    def apply_refund(
        self,
        db: Session,
        reference: str,
        amount: Optional[Decimal] = None,
        reason: Optional[str] = None,
        chargeback: bool = False,
        now: Optional[datetime] = None,
        source: OutcomeSource = OutcomeSource.SYSTEM,
    ) -> LedgerResult:
        """Refund or charge back a successful payment.

        The original ``amount`` is left untouched; refund fields are additive.
        """
        now = as_utc(now) or utcnow()
        payment = self.get(db, reference, lock=True)
        recorded = PaymentStatus(payment.status)
        received = P.CHARGEBACK if chargeback else P.REFUNDED

        if recorded is received:
            return LedgerResult(payment, False, recorded)
        if received not in _FORWARD.get(recorded, ()):
            self._conflict(payment, recorded, received, source)

        payment.status = received.value
        payment.outcome_source = OutcomeSource(source).value
        payment.refund_amount = Decimal(amount) if amount is not None else payment.amount
        payment.refund_date = now
        payment.refund_reason = reason
        logger.info(
            "billing.ledger.payment_reversed",
            reference=reference,
            status=received.value,
            refund_amount=str(payment.refund_amount),
        )
        return LedgerResult(payment, True, recorded)

    def _conflict(
        self,
        payment: Payment,
        recorded: PaymentStatus,
        received: PaymentStatus,
        source: OutcomeSource,
        detail: str = "",
    ) -> None:
        note = f"{OutcomeSource(source).value} reported {received.value} while recorded {recorded.value}"
        if detail:
            note = f"{note}: {detail}"
        payment.needs_review = True
        payment.review_note = f"{payment.review_note}\n{note}" if payment.review_note else note
        logger.error(
            "billing.ledger.conflict",
            reference=payment.reference,
            recorded=recorded.value,
            received=received.value,
            source=OutcomeSource(source).value,
            detail=detail,
        )
        raise ReconciliationConflict(payment.reference, recorded.value, received.value, detail)
