"""Payment ledger: forward-only status, idempotency, conflicts, refunds."""

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from app.billing.enums import OutcomeSource, PaymentStatus, PaymentType
from app.billing.errors import PaymentNotFound, ReconciliationConflict
from app.billing.ledger import GatewayOutcome, PaymentLedger
from app.core.models import Subscription, Tenant

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def ledger():
    return PaymentLedger(currency="GHS", reference_prefix="SUB")


@pytest.fixture
def subscription(db, plans):
    db.add(Tenant(id=7, name="Grace Chapel", email="admin@grace.org"))
    sub = Subscription(tenant_id=7, plan_id=plans["STARTER"].id, status="TRIALING")
    db.add(sub)
    db.commit()
    return sub


@pytest.fixture
def payment(db, ledger, subscription, plans):
    payment = ledger.record_attempt(db, subscription, plans["PROFESSIONAL"], Decimal("50.00"))
    db.commit()
    return payment


def _outcome(reference, status, **kwargs):
    return GatewayOutcome(reference=reference, status=status, **kwargs)


def test_record_attempt_creates_pending_with_unique_reference(db, ledger, subscription, plans):
    first = ledger.record_attempt(db, subscription, plans["PROFESSIONAL"], Decimal("50.00"))
    second = ledger.record_attempt(db, subscription, plans["PROFESSIONAL"], Decimal("50.00"))
    assert first.status == "PENDING"
    assert first.reference.startswith("SUB-")
    assert first.reference != second.reference
    assert first.currency == "GHS"
    assert first.payment_type == PaymentType.SUBSCRIPTION.value


def test_success_records_payment_details(db, ledger, payment):
    result = ledger.apply_outcome(
        db,
        payment.reference,
        _outcome(
            payment.reference,
            PaymentStatus.SUCCESS,
            amount=Decimal("50.00"),
            transaction_id="4000001",
            authorization_code="AUTH_x",
            channel="card",
            card_last4="4081",
            card_brand="visa",
        ),
        NOW,
    )
    assert result.changed is True
    assert result.previous_status is PaymentStatus.PENDING
    assert payment.status == "SUCCESS"
    assert payment.payment_method == "CARD"
    assert payment.card_brand == "VISA"
    assert payment.gateway_transaction_id == "4000001"
    assert payment.outcome_source == "webhook"


def test_duplicate_outcome_is_noop(db, ledger, payment):
    outcome = _outcome(payment.reference, PaymentStatus.SUCCESS, amount=Decimal("50.00"))
    ledger.apply_outcome(db, payment.reference, outcome, NOW)
    result = ledger.apply_outcome(db, payment.reference, outcome, NOW)
    assert result.changed is False
    assert payment.status == "SUCCESS"


def test_conflicting_outcome_flags_for_review(db, ledger, payment):
    ledger.apply_outcome(db, payment.reference, _outcome(payment.reference, PaymentStatus.FAILED), NOW)
    with pytest.raises(ReconciliationConflict) as exc_info:
        ledger.apply_outcome(
            db,
            payment.reference,
            _outcome(payment.reference, PaymentStatus.SUCCESS, source=OutcomeSource.VERIFY),
            NOW,
        )
    assert exc_info.value.recorded == "FAILED"
    assert exc_info.value.received == "SUCCESS"
    assert payment.status == "FAILED"
    assert payment.needs_review is True
    assert "verify reported SUCCESS" in payment.review_note
    db.flush()
    assert ledger.needing_review(db) == [payment]


def test_underpayment_is_a_conflict(db, ledger, payment):
    with pytest.raises(ReconciliationConflict):
        ledger.apply_outcome(
            db,
            payment.reference,
            _outcome(payment.reference, PaymentStatus.SUCCESS, amount=Decimal("5.00")),
            NOW,
        )
    assert payment.status == "PENDING"
    assert payment.needs_review is True


def test_refund_is_additive(db, ledger, payment):
    ledger.apply_outcome(db, payment.reference, _outcome(payment.reference, PaymentStatus.SUCCESS), NOW)
    result = ledger.apply_refund(db, payment.reference, amount=Decimal("20.00"), reason="Duplicate", now=NOW)
    assert result.changed is True
    assert payment.status == "REFUNDED"
    assert payment.amount == Decimal("50.00")
    assert payment.refund_amount == Decimal("20.00")
    assert payment.refund_reason == "Duplicate"


def test_refund_requires_success(db, ledger, payment):
    with pytest.raises(ReconciliationConflict):
        ledger.apply_refund(db, payment.reference, now=NOW)
    assert payment.status == "PENDING"


def test_late_success_after_chargeback_is_ignored(db, ledger, payment):
    ledger.apply_outcome(db, payment.reference, _outcome(payment.reference, PaymentStatus.SUCCESS), NOW)
    ledger.apply_outcome(db, payment.reference, _outcome(payment.reference, PaymentStatus.CHARGEBACK), NOW)
    result = ledger.apply_outcome(db, payment.reference, _outcome(payment.reference, PaymentStatus.SUCCESS), NOW)
    assert result.changed is False
    assert payment.status == "CHARGEBACK"
    assert payment.needs_review is False


def test_unknown_reference(db, ledger):
    with pytest.raises(PaymentNotFound):
        ledger.apply_outcome(db, "SUB-missing", _outcome("SUB-missing", PaymentStatus.SUCCESS), NOW)


def test_stats_counts_revenue_from_successful_payments(db, ledger, subscription, plans):
    paid = ledger.record_attempt(db, subscription, plans["PROFESSIONAL"], Decimal("50.00"))
    ledger.record_attempt(db, subscription, plans["ENTERPRISE"], Decimal("150.00"))
    ledger.apply_outcome(db, paid.reference, _outcome(paid.reference, PaymentStatus.SUCCESS), NOW)
    db.commit()
    stats = ledger.stats(db)
    assert stats["total_revenue"] == Decimal("50.00")
    assert stats["successful_payments"] == 1
    assert stats["pending_payments"] == 1
    assert ledger.successful_payments(db, 7) == [paid]
