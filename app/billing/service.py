"""PastCare Billing – Subscription Service.

Operations on a tenant's subscription. Every mutating operation runs inside
a per-tenant exclusive section:

1. take the in-process tenant lock,
2. open a session and ``SELECT ... FOR UPDATE`` the subscription row,
3. apply lazy time-based transitions (:func:`apply_due_transitions`),
4. validate and apply the requested transition, commit.

Paystack is never called while the lock is held. Upgrades commit a PENDING
payment first, release the lock, then open the hosted checkout; the outcome
comes back later through :meth:`BillingService.reconcile` (webhook) or
:meth:`BillingService.verify` (redirect callback).

Usage:
    service = BillingService()
    checkout = service.initialize_upgrade(tenant_id=3, plan_id=2, email="admin@church.org")
    # redirect to checkout.redirect_url; Paystack later posts charge.success
"""

from __future__ import annotations

import math
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Iterator, Optional

import structlog
from sqlalchemy import func
from sqlalchemy.orm import Session

from app.billing import catalog
from app.billing import state_machine as sm
from app.billing.enums import OutcomeSource, PaymentStatus, PaymentType, SubscriptionStatus
from app.billing.errors import (
    BillingError,
    GatewayRejected,
    GatewayUnavailable,
    InvalidTransition,
    PaymentNotFound,
    PlanNotFound,
    ReconciliationConflict,
    SubscriptionExists,
    SubscriptionNotFound,
)
from app.billing.ledger import GatewayOutcome, PaymentLedger
from app.billing.paystack import PaystackClient, outcome_from_charge, outcome_from_verify
from app.billing.usage import usage_summary
from app.core.instrumentation import BILLING_RECONCILIATIONS, BILLING_TRANSITIONS
from app.core.models import Payment, Plan, Subscription, Tenant
from config.settings import Settings, get_settings

logger = structlog.get_logger()

S = SubscriptionStatus

MAX_GRACE_GRANT_DAYS = 30


@dataclass(frozen=True)
class InitializedPayment:
    redirect_url: str
    reference: str
    access_code: str
    amount: Decimal
    currency: str


@dataclass(frozen=True)
class ReconcileResult:
    reference: str
    payment_status: str
    subscription_status: Optional[str]
    changed: bool


class TenantLocks:
    """Registry of one re-entrant lock per tenant."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[int, threading.RLock] = {}

    def get(self, tenant_id: int) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(tenant_id)
            if lock is None:
                lock = self._locks[tenant_id] = threading.RLock()
            return lock

    @contextmanager
    def hold(self, tenant_id: int) -> Iterator[None]:
        with self.get(tenant_id):
            yield


def _record_transition(event: Optional[sm.Event], subscription: Subscription) -> None:
    if event is None:
        return
    BILLING_TRANSITIONS.labels(event=event.value, status=subscription.status).inc()
    logger.info(
        "billing.subscription.transition",
        tenant_id=subscription.tenant_id,
        transition=event.value,
        status=subscription.status,
    )


class BillingService:
    def __init__(
        self,
        session_factory: Optional[Callable[[], Session]] = None,
        gateway: Optional[PaystackClient] = None,
        ledger: Optional[PaymentLedger] = None,
        settings: Optional[Settings] = None,
        locks: Optional[TenantLocks] = None,
    ) -> None:
        self.settings = settings or get_settings()
        if session_factory is None:
            from app.core.db import SessionLocal
            session_factory = SessionLocal
        self._session_factory = session_factory
        self._gateway = gateway
        self.ledger = ledger or PaymentLedger(
            currency=self.settings.billing_currency,
            reference_prefix=self.settings.reference_prefix,
        )
        self._locks = locks or TenantLocks()

    @property
    def gateway(self) -> PaystackClient:
        if self._gateway is None:
            self._gateway = PaystackClient(
                secret_key=self.settings.paystack_secret_key,
                base_url=self.settings.paystack_base_url,
                timeout=self.settings.paystack_timeout_seconds,
            )
        return self._gateway

    # ── Plumbing ──────────────────────────────────────────────────────────────

    @contextmanager
    def session(self) -> Iterator[Session]:
        db = self._session_factory()
        # Returned rows stay readable after the session closes.
        db.expire_on_commit = False
        try:
            yield db
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    @contextmanager
    def _locked(self, tenant_id: int, now: Optional[datetime] = None) -> Iterator[tuple[Session, Subscription]]:
        """Tenant lock + row lock + lazy refresh."""
        with self._locks.hold(tenant_id), self.session() as db:
            subscription = self._load(db, tenant_id, lock=True)
            _record_transition(sm.apply_due_transitions(subscription, now), subscription)
            yield db, subscription

    @staticmethod
    def _load(db: Session, tenant_id: int, lock: bool = False) -> Subscription:
        query = db.query(Subscription).filter(Subscription.tenant_id == tenant_id)
        if lock:
            query = query.with_for_update()
        subscription = query.first()
        if subscription is None:
            raise SubscriptionNotFound(f"No subscription for tenant {tenant_id}")
        return subscription

    # ── Plans ─────────────────────────────────────────────────────────────────

    def list_plans(self) -> list[Plan]:
        with self.session() as db:
            return catalog.list_active_plans(db)

    def list_all_plans(self) -> list[Plan]:
        with self.session() as db:
            return catalog.list_all_plans(db)

    def create_plan(self, **data: Any) -> Plan:
        with self.session() as db:
            plan = catalog.create_plan(db, **data)
            db.commit()
            return plan

    def update_plan(self, plan_id: int, **changes: Any) -> Plan:
        with self.session() as db:
            plan = catalog.update_plan(db, plan_id, **changes)
            db.commit()
            return plan

    def set_plan_active(self, plan_id: int, active: bool) -> Plan:
        with self.session() as db:
            if active:
                plan = catalog.activate_plan(db, plan_id)
            else:
                plan = catalog.deactivate_plan(db, plan_id)
            db.commit()
            return plan

    def delete_plan(self, plan_id: int) -> None:
        with self.session() as db:
            catalog.delete_plan(db, plan_id)
            db.commit()

    # ── Signup & reads ────────────────────────────────────────────────────────

    def create_subscription(
        self,
        tenant_id: int,
        plan_id: Optional[int] = None,
        trial_days: Optional[int] = None,
        tenant_name: Optional[str] = None,
        email: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Subscription:
        """Start a tenant's subscription, on a trial unless ``trial_days`` is 0 on a free plan."""
        now = sm.as_utc(now) or sm.utcnow()
        trial_days = self.settings.default_trial_days if trial_days is None else trial_days
        if trial_days < 0:
            raise ValueError("trial_days must be >= 0")

        with self._locks.hold(tenant_id), self.session() as db:
            if db.query(Subscription).filter(Subscription.tenant_id == tenant_id).first():
                raise SubscriptionExists(f"Tenant {tenant_id} already has a subscription")

            plan = catalog.get_plan(db, plan_id) if plan_id is not None else catalog.get_free_plan(db)
            if not plan.is_active:
                raise PlanNotFound(f"Plan {plan.name} is not available")
            if trial_days == 0 and not plan.is_free:
                raise InvalidTransition("start without a trial", S.TRIALING.value, "paid plans require a payment")

            tenant = db.get(Tenant, tenant_id)
            if tenant is None:
                tenant = Tenant(id=tenant_id, name=tenant_name or f"Tenant {tenant_id}", email=email)
                db.add(tenant)
            elif email:
                tenant.email = email

            subscription = Subscription(
                tenant_id=tenant_id,
                plan_id=plan.id,
                plan=plan,
                grace_period_days=self.settings.default_grace_period_days,
                auto_renew=not plan.is_free,
            )
            if trial_days > 0:
                subscription.status = S.TRIALING.value
                subscription.trial_end_date = now + timedelta(days=trial_days)
            else:
                subscription.status = S.ACTIVE.value
                subscription.current_period_start = now
            db.add(subscription)
            db.commit()
            logger.info(
                "billing.subscription.created",
                tenant_id=tenant_id,
                plan=plan.name,
                status=subscription.status,
                trial_days=trial_days,
            )
            return subscription

    def get_subscription(self, tenant_id: int, now: Optional[datetime] = None) -> Subscription:
        """Current subscription after applying any due time-based transition."""
        with self._locked(tenant_id, now) as (db, subscription):
            db.commit()
            return subscription

    refresh = get_subscription

    def has_access(self, tenant_id: int, now: Optional[datetime] = None) -> bool:
        subscription = self.get_subscription(tenant_id, now)
        return sm.has_access(subscription, now)

    @staticmethod
    def days_remaining_in_trial(subscription: Subscription, now: Optional[datetime] = None) -> Optional[int]:
        return sm.days_remaining_in_trial(subscription, now)

    def payment_history(self, tenant_id: int) -> list[Payment]:
        with self.session() as db:
            return self.ledger.history(db, tenant_id)

    def usage(self, tenant_id: int, used_mb: float, user_count: int, now: Optional[datetime] = None) -> dict[str, Any]:
        subscription = self.get_subscription(tenant_id, now)
        return usage_summary(
            subscription, used_mb, user_count, threshold=self.settings.upgrade_prompt_threshold,
        )

    # ── Upgrade ───────────────────────────────────────────────────────────────

    def initialize_upgrade(
        self,
        tenant_id: int,
        plan_id: int,
        email: str,
        callback_url: Optional[str] = None,
        months: int = 1,
        now: Optional[datetime] = None,
    ) -> InitializedPayment:
        """Record a PENDING payment and open a Paystack checkout for it."""
        if months < 1:
            raise ValueError("months must be >= 1")

        with self._locked(tenant_id, now) as (db, subscription):
            current = S(subscription.status)
            if current not in sm.UPGRADEABLE:
                raise InvalidTransition("upgrade", current.value)
            plan = catalog.get_plan(db, plan_id)
            if not plan.is_active:
                raise PlanNotFound(f"Plan {plan.name} is not available")
            if plan.is_free:
                raise InvalidTransition("upgrade to a free plan", current.value, "use downgrade instead")

            if current is S.TRIALING or plan.id == subscription.plan_id:
                payment_type = PaymentType.SUBSCRIPTION
            else:
                payment_type = PaymentType.UPGRADE
            period_months = months * sm.interval_months(plan)
            payment = self.ledger.record_attempt(
                db,
                subscription,
                plan,
                amount=Decimal(plan.price) * months,
                payment_type=payment_type,
                description=f"{plan.display_name} x {months}",
                period_months=period_months,
            )
            db.commit()
            reference, amount, currency = payment.reference, payment.amount, payment.currency
            metadata = {
                "tenant_id": tenant_id,
                "subscription_id": subscription.id,
                "plan": plan.name,
                "payment_type": payment_type.value,
                "period_months": period_months,
            }

        try:
            checkout = self.gateway.initialize_transaction(
                email=email,
                amount=amount,
                reference=reference,
                currency=currency,
                callback_url=callback_url or self.settings.paystack_callback_url or None,
                metadata=metadata,
            )
        except GatewayRejected as exc:
            # A reference Paystack refused can never be charged.
            try:
                self._fail_payment(reference, str(exc), now)
            except Exception as mark_exc:
                logger.error("billing.upgrade.mark_failed_error", reference=reference, error=str(mark_exc))
            raise
        except GatewayUnavailable:
            logger.warning("billing.upgrade.gateway_unavailable", tenant_id=tenant_id, reference=reference)
            raise

        logger.info(
            "billing.upgrade.initialized",
            tenant_id=tenant_id,
            reference=reference,
            amount=str(amount),
            payment_type=metadata["payment_type"],
        )
        return InitializedPayment(
            redirect_url=checkout.authorization_url,
            reference=reference,
            access_code=checkout.access_code,
            amount=amount,
            currency=currency,
        )

    # ── Reconciliation ────────────────────────────────────────────────────────

    def reconcile(self, outcome: GatewayOutcome, now: Optional[datetime] = None) -> ReconcileResult:
        """Apply a terminal gateway outcome to the ledger, then to the subscription.

        Idempotent per reference. A conflicting outcome is persisted as a
        review flag and re-raised.
        """
        now = sm.as_utc(now) or sm.utcnow()
        with self.session() as db:
            payment = self.ledger.find(db, outcome.reference)
            if payment is None:
                BILLING_RECONCILIATIONS.labels(result="unknown").inc()
                logger.warning("billing.reconcile.unknown_reference", reference=outcome.reference)
                raise PaymentNotFound(f"Payment not found: {outcome.reference}")
            tenant_id = payment.tenant_id

        with self._locked(tenant_id, now) as (db, subscription):
            try:
                result = self.ledger.apply_outcome(db, outcome.reference, outcome, now)
            except ReconciliationConflict:
                db.commit()
                BILLING_RECONCILIATIONS.labels(result="conflict").inc()
                logger.error(
                    "billing.reconcile.conflict",
                    tenant_id=tenant_id,
                    reference=outcome.reference,
                    source=OutcomeSource(outcome.source).value,
                )
                raise

            payment = result.payment
            if not result.changed:
                db.commit()
                BILLING_RECONCILIATIONS.labels(result="duplicate").inc()
                return ReconcileResult(payment.reference, payment.status, subscription.status, False)

            event = None
            status = PaymentStatus(payment.status)
            if status is PaymentStatus.SUCCESS:
                sm.apply_payment_success(subscription, payment, now, customer_code=outcome.customer_code)
                event = sm.Event.PAYMENT_SUCCEEDED
            elif (
                status is PaymentStatus.FAILED
                and payment.is_renewal
                and subscription.status in (S.ACTIVE.value, S.PAST_DUE.value)
            ):
                sm.apply_renewal_failure(
                    subscription, now, retry_after=timedelta(hours=self.settings.renewal_retry_hours),
                )
                event = sm.Event.RENEWAL_FAILED
            db.commit()

            BILLING_RECONCILIATIONS.labels(result="applied").inc()
            _record_transition(event, subscription)
            logger.info(
                "billing.reconcile.applied",
                tenant_id=tenant_id,
                reference=payment.reference,
                payment_status=payment.status,
                subscription_status=subscription.status,
                source=OutcomeSource(outcome.source).value,
            )
            return ReconcileResult(payment.reference, payment.status, subscription.status, True)

    def verify(self, reference: str, now: Optional[datetime] = None) -> Optional[ReconcileResult]:
        """Ask Paystack for the outcome of ``reference`` and reconcile it.

        Returns None while Paystack still reports the transaction as pending.
        """
        with self.session() as db:
            self.ledger.get(db, reference)
        body = self.gateway.verify_transaction(reference)
        outcome = outcome_from_verify(body)
        if outcome is None:
            logger.info("billing.verify.pending", reference=reference)
            return None
        return self.reconcile(outcome, now)

    # ── Cancellation & plan changes ───────────────────────────────────────────

    def cancel(self, tenant_id: int, now: Optional[datetime] = None) -> Subscription:
        now = sm.as_utc(now) or sm.utcnow()
        with self._locked(tenant_id, now) as (db, subscription):
            if subscription.status not in sm.CANCELABLE and subscription.status != S.CANCELED:
                raise InvalidTransition(sm.Event.CANCEL.value, subscription.status)
            if sm.apply_cancel(subscription, now):
                db.commit()
                _record_transition(sm.Event.CANCEL, subscription)
            return subscription

    def reactivate(self, tenant_id: int, now: Optional[datetime] = None) -> Subscription:
        now = sm.as_utc(now) or sm.utcnow()
        with self._locked(tenant_id, now) as (db, subscription):
            sm.apply_reactivate(subscription, now)
            db.commit()
            _record_transition(sm.Event.REACTIVATE, subscription)
            return subscription

    def downgrade_to_free(self, tenant_id: int, now: Optional[datetime] = None) -> Subscription:
        now = sm.as_utc(now) or sm.utcnow()
        with self._locked(tenant_id, now) as (db, subscription):
            free_plan = catalog.get_free_plan(db)
            sm.apply_downgrade_to_free(subscription, free_plan, now)
            db.commit()
            _record_transition(sm.Event.DOWNGRADE_TO_FREE, subscription)
            return subscription

    def manually_activate(
        self,
        tenant_id: int,
        plan_id: int,
        months: int = 1,
        reason: str = "",
        category: Optional[str] = None,
        granted_by: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Subscription:
        """Operator override: activate a plan without a gateway payment.

        Records a SUCCESS payment under a ``MANUAL-`` reference for the audit
        trail. Manual activations do not auto-renew. A tenant without a
        subscription gets one.
        """
        if months < 1:
            raise ValueError("months must be >= 1")
        if not reason.strip():
            raise ValueError("reason is required")
        now = sm.as_utc(now) or sm.utcnow()

        with self._locks.hold(tenant_id), self.session() as db:
            plan = catalog.get_plan(db, plan_id)
            subscription = (
                db.query(Subscription)
                .filter(Subscription.tenant_id == tenant_id)
                .with_for_update()
                .first()
            )
            if subscription is None:
                if db.get(Tenant, tenant_id) is None:
                    db.add(Tenant(id=tenant_id, name=f"Tenant {tenant_id}"))
                subscription = Subscription(
                    tenant_id=tenant_id,
                    plan_id=plan.id,
                    plan=plan,
                    status=S.TRIALING.value,
                    grace_period_days=0,
                    failed_payment_attempts=0,
                    auto_renew=False,
                )
                db.add(subscription)
                db.flush()
            else:
                _record_transition(sm.apply_due_transitions(subscription, now), subscription)

            label = (category or "UNSPECIFIED").upper()
            payment = self.ledger.record_attempt(
                db,
                subscription,
                plan,
                amount=Decimal(plan.price) * months,
                payment_type=PaymentType.SUBSCRIPTION,
                description=f"[{label}] Manual subscription activation: {reason.strip()}",
                period_months=months * sm.interval_months(plan),
                prefix="MANUAL",
            )
            result = self.ledger.apply_outcome(
                db,
                payment.reference,
                GatewayOutcome(
                    reference=payment.reference,
                    status=PaymentStatus.SUCCESS,
                    source=OutcomeSource.SYSTEM,
                    channel="manual",
                ),
                now,
            )
            sm.apply_payment_success(subscription, result.payment, now)
            subscription.auto_renew = False
            subscription.payment_method_type = "MANUAL"
            db.commit()
            _record_transition(sm.Event.PAYMENT_SUCCEEDED, subscription)
            logger.info(
                "billing.subscription.manually_activated",
                tenant_id=tenant_id,
                plan=plan.name,
                months=months,
                category=label,
                granted_by=granted_by,
                reference=payment.reference,
            )
            return subscription

    # ── Scheduled jobs ────────────────────────────────────────────────────────

    def process_renewals(self, now: Optional[datetime] = None) -> dict[str, int]:
        """Renew every subscription whose billing date has passed.

        Promotional months are consumed before charging the saved card.
        """
        now = sm.as_utc(now) or sm.utcnow()
        with self.session() as db:
            tenant_ids = [
                row.tenant_id
                for row in db.query(Subscription.tenant_id)
                .filter(
                    Subscription.status.in_([S.ACTIVE.value, S.PAST_DUE.value]),
                    Subscription.auto_renew.is_(True),
                    Subscription.next_billing_date.isnot(None),
                    Subscription.next_billing_date <= now,
                )
                .all()
            ]

        summary = {"promotional": 0, "charged": 0, "failed": 0, "pending": 0, "skipped": 0, "errors": 0}
        for tenant_id in tenant_ids:
            try:
                result = self._renew(tenant_id, now)
            except BillingError as exc:
                summary["errors"] += 1
                logger.error("billing.renewal.error", tenant_id=tenant_id, error=str(exc))
                continue
            summary[result] += 1
        logger.info("billing.renewal.completed", **summary)
        return summary

    def _renew(self, tenant_id: int, now: datetime) -> str:
        with self._locked(tenant_id, now) as (db, subscription):
            next_billing = sm.as_utc(subscription.next_billing_date)
            if (
                subscription.status not in (S.ACTIVE.value, S.PAST_DUE.value)
                or not subscription.auto_renew
                or next_billing is None
                or next_billing > now
            ):
                db.commit()
                return "skipped"
            if self.ledger.pending_for_subscription(db, subscription.id, renewal=True):
                db.commit()
                return "skipped"

            if subscription.status == S.ACTIVE and (subscription.free_months_remaining or 0) > 0:
                sm.apply_promotional_renewal(subscription, now)
                db.commit()
                logger.info(
                    "billing.renewal.promotional",
                    tenant_id=tenant_id,
                    free_months_remaining=subscription.free_months_remaining,
                )
                return "promotional"

            plan = subscription.plan
            if plan.is_free:
                db.commit()
                return "skipped"

            payment = self.ledger.record_attempt(
                db,
                subscription,
                plan,
                amount=Decimal(plan.price),
                payment_type=PaymentType.SUBSCRIPTION,
                description=f"{plan.display_name} renewal",
                period_months=sm.interval_months(plan),
                prefix="RENEW",
                renewal=True,
            )
            tenant = db.get(Tenant, tenant_id)
            db.commit()
            reference, amount, currency = payment.reference, payment.amount, payment.currency
            authorization_code = subscription.paystack_authorization_code
            email = tenant.email if tenant is not None else None

        if not authorization_code or not email:
            self._fail_payment(reference, "No saved payment authorization", now)
            return "failed"

        try:
            body = self.gateway.charge_authorization(
                authorization_code=authorization_code,
                email=email,
                amount=amount,
                reference=reference,
                currency=currency,
            )
        except GatewayUnavailable:
            # Left PENDING; a later verify settles it.
            logger.warning("billing.renewal.gateway_unavailable", tenant_id=tenant_id, reference=reference)
            return "pending"
        except GatewayRejected as exc:
            self._fail_payment(reference, str(exc), now)
            return "failed"

        outcome = outcome_from_charge(body)
        if outcome is None:
            return "pending"
        result = self.reconcile(outcome, now)
        return "charged" if result.payment_status == PaymentStatus.SUCCESS.value else "failed"

    def _fail_payment(self, reference: str, reason: str, now: datetime) -> None:
        self.reconcile(
            GatewayOutcome(
                reference=reference,
                status=PaymentStatus.FAILED,
                source=OutcomeSource.SYSTEM,
                failure_reason=reason,
            ),
            now,
        )

    def suspend_past_due(self, now: Optional[datetime] = None, downgrade: bool = False) -> list[int]:
        """Suspend every PAST_DUE subscription whose grace period has run out.

        With ``downgrade`` the suspended tenants are moved to the free plan.
        Returns the affected tenant ids.
        """
        now = sm.as_utc(now) or sm.utcnow()
        with self.session() as db:
            tenant_ids = [
                row.tenant_id
                for row in db.query(Subscription.tenant_id)
                .filter(Subscription.status == S.PAST_DUE.value)
                .all()
            ]

        suspended = []
        for tenant_id in tenant_ids:
            with self._locks.hold(tenant_id), self.session() as db:
                subscription = self._load(db, tenant_id, lock=True)
                event = sm.apply_due_transitions(subscription, now)
                if event is not sm.Event.GRACE_EXPIRED:
                    continue
                _record_transition(event, subscription)
                if downgrade:
                    sm.apply_downgrade_to_free(subscription, catalog.get_free_plan(db), now)
                    _record_transition(sm.Event.DOWNGRADE_TO_FREE, subscription)
                db.commit()
                suspended.append(tenant_id)
        if suspended:
            logger.info("billing.grace.suspended", count=len(suspended), downgraded=downgrade)
        return suspended

    # ── Promotional credits ───────────────────────────────────────────────────

    def grant_promotional_credits(
        self,
        tenant_id: int,
        months: int,
        note: Optional[str] = None,
        granted_by: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Subscription:
        if months < 1:
            raise ValueError("months must be >= 1")
        now = sm.as_utc(now) or sm.utcnow()
        with self._locked(tenant_id, now) as (db, subscription):
            subscription.free_months_remaining = (subscription.free_months_remaining or 0) + months
            subscription.promotional_note = note
            subscription.promotional_granted_by = granted_by
            subscription.promotional_granted_at = now
            db.commit()
            logger.info(
                "billing.promotion.granted",
                tenant_id=tenant_id,
                months=months,
                free_months_remaining=subscription.free_months_remaining,
                granted_by=granted_by,
            )
            return subscription

    def revoke_promotional_credits(self, tenant_id: int, now: Optional[datetime] = None) -> Subscription:
        with self._locked(tenant_id, now) as (db, subscription):
            subscription.free_months_remaining = 0
            subscription.promotional_note = None
            subscription.promotional_granted_by = None
            subscription.promotional_granted_at = None
            db.commit()
            logger.info("billing.promotion.revoked", tenant_id=tenant_id)
            return subscription

    # ── Grace period ──────────────────────────────────────────────────────────

    def grant_grace_period(
        self, tenant_id: int, days: int, extend: bool = True, now: Optional[datetime] = None,
    ) -> Subscription:
        """Give a tenant extra days before suspension.

        ``extend`` adds to the current grace period; otherwise it is replaced.
        """
        if not 1 <= days <= MAX_GRACE_GRANT_DAYS:
            raise ValueError(f"days must be between 1 and {MAX_GRACE_GRANT_DAYS}")
        with self._locked(tenant_id, now) as (db, subscription):
            if extend:
                subscription.grace_period_days = (subscription.grace_period_days or 0) + days
            else:
                subscription.grace_period_days = days
            db.commit()
            logger.info(
                "billing.grace.granted",
                tenant_id=tenant_id,
                grace_period_days=subscription.grace_period_days,
            )
            return subscription

    def revoke_grace_period(self, tenant_id: int, now: Optional[datetime] = None) -> Subscription:
        now = sm.as_utc(now) or sm.utcnow()
        with self._locked(tenant_id, now) as (db, subscription):
            subscription.grace_period_days = 0
            _record_transition(sm.apply_due_transitions(subscription, now), subscription)
            db.commit()
            logger.info("billing.grace.revoked", tenant_id=tenant_id, status=subscription.status)
            return subscription

    def grace_period_status(self, tenant_id: int, now: Optional[datetime] = None) -> dict[str, Any]:
        now = sm.as_utc(now) or sm.utcnow()
        subscription = self.get_subscription(tenant_id, now)
        end = sm.grace_period_end(subscription)
        in_grace = sm.is_in_grace_period(subscription, now)
        days_remaining = None
        if in_grace and end is not None:
            days_remaining = max(0, math.ceil((end - now).total_seconds() / 86400))
        return {
            "status": subscription.status,
            "in_grace_period": in_grace,
            "grace_period_days": subscription.grace_period_days,
            "grace_period_end": end,
            "days_remaining": days_remaining,
        }

    # ── Reporting ─────────────────────────────────────────────────────────────

    def subscription_stats(self) -> dict[str, Any]:
        with self.session() as db:
            by_status = dict(
                db.query(Subscription.status, func.count(Subscription.id)).group_by(Subscription.status).all()
            )
            by_plan = dict(
                db.query(Plan.name, func.count(Subscription.id))
                .join(Subscription, Subscription.plan_id == Plan.id)
                .group_by(Plan.name)
                .all()
            )
            return {
                "total_subscriptions": sum(by_status.values()),
                "by_status": {status.value: by_status.get(status.value, 0) for status in S},
                "by_plan": by_plan,
                "payments": self.ledger.stats(db),
                "payments_needing_review": len(self.ledger.needing_review(db)),
            }
