"""PastCare Billing – Paystack Reconciliation Adapter.

External boundary only. Two halves:

- :class:`PaystackClient`: thin HTTP client (httpx, bounded timeout) for
  ``/transaction/initialize``, ``/transaction/verify/{reference}`` and
  ``/transaction/charge_authorization``. No retries: a timed-out
  initialization is never replayed.
- ``outcome_from_*``: translate Paystack payloads (webhook events, verify and
  charge responses) into :class:`GatewayOutcome` objects for
  ``BillingService.reconcile``. ``None`` means "no terminal outcome yet".

Webhook authenticity: HMAC-SHA512 of the raw body with the secret key,
hex-encoded in the ``x-paystack-signature`` header.
"""

from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Optional

import httpx
import structlog

from app.billing.enums import OutcomeSource, PaymentStatus
from app.billing.errors import GatewayRejected, GatewayUnavailable
from app.billing.ledger import GatewayOutcome
from app.core.instrumentation import BILLING_GATEWAY_CALLS

logger = structlog.get_logger()

PAYSTACK_API_BASE = "https://api.paystack.co"
SIGNATURE_HEADER = "x-paystack-signature"

# Paystack transaction status → ledger status. Missing keys are non-terminal.
_TRANSACTION_STATUS: dict[str, PaymentStatus] = {
    "success": PaymentStatus.SUCCESS,
    "failed": PaymentStatus.FAILED,
    "reversed": PaymentStatus.REFUNDED,
}
_NON_TERMINAL = frozenset({"abandoned", "ongoing", "pending", "processing", "queued", "send_otp", "send_birthday"})


@dataclass(frozen=True)
class InitializedTransaction:
    authorization_url: str
    access_code: str
    reference: str


def to_minor_units(amount: Decimal) -> int:
    """Paystack amounts are in pesewas/kobo."""
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    return (Decimal(str(value)) / 100).quantize(Decimal("0.01"))


def verify_signature(secret_key: str, payload: bytes, signature: str) -> bool:
    if not secret_key or not signature:
        return False
    expected = hmac.new(secret_key.encode(), payload, hashlib.sha512).hexdigest()
    return hmac.compare_digest(expected, signature.strip().lower())


class PaystackClient:
    """Low-level Paystack API client. One method per API call."""

    def __init__(
        self,
        secret_key: str,
        base_url: str = PAYSTACK_API_BASE,
        timeout: float = 15.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.secret_key = secret_key
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            transport=transport,
            headers={
                "Authorization": f"Bearer {secret_key}",
                "Accept": "application/json",
            },
        )

    def close(self) -> None:
        self._client.close()

    def _request(self, operation: str, method: str, path: str, json_body: Optional[dict] = None) -> dict:
        try:
            response = self._client.request(method, path, json=json_body)
        except httpx.TimeoutException as exc:
            BILLING_GATEWAY_CALLS.labels(operation=operation, result="timeout").inc()
            logger.warning("billing.paystack.timeout", operation=operation, path=path)
            raise GatewayUnavailable(f"Paystack {operation} timed out") from exc
        except httpx.TransportError as exc:
            BILLING_GATEWAY_CALLS.labels(operation=operation, result="unavailable").inc()
            logger.warning("billing.paystack.unreachable", operation=operation, error=str(exc))
            raise GatewayUnavailable(f"Paystack {operation} failed: {exc}") from exc

        if response.status_code >= 500:
            BILLING_GATEWAY_CALLS.labels(operation=operation, result="unavailable").inc()
            logger.warning("billing.paystack.server_error", operation=operation, status=response.status_code)
            raise GatewayUnavailable(f"Paystack {operation} returned HTTP {response.status_code}")

        try:
            body = response.json()
        except ValueError:
            body = {}

        if response.status_code >= 400 or not body.get("status"):
            message = body.get("message") or f"HTTP {response.status_code}"
            BILLING_GATEWAY_CALLS.labels(operation=operation, result="rejected").inc()
            logger.warning("billing.paystack.rejected", operation=operation, message=message)
            raise GatewayRejected(f"Paystack {operation} rejected: {message}")

        BILLING_GATEWAY_CALLS.labels(operation=operation, result="ok").inc()
        return body

    def initialize_transaction(
        self,
        email: str,
        amount: Decimal,
        reference: str,
        currency: str,
        callback_url: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> InitializedTransaction:
        """POST /transaction/initialize: create a hosted payment session."""
        body: dict[str, Any] = {
            "email": email,
            "amount": to_minor_units(amount),
            "reference": reference,
            "currency": currency,
            "channels": ["card", "mobile_money"],
            "metadata": metadata or {},
        }
        if callback_url:
            body["callback_url"] = callback_url
        data = self._request("initialize", "POST", "/transaction/initialize", body).get("data") or {}
        logger.info("billing.paystack.initialized", reference=reference)
        return InitializedTransaction(
            authorization_url=data.get("authorization_url", ""),
            access_code=data.get("access_code", ""),
            reference=data.get("reference") or reference,
        )

    def verify_transaction(self, reference: str) -> dict:
        """GET /transaction/verify/{reference}"""
        return self._request("verify", "GET", f"/transaction/verify/{reference}")

    def charge_authorization(
        self,
        authorization_code: str,
        email: str,
        amount: Decimal,
        reference: str,
        currency: str,
    ) -> dict:
        """POST /transaction/charge_authorization: recurring charge on a saved card."""
        return self._request(
            "charge_authorization",
            "POST",
            "/transaction/charge_authorization",
            {
                "authorization_code": authorization_code,
                "email": email,
                "amount": to_minor_units(amount),
                "reference": reference,
                "currency": currency,
            },
        )


# ── Payload translation ──────────────────────────────────────────────────────

def _parse_time(value: Any) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


def outcome_from_transaction(
    data: dict[str, Any],
    source: OutcomeSource,
    status_override: Optional[PaymentStatus] = None,
) -> Optional[GatewayOutcome]:
    """Translate a Paystack transaction object. ``None`` when not terminal."""
    reference = data.get("reference")
    if not reference:
        return None
    raw_status = str(data.get("status") or "").lower()
    status = status_override or _TRANSACTION_STATUS.get(raw_status)
    if status is None:
        if raw_status not in _NON_TERMINAL:
            logger.warning("billing.paystack.unknown_status", reference=reference, status=raw_status)
        return None

    authorization = data.get("authorization") or {}
    customer = data.get("customer") or {}
    amount = from_minor_units(data.get("amount"))
    return GatewayOutcome(
        reference=reference,
        status=status,
        source=source,
        amount=amount,
        currency=data.get("currency"),
        transaction_id=str(data["id"]) if data.get("id") is not None else None,
        authorization_code=authorization.get("authorization_code") if authorization.get("reusable", True) else None,
        customer_code=customer.get("customer_code"),
        channel=data.get("channel") or authorization.get("channel"),
        card_last4=authorization.get("last4"),
        card_brand=authorization.get("brand"),
        failure_reason=data.get("gateway_response") if status is PaymentStatus.FAILED else None,
        paid_at=_parse_time(data.get("paid_at") or data.get("paidAt")),
        refund_amount=amount if status is PaymentStatus.REFUNDED else None,
        refund_reason="Reversed by Paystack" if status is PaymentStatus.REFUNDED else None,
    )


def outcome_from_verify(body: dict[str, Any]) -> Optional[GatewayOutcome]:
    return outcome_from_transaction(body.get("data") or {}, OutcomeSource.VERIFY)


def outcome_from_charge(body: dict[str, Any]) -> Optional[GatewayOutcome]:
    return outcome_from_transaction(body.get("data") or {}, OutcomeSource.CHARGE)


def outcome_from_webhook(event: dict[str, Any]) -> Optional[GatewayOutcome]:
    """Translate a webhook event. Events without a payment outcome return None."""
    event_type = event.get("event", "")
    data = event.get("data") or {}

    if event_type == "charge.success":
        return outcome_from_transaction(data, OutcomeSource.WEBHOOK, PaymentStatus.SUCCESS)
    if event_type == "charge.failed":
        return outcome_from_transaction(data, OutcomeSource.WEBHOOK, PaymentStatus.FAILED)
    if event_type == "refund.processed":
        reference = data.get("transaction_reference") or (data.get("transaction") or {}).get("reference")
        if not reference:
            return None
        return GatewayOutcome(
            reference=reference,
            status=PaymentStatus.REFUNDED,
            source=OutcomeSource.WEBHOOK,
            refund_amount=from_minor_units(data.get("amount")),
            refund_reason=data.get("merchant_note") or data.get("customer_note") or "Refund processed",
        )
    if event_type == "charge.dispute.create":
        transaction = data.get("transaction") or {}
        reference = transaction.get("reference")
        if not reference:
            return None
        return GatewayOutcome(
            reference=reference,
            status=PaymentStatus.CHARGEBACK,
            source=OutcomeSource.WEBHOOK,
            refund_amount=from_minor_units(data.get("refund_amount")),
            refund_reason=data.get("reason") or data.get("category") or "Chargeback",
        )

    logger.debug("billing.paystack.event_ignored", event_type=event_type)
    return None
