"""
Reconciliation Engine — Settles a pending payment exactly once.

Two independent triggers race to settle the same record:
  * the client verify call after the checkout widget redirects back
  * the gateway webhook, delivered at least once, in any order

Both funnel into _settle(), which:
  1. short-circuits if the record is already terminal
  2. decides the outcome from authoritative evidence (amount first, then status)
  3. writes it with a version-guarded compare-and-set
  4. on a lost race, re-reads once and short-circuits on the winner's state
"""
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from tms_payments.config import Settings
from tms_payments.exceptions import InvalidSignature, RecordNotFound, StoreConflict, ValidationFailed
from tms_payments.models.payment import (
    AMOUNT_MISMATCH, FAILURE_REASON_LENGTH, ConfirmationChannel, PaymentRecord, PaymentStatus,
)
from tms_payments.schemas.webhook import IgnoredEvent, PaymentEntity, parse_webhook_event
from tms_payments.services.audit_service import WEBHOOK_SUBJECT, AuditService
from tms_payments.services.gateway_client import GatewayClient, GatewayPayment
from tms_payments.services.payment_store import PaymentStore
from tms_payments.utils.hashing import client_signature_payload, verify_signature

logger = logging.getLogger(__name__)

SUCCESS_STATUSES = {"captured"}
FAILURE_STATUSES = {"failed"}

# Outcomes reported to callers and telemetry
CONFIRMED = "confirmed"
FAILED = "failed"
MISMATCH = "amount_mismatch"
STILL_PENDING = "pending"
ALREADY_TERMINAL = "already_terminal"
NOT_FOUND = "not_found"
IGNORED = "ignored"


@dataclass(frozen=True)
class PaymentEvidence:
    """What the gateway says happened to a payment."""

    payment_id: str
    order_id: Optional[str]
    amount: int
    status: str
    method: Optional[str] = None
    error_code: Optional[str] = None
    error_description: Optional[str] = None

    @classmethod
    def from_gateway(cls, payment: GatewayPayment) -> "PaymentEvidence":
        return cls(
            payment_id=payment.id,
            order_id=payment.order_id,
            amount=payment.amount,
            status=payment.status,
            method=payment.method,
            error_code=payment.error_code,
            error_description=payment.error_description,
        )

    @classmethod
    def from_webhook(cls, entity: PaymentEntity) -> "PaymentEvidence":
        return cls(
            payment_id=entity.id,
            order_id=entity.order_id,
            amount=entity.amount,
            status=entity.status,
            method=entity.method,
            error_code=entity.error_code,
            error_description=entity.error_description,
        )

    @property
    def failure_reason(self) -> str:
        """Gateway error text, cut to fit the failure_reason column."""
        if self.error_code or self.error_description:
            reason = f"{self.error_code or 'ERROR'}: {self.error_description or 'payment failed'}"
        else:
            reason = f"payment_status:{self.status}"
        return reason[:FAILURE_REASON_LENGTH]


@dataclass(frozen=True)
class ReconciliationResult:
    """Snapshot of a record after a trigger was processed."""

    outcome: str
    record_id: Optional[int] = None
    status: Optional[str] = None
    payment_id: Optional[str] = None
    confirmed_via: Optional[str] = None
    failure_reason: Optional[str] = None
    replay: bool = False

    @classmethod
    def of(cls, record: PaymentRecord, outcome: str, replay: bool = False) -> "ReconciliationResult":
        return cls(
            outcome=outcome,
            record_id=record.id,
            status=record.status,
            payment_id=record.gateway_payment_id,
            confirmed_via=record.confirmed_via,
            failure_reason=record.failure_reason,
            replay=replay,
        )

    @property
    def is_amount_mismatch(self) -> bool:
        return self.status == PaymentStatus.FAILED.value and self.failure_reason == AMOUNT_MISMATCH


def decide(amount_expected: int, evidence: PaymentEvidence) -> Optional[tuple[PaymentStatus, Optional[str]]]:
    """Terminal status for the evidence, or None if the payment is still in flight.

    An amount mismatch fails the record whatever status the gateway reports.
    """
    if evidence.amount != amount_expected:
        return PaymentStatus.FAILED, AMOUNT_MISMATCH
    if evidence.status in SUCCESS_STATUSES:
        return PaymentStatus.CONFIRMED, None
    if evidence.status in FAILURE_STATUSES:
        return PaymentStatus.FAILED, evidence.failure_reason
    return None


class ReconciliationEngine:
    """Applies client and webhook confirmations to payment records."""

    def __init__(self, db: Session, gateway: GatewayClient, settings: Settings):
        self.db = db
        self.gateway = gateway
        self.settings = settings
        self.store = PaymentStore(db)

    # ─── Trigger A: client verify ───────────────────────────────────

    def verify_client(
        self,
        record_id: int,
        order_id: str,
        payment_id: str,
        signature: str,
        ip_address: Optional[str] = None,
    ) -> ReconciliationResult:
        """Settle a record from the checkout redirect.

        Raises:
            RecordNotFound: unknown record id.
            InvalidSignature: signature or order id does not match; record untouched.
            GatewayUnavailable / GatewayRejected: payment lookup failed; record untouched.
        """
        record = self.store.get(record_id)
        if record is None:
            raise RecordNotFound("Payment record not found")

        if record.is_terminal:
            return self._short_circuit(record, ConfirmationChannel.CLIENT)

        payload = client_signature_payload(order_id, payment_id)
        if order_id != record.gateway_order_id or not verify_signature(
            payload, signature, self.settings.client_signing_secret
        ):
            logger.warning(
                f"Invalid checkout signature for record {record.id} "
                f"(order {order_id}, payment {payment_id}) from {ip_address}"
            )
            self._audit_rejection(
                record.gateway_order_id,
                payload={"trigger": "client", "order_id": order_id, "payment_id": payment_id},
                payment_record_id=record.id,
                ip_address=ip_address,
            )
            raise InvalidSignature("Payment verification failed - invalid signature")

        # Never trust the browser's word on status or amount
        payment = self.gateway.fetch_payment(payment_id)
        if payment.order_id and payment.order_id != record.gateway_order_id:
            logger.warning(
                f"Payment {payment_id} belongs to order {payment.order_id}, "
                f"not {record.gateway_order_id}"
            )
            raise ValidationFailed("Payment does not belong to this order")

        return self._settle(record, PaymentEvidence.from_gateway(payment), ConfirmationChannel.CLIENT, ip_address)

    # ─── Trigger B: gateway webhook ─────────────────────────────────

    def handle_webhook(
        self,
        raw_body: bytes,
        signature: Optional[str],
        ip_address: Optional[str] = None,
    ) -> ReconciliationResult:
        """Process one webhook delivery.

        Only InvalidSignature escapes as a rejection; every other outcome is
        reported in the result so the route can acknowledge the gateway.
        """
        self._check_webhook_signature(raw_body, signature, ip_address)

        try:
            envelope = json.loads(raw_body)
        except ValueError:
            logger.warning("Webhook body is not valid JSON, ignoring")
            return ReconciliationResult(outcome=IGNORED)

        event = parse_webhook_event(envelope)
        if isinstance(event, IgnoredEvent):
            logger.info(f"Webhook event '{event.event}' ignored ({event.reason})")
            return ReconciliationResult(outcome=IGNORED)

        entity = event.payment
        record = self.store.get_by_order_id(entity.order_id)
        if record is None:
            # Could be a foreign order or lost data; worth alerting on
            logger.warning(
                f"Webhook {event.event} for unknown order {entity.order_id} "
                f"(payment {entity.id}) acknowledged without a record"
            )
            AuditService.log(
                self.db, entity.order_id, "WEBHOOK_UNMATCHED",
                payload={"event": event.event, "payment_id": entity.id, "amount": entity.amount},
                ip_address=ip_address,
            )
            return ReconciliationResult(outcome=NOT_FOUND)

        if record.is_terminal:
            return self._short_circuit(record, ConfirmationChannel.WEBHOOK)

        return self._settle(record, PaymentEvidence.from_webhook(entity), ConfirmationChannel.WEBHOOK, ip_address)

    def _check_webhook_signature(self, raw_body: bytes, signature: Optional[str], ip_address: Optional[str]):
        secret = self.settings.RAZORPAY_WEBHOOK_SECRET
        if not self.settings.webhook_signature_required:
            logger.warning("Webhook signature check skipped: no secret configured outside production")
            return

        if not secret:
            logger.error("RAZORPAY_WEBHOOK_SECRET is not configured; rejecting webhook")
            raise InvalidSignature("Webhook signature cannot be verified")

        if not verify_signature(raw_body, signature, secret):
            reason = "missing" if not signature else "mismatch"
            logger.warning(f"Rejected webhook from {ip_address}: signature {reason}")
            self._audit_rejection(
                WEBHOOK_SUBJECT,
                payload={"trigger": "webhook", "reason": reason, "body_length": len(raw_body or b"")},
                ip_address=ip_address,
            )
            raise InvalidSignature("Invalid webhook signature")

    def _audit_rejection(
        self,
        subject: str,
        payload: dict,
        payment_record_id: Optional[int] = None,
        ip_address: Optional[str] = None,
    ):
        """Record a rejected signature; the rejection stands even if the audit write fails."""
        try:
            AuditService.log(
                self.db, subject, "SIGNATURE_INVALID",
                payload=payload,
                payment_record_id=payment_record_id,
                ip_address=ip_address,
            )
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception(f"Could not audit rejected {payload.get('trigger')} signature on '{subject}'")

    # ─── Shared transition ──────────────────────────────────────────

    def _short_circuit(self, record: PaymentRecord, channel: ConfirmationChannel) -> ReconciliationResult:
        logger.info(
            f"Record {record.id} already {record.status} via {record.confirmed_via}; "
            f"{channel.value} trigger is a no-op"
        )
        return ReconciliationResult.of(record, ALREADY_TERMINAL, replay=True)

    def _settle(
        self,
        record: PaymentRecord,
        evidence: PaymentEvidence,
        channel: ConfirmationChannel,
        ip_address: Optional[str],
    ) -> ReconciliationResult:
        for _ in range(2):
            if record.is_terminal:
                return self._short_circuit(record, channel)

            decision = decide(record.amount_expected, evidence)
            if decision is None:
                logger.info(
                    f"Payment {evidence.payment_id} for record {record.id} is '{evidence.status}'; "
                    f"leaving record pending"
                )
                return ReconciliationResult.of(record, STILL_PENDING)

            status, reason = decision
            changes = {
                "status": status.value,
                "gateway_payment_id": evidence.payment_id,
                "confirmed_via": channel.value,
                "failure_reason": reason,
                "payment_method": evidence.method,
            }
            if status is PaymentStatus.CONFIRMED:
                changes["paid_at"] = datetime.utcnow()

            if self.store.compare_and_set(record.id, record.version, **changes):
                record = self.store.reload(record)
                return self._record_transition(record, evidence, channel, ip_address)

            logger.info(f"Record {record.id} changed concurrently; re-reading before {channel.value} retry")
            record = self.store.reload(record)

        raise StoreConflict(f"Record {record.id} could not be settled after retry")

    def _record_transition(
        self,
        record: PaymentRecord,
        evidence: PaymentEvidence,
        channel: ConfirmationChannel,
        ip_address: Optional[str],
    ) -> ReconciliationResult:
        result_payload = {
            "record_id": record.id,
            "payment_id": evidence.payment_id,
            "trigger": channel.value,
            "amount_expected": record.amount_expected,
            "amount_reported": evidence.amount,
            "gateway_status": evidence.status,
        }

        if record.failure_reason == AMOUNT_MISMATCH:
            outcome, action = MISMATCH, "AMOUNT_MISMATCH"
            logger.error(
                f"financial_integrity: amount mismatch on record {record.id} "
                f"(expected {record.amount_expected}, gateway reported {evidence.amount} "
                f"as '{evidence.status}', payment {evidence.payment_id}); marked failed"
            )
        elif record.status == PaymentStatus.CONFIRMED.value:
            outcome, action = CONFIRMED, "PAYMENT_CONFIRMED"
            logger.info(f"Record {record.id} confirmed via {channel.value} (payment {evidence.payment_id})")
        else:
            outcome, action = FAILED, "PAYMENT_FAILED"
            logger.info(f"Record {record.id} failed via {channel.value}: {record.failure_reason}")

        snapshot = ReconciliationResult.of(record, outcome)
        AuditService.log(
            self.db, record.gateway_order_id, action,
            payload=result_payload,
            payment_record_id=record.id,
            ip_address=ip_address,
        )
        return snapshot
