"""
Payment Record Store — Durable payment attempts with optimistic concurrency.

Status changes go through compare_and_set(), a conditional UPDATE guarded by
the record's version token. No process-wide lock: distinct records never
contend, and two writers on the same record cannot both win.
"""
import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from tms_payments.exceptions import AlreadyExists
from tms_payments.models.payment import (
    ACTIVE_STATUSES, AMOUNT_MISMATCH, EXPIRED,
    ConfirmationChannel, PaymentRecord, PaymentStatus,
)

logger = logging.getLogger(__name__)


class PaymentStore:
    """Repository over the payment_records table for one DB session."""

    def __init__(self, db: Session):
        self.db = db

    # ─── Reads ───────────────────────────────────────────────────────

    def get(self, record_id: int) -> Optional[PaymentRecord]:
        return self.db.query(PaymentRecord).filter(PaymentRecord.id == record_id).first()

    def get_by_order_id(self, order_id: str) -> Optional[PaymentRecord]:
        return (
            self.db.query(PaymentRecord)
            .filter(PaymentRecord.gateway_order_id == order_id)
            .first()
        )

    def find_active(self, student_id: str, route_id: str, stop_name: str, billing_period: str) -> Optional[PaymentRecord]:
        """The pending or confirmed attempt for a scope key, if any."""
        return (
            self.db.query(PaymentRecord)
            .filter(
                PaymentRecord.student_id == student_id,
                PaymentRecord.route_id == route_id,
                PaymentRecord.stop_name == stop_name,
                PaymentRecord.billing_period == billing_period,
                PaymentRecord.status.in_(ACTIVE_STATUSES),
            )
            .first()
        )

    def list_for_student(self, student_id: str) -> List[PaymentRecord]:
        """Every attempt a student has made, newest first."""
        return (
            self.db.query(PaymentRecord)
            .filter(PaymentRecord.student_id == student_id)
            .order_by(PaymentRecord.created_at.desc(), PaymentRecord.id.desc())
            .all()
        )

    def reload(self, record: PaymentRecord) -> PaymentRecord:
        """Re-read a record from the database, discarding cached state."""
        self.db.refresh(record)
        return record

    # ─── Writes ──────────────────────────────────────────────────────

    def insert_pending(self, **fields) -> PaymentRecord:
        """Insert a pending record; the partial unique index arbitrates races.

        Raises AlreadyExists carrying the winning record when another active
        attempt for the same scope key committed first.
        """
        record = PaymentRecord(
            **fields,
            status=PaymentStatus.PENDING.value,
            version=1,
        )
        self.db.add(record)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            existing = self.find_active(
                fields["student_id"], fields["route_id"], fields["stop_name"], fields["billing_period"],
            )
            if existing is None:
                raise
            raise AlreadyExists(existing)
        self.db.refresh(record)
        return record

    def compare_and_set(self, record_id: int, expected_version: int, **changes) -> bool:
        """Apply a status transition only if the record is still pending at expected_version.

        Returns True when exactly this call moved the row.
        """
        values = dict(changes)
        values["version"] = expected_version + 1
        values["updated_at"] = datetime.utcnow()

        rows = (
            self.db.query(PaymentRecord)
            .filter(
                PaymentRecord.id == record_id,
                PaymentRecord.version == expected_version,
                PaymentRecord.status == PaymentStatus.PENDING.value,
            )
            .update(values, synchronize_session=False)
        )
        self.db.commit()
        return rows == 1

    def mark_refunded(self, record_id: int, refund_id: str, amount: int) -> bool:
        """Attach the single refund to a confirmed record. Status stays confirmed."""
        rows = (
            self.db.query(PaymentRecord)
            .filter(
                PaymentRecord.id == record_id,
                PaymentRecord.status == PaymentStatus.CONFIRMED.value,
                PaymentRecord.refund_id.is_(None),
            )
            .update(
                {
                    "refund_id": refund_id,
                    "refunded_amount": amount,
                    "refunded_at": datetime.utcnow(),
                    "updated_at": datetime.utcnow(),
                },
                synchronize_session=False,
            )
        )
        self.db.commit()
        return rows == 1

    def expire_stale_pending(self, cutoff: datetime) -> List[int]:
        """Operator job: fail pending records created before cutoff."""
        stale = (
            self.db.query(PaymentRecord.id, PaymentRecord.version)
            .filter(
                PaymentRecord.status == PaymentStatus.PENDING.value,
                PaymentRecord.created_at < cutoff,
            )
            .all()
        )
        expired = []
        for record_id, version in stale:
            moved = self.compare_and_set(
                record_id, version,
                status=PaymentStatus.FAILED.value,
                failure_reason=EXPIRED,
                confirmed_via=ConfirmationChannel.OPERATOR.value,
            )
            if moved:
                expired.append(record_id)
            else:
                logger.info(f"Record {record_id} settled concurrently, not expiring")
        return expired

    # ─── Reporting ───────────────────────────────────────────────────

    def summary(self) -> dict:
        counts = dict(
            self.db.query(PaymentRecord.status, func.count(PaymentRecord.id))
            .group_by(PaymentRecord.status)
            .all()
        )
        mismatches = (
            self.db.query(func.count(PaymentRecord.id))
            .filter(PaymentRecord.failure_reason == AMOUNT_MISMATCH)
            .scalar()
        ) or 0
        confirmed_amount = (
            self.db.query(func.sum(PaymentRecord.amount_expected))
            .filter(PaymentRecord.status == PaymentStatus.CONFIRMED.value)
            .scalar()
        ) or 0
        by_status = {s.value: counts.get(s.value, 0) for s in PaymentStatus}
        return {
            "total": sum(by_status.values()),
            "by_status": by_status,
            "amount_mismatches": mismatches,
            "confirmed_amount": int(confirmed_amount),
        }
