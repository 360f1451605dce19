"""
Audit Service — Manages the append-only, hash-chained payment audit trail.

Each subject's entries form a linked chain. A unique (subject, previous_hash)
constraint lets only one writer extend a given entry; the loser re-reads the
tail and links onto the winner's entry.
"""
import logging
from datetime import datetime
from typing import Optional, Dict

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from tms_payments.models.audit import AuditLog
from tms_payments.utils.hashing import generate_chain_hash

logger = logging.getLogger(__name__)

WEBHOOK_SUBJECT = "webhook"

# Attempts to append before giving up on a heavily contended subject
MAX_APPEND_ATTEMPTS = 5


class AuditService:
    """Creates tamper-evident audit log entries with hash chaining."""

    @staticmethod
    def log(
        db: Session,
        subject: str,
        action: str,
        payload: Optional[Dict] = None,
        payment_record_id: Optional[int] = None,
        ip_address: Optional[str] = None,
        metadata: Optional[Dict] = None,
    ) -> AuditLog:
        """Create an audit log entry with hash chaining.

        Callers commit their own changes first: a lost append rolls the
        session back before retrying.

        Args:
            db: Database session.
            subject: Chain the entry belongs to (gateway order id, or "webhook").
            action: Action identifier (e.g. ORDER_CREATED, PAYMENT_CONFIRMED).
            payload: Data payload to hash.
            payment_record_id: Local record the action touched, if known.
            ip_address: Client IP.
            metadata: Additional metadata to store.

        Returns:
            The created AuditLog entry.

        Raises:
            IntegrityError: the chain tail kept moving for MAX_APPEND_ATTEMPTS tries.
        """
        payload_data = payload or {}

        for attempt in range(1, MAX_APPEND_ATTEMPTS + 1):
            # Get the hash of the last entry for this subject (chain linking)
            last_entry = (
                db.query(AuditLog)
                .filter(AuditLog.subject == subject)
                .order_by(AuditLog.id.desc())
                .first()
            )
            previous_hash = last_entry.payload_hash if last_entry else ""
            chain_hash = generate_chain_hash(payload_data, previous_hash)

            entry = AuditLog(
                subject=subject,
                payment_record_id=payment_record_id,
                action=action,
                payload_hash=chain_hash,
                previous_hash=previous_hash,
                ip_address=ip_address,
                log_metadata=metadata or {},
                timestamp=datetime.utcnow(),
            )

            db.add(entry)
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                if attempt == MAX_APPEND_ATTEMPTS:
                    raise
                logger.info(f"Audit chain '{subject}' moved during {action} append; relinking (attempt {attempt})")
                continue

            db.refresh(entry)
            return entry

    @staticmethod
    def get_trail(db: Session, subject: str) -> list[AuditLog]:
        """Get the full audit trail for a subject, ordered chronologically."""
        return (
            db.query(AuditLog)
            .filter(AuditLog.subject == subject)
            .order_by(AuditLog.id.asc())
            .all()
        )


    @staticmethod
    def verify_chain(db: Session, subject: str) -> dict:
        """Verify the integrity of the audit chain for a subject.

        Returns:
            dict with 'valid' (bool), 'total_entries', and 'broken_at' (if invalid).
        """
        entries = AuditService.get_trail(db, subject)

        if not entries:
            return {"valid": True, "total_entries": 0, "broken_at": None}

        for i, entry in enumerate(entries):
            expected_prev = entries[i - 1].payload_hash if i > 0 else ""
            if entry.previous_hash != expected_prev:
                return {
                    "valid": False,
                    "total_entries": len(entries),
                    "broken_at": entry.id,
                    "message": f"Chain broken at entry {entry.id} ({entry.action})",
                }

        return {"valid": True, "total_entries": len(entries), "broken_at": None}
