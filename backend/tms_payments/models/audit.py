"""
Audit Log Model — Append-only, tamper-evident trail of payment events.
Every entry is SHA-256 hashed and chained to the previous entry of its subject.
"""
from datetime import datetime
from sqlalchemy import Column, String, Integer, DateTime, JSON, UniqueConstraint

from tms_payments.database import Base


class AuditLog(Base):
    __tablename__ = "payment_audit_logs"

    id = Column(Integer, primary_key=True, autoincrement=True, index=True)
    subject = Column(String(64), nullable=False, index=True)   # gateway order id, or "webhook"
    payment_record_id = Column(Integer, nullable=True, index=True)

    action = Column(String(50), nullable=False)
    # Actions: ORDER_CREATED, ORDER_REJECTED_DUPLICATE, PAYMENT_CONFIRMED,
    #          PAYMENT_FAILED, AMOUNT_MISMATCH, SIGNATURE_INVALID,
    #          WEBHOOK_UNMATCHED, PAYMENT_EXPIRED, PAYMENT_REFUNDED

    payload_hash = Column(String(64))       # Chain hash of the action payload
    previous_hash = Column(String(64), nullable=False, default="")   # Hash chain for tamper detection

    ip_address = Column(String(45))

    log_metadata = Column(JSON, default=dict)
    timestamp = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        # An entry has at most one successor, so concurrent writers cannot fork a chain
        UniqueConstraint("subject", "previous_hash", name="uq_payment_audit_logs_chain_link"),
    )
