"""
Payment Record Model — One transport-fee payment attempt per
(student, route, stop, billing period).
Never deleted: the table doubles as the financial audit trail.
"""
from datetime import datetime
from enum import Enum

from sqlalchemy import Column, String, Integer, DateTime, Index, text

from tms_payments.database import Base


class PaymentStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not PaymentStatus.PENDING


class ConfirmationChannel(str, Enum):
    CLIENT = "client"
    WEBHOOK = "webhook"
    OPERATOR = "operator"


ACTIVE_STATUSES = (PaymentStatus.PENDING.value, PaymentStatus.CONFIRMED.value)

AMOUNT_MISMATCH = "amount_mismatch"
EXPIRED = "expired"

FAILURE_REASON_LENGTH = 255


class PaymentRecord(Base):
    __tablename__ = "payment_records"

    id = Column(Integer, primary_key=True, autoincrement=True, index=True)

    # Scope key
    student_id = Column(String(64), nullable=False, index=True)
    route_id = Column(String(64), nullable=False)
    stop_name = Column(String(128), nullable=False)
    billing_period = Column(String(16), nullable=False)   # e.g. 2025-26/S1
    academic_year = Column(String(8), nullable=False)     # e.g. 2025-26
    semester = Column(String(2), nullable=False)          # 1 | 2

    fee_id = Column(String(64), nullable=False)
    amount_expected = Column(Integer, nullable=False)     # Minor units (paisa), fixed at creation
    currency = Column(String(3), nullable=False, default="INR")
    receipt_number = Column(String(64), nullable=False, unique=True)

    gateway_order_id = Column(String(64), nullable=False, unique=True, index=True)
    gateway_payment_id = Column(String(64), nullable=True)

    status = Column(String(16), nullable=False, default=PaymentStatus.PENDING.value, index=True)
    confirmed_via = Column(String(16), nullable=True)     # client | webhook | operator
    failure_reason = Column(String(FAILURE_REASON_LENGTH), nullable=True)   # amount_mismatch | <code>: <desc> | expired
    payment_method = Column(String(32), nullable=True)    # upi | card | netbanking ...
    paid_at = Column(DateTime, nullable=True)

    # Optimistic-lock token, bumped on every status transition
    version = Column(Integer, nullable=False, default=1)

    # Single refund call on a confirmed payment
    refund_id = Column(String(64), nullable=True)
    refunded_amount = Column(Integer, nullable=True)
    refunded_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    __table_args__ = (
        # At most one pending/confirmed attempt per scope key
        Index(
            "uq_payment_records_active_scope",
            "student_id", "route_id", "stop_name", "billing_period",
            unique=True,
            sqlite_where=text("status IN ('pending', 'confirmed')"),
            postgresql_where=text("status IN ('pending', 'confirmed')"),
        ),
    )

    @property
    def payment_status(self) -> PaymentStatus:
        return PaymentStatus(self.status)

    @property
    def is_terminal(self) -> bool:
        return self.payment_status.is_terminal

    @property
    def scope_key(self) -> tuple[str, str, str, str]:
        return (self.student_id, self.route_id, self.stop_name, self.billing_period)

    def __repr__(self) -> str:
        return f"<PaymentRecord {self.id} {self.gateway_order_id} {self.status} v{self.version}>"
