from tms_payments.models.payment import PaymentRecord, PaymentStatus, ConfirmationChannel
from tms_payments.models.fee import TransportFee
from tms_payments.models.audit import AuditLog

__all__ = ["PaymentRecord", "PaymentStatus", "ConfirmationChannel", "TransportFee", "AuditLog"]
