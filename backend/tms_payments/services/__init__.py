from tms_payments.services.audit_service import AuditService
from tms_payments.services.fee_service import FeeService
from tms_payments.services.order_service import OrderService
from tms_payments.services.payment_store import PaymentStore
from tms_payments.services.reconciliation import ReconciliationEngine

__all__ = ["AuditService", "FeeService", "OrderService", "PaymentStore", "ReconciliationEngine"]
