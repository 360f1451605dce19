"""
Order Creation Service — Opens a gateway order for a semester transport fee.

Order of operations matters:
  1. refuse if the scope key already has a pending/confirmed attempt
  2. price from the fee table
  3. create the remote order
  4. persist the pending record only after step 3 succeeded
so a gateway failure never leaves a pending row without a remote order.
"""
import logging
import time
import uuid
from datetime import date
from typing import Optional

from sqlalchemy.orm import Session

from tms_payments.config import Settings
from tms_payments.exceptions import AlreadyExists, ValidationFailed
from tms_payments.models.payment import PaymentRecord
from tms_payments.schemas.schemas import OrderHandle
from tms_payments.services.audit_service import AuditService
from tms_payments.services.fee_service import FeeService
from tms_payments.services.gateway_client import GatewayClient
from tms_payments.services.payment_store import PaymentStore
from tms_payments.utils.validators import normalize_stop_name, validate_identifier, validate_stop_name

logger = logging.getLogger(__name__)


def generate_receipt_number(student_id: str) -> str:
    return f"TMS_{int(time.time() * 1000)}_{student_id[-6:]}_{uuid.uuid4().hex[:4]}"


class OrderService:
    """Creates at most one active payment attempt per scope key."""

    def __init__(self, db: Session, gateway: GatewayClient, settings: Settings):
        self.db = db
        self.gateway = gateway
        self.settings = settings
        self.store = PaymentStore(db)

    def create_order(
        self,
        student_id: str,
        route_id: str,
        stop_name: str,
        fee_id: str,
        ip_address: Optional[str] = None,
        today: Optional[date] = None,
    ) -> OrderHandle:
        """Create a remote order and its pending record.

        Raises:
            ValidationFailed: malformed identifiers.
            FeeNotFound: fee inactive, expired or not for this route/stop.
            AlreadyExists: an active attempt exists for the scope key.
            GatewayUnavailable / GatewayRejected: the remote order was not created.
        """
        stop_name = normalize_stop_name(stop_name)
        for name, value in (("studentId", student_id), ("routeId", route_id), ("feeId", fee_id)):
            if not validate_identifier(value):
                raise ValidationFailed(f"Invalid {name}")
        if not validate_stop_name(stop_name):
            raise ValidationFailed("Invalid stopName")

        fee = FeeService.resolve(self.db, fee_id, route_id, stop_name, today=today)
        billing_period = fee.billing_period

        existing = self.store.find_active(student_id, route_id, stop_name, billing_period)
        if existing is not None:
            logger.info(
                f"Duplicate order refused for {student_id}/{route_id}/{stop_name}/{billing_period}: "
                f"record {existing.id} is {existing.status}"
            )
            self._audit_duplicate(existing, ip_address)
            raise AlreadyExists(existing)

        receipt = generate_receipt_number(student_id)
        order = self.gateway.create_order(
            amount=fee.amount,
            currency=fee.currency or self.settings.CURRENCY,
            receipt=receipt,
            metadata={
                "student_id": student_id,
                "route_id": route_id,
                "stop_name": stop_name,
                "fee_id": fee_id,
                "academic_year": fee.academic_year,
                "semester": fee.semester,
            },
        )
        logger.info(f"Gateway order {order.id} created for {student_id} ({fee.amount} {order.currency})")

        try:
            record = self.store.insert_pending(
                student_id=student_id,
                route_id=route_id,
                stop_name=stop_name,
                billing_period=billing_period,
                academic_year=fee.academic_year,
                semester=fee.semester,
                fee_id=fee_id,
                amount_expected=fee.amount,
                currency=order.currency,
                receipt_number=receipt,
                gateway_order_id=order.id,
            )
        except AlreadyExists as e:
            # A concurrent request won the insert; our remote order is never paid
            logger.warning(
                f"Concurrent order for the same scope: gateway order {order.id} abandoned, "
                f"record {e.record.id} kept"
            )
            self._audit_duplicate(e.record, ip_address, abandoned_order_id=order.id)
            raise

        AuditService.log(
            self.db, record.gateway_order_id, "ORDER_CREATED",
            payload={
                "record_id": record.id,
                "student_id": student_id,
                "billing_period": billing_period,
                "amount": record.amount_expected,
            },
            payment_record_id=record.id,
            ip_address=ip_address,
        )

        return OrderHandle(
            orderId=record.gateway_order_id,
            amount=record.amount_expected,
            currency=record.currency,
            paymentRecordId=record.id,
            receipt=record.receipt_number,
            keyId=self.settings.RAZORPAY_KEY_ID or None,
        )

    def _audit_duplicate(self, existing: PaymentRecord, ip_address: Optional[str], abandoned_order_id: Optional[str] = None):
        metadata = {"abandoned_order_id": abandoned_order_id} if abandoned_order_id else None
        AuditService.log(
            self.db, existing.gateway_order_id, "ORDER_REJECTED_DUPLICATE",
            payload={"record_id": existing.id, "status": existing.status},
            payment_record_id=existing.id,
            ip_address=ip_address,
            metadata=metadata,
        )
