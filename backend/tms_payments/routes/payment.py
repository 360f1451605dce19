"""
Payment Routes — Order creation, checkout verification and gateway webhooks.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Request
from starlette.concurrency import run_in_threadpool
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from tms_payments.config import Settings, get_settings
from tms_payments.database import get_db
from tms_payments.exceptions import (
    AmountMismatch, RecordNotFound, RefundNotAllowed, ValidationFailed,
)
from tms_payments.models.payment import PaymentStatus
from tms_payments.schemas.schemas import (
    DemoPaymentRequest, DemoPaymentResponse, FeeListResponse, FeeResponse,
    OrderCreateRequest, OrderHandle, PaymentHistoryResponse, PaymentRecordResponse,
    RefundRequest, RefundResponse, VerifyRequest, VerifyResponse, WebhookAck,
)
from tms_payments.services.audit_service import AuditService
from tms_payments.services.fee_service import FeeService, current_billing_period
from tms_payments.services.gateway_client import DemoGatewayClient, GatewayClient, get_gateway_client
from tms_payments.services.order_service import OrderService
from tms_payments.services.payment_store import PaymentStore
from tms_payments.services.reconciliation import ReconciliationEngine
from tms_payments.utils.rate_limiter import rate_limit
from tms_payments.utils.validators import validate_identifier, validate_refund_amount

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["Payments"])

_settings = get_settings()


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


@router.post("/orders", response_model=OrderHandle)
def create_order(
    payload: OrderCreateRequest,
    request: Request,
    db: Session = Depends(get_db),
    gateway: GatewayClient = Depends(get_gateway_client),
    settings: Settings = Depends(get_settings),
    _throttle: bool = Depends(rate_limit(
        requests=_settings.ORDER_RATE_LIMIT_REQUESTS,
        window=_settings.ORDER_RATE_LIMIT_WINDOW,
        scope="orders",
    )),
):
    """Open a gateway order for a semester transport fee."""
    service = OrderService(db, gateway, settings)
    return service.create_order(
        student_id=payload.studentId,
        route_id=payload.routeId,
        stop_name=payload.stopName,
        fee_id=payload.feeId,
        ip_address=_client_ip(request),
    )


@router.post("/verify", response_model=VerifyResponse)
def verify_payment(
    payload: VerifyRequest,
    request: Request,
    db: Session = Depends(get_db),
    gateway: GatewayClient = Depends(get_gateway_client),
    settings: Settings = Depends(get_settings),
):
    """Confirm a payment from the checkout redirect."""
    engine = ReconciliationEngine(db, gateway, settings)
    result = engine.verify_client(
        record_id=payload.paymentRecordId,
        order_id=payload.order_id,
        payment_id=payload.payment_id,
        signature=payload.signature,
        ip_address=_client_ip(request),
    )
    if result.is_amount_mismatch:
        raise AmountMismatch(
            "Payment amount mismatch",
            extra={"status": result.status, "paymentRecordId": result.record_id},
        )
    return VerifyResponse(
        status=result.status,
        paymentRecordId=result.record_id,
        paymentId=result.payment_id,
        confirmedVia=result.confirmed_via,
        failureReason=result.failure_reason,
    )


@router.post("/webhook", response_model=WebhookAck)
async def payment_webhook(
    request: Request,
    x_razorpay_signature: Optional[str] = Header(None),
    db: Session = Depends(get_db),
    gateway: GatewayClient = Depends(get_gateway_client),
    settings: Settings = Depends(get_settings),
):
    """Gateway-pushed payment events.

    Signature failures are rejected with 400. Everything else, including store
    errors, is acknowledged with 200 so the gateway does not retry needlessly.
    """
    raw_body = await request.body()
    engine = ReconciliationEngine(db, gateway, settings)
    try:
        result = await run_in_threadpool(
            engine.handle_webhook, raw_body, x_razorpay_signature, _client_ip(request),
        )
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Store error while processing webhook; acknowledged to gateway")
        return WebhookAck(outcome="store_error")
    return WebhookAck(outcome=result.outcome)


@router.get("", response_model=PaymentHistoryResponse)
def payment_history(student_id: str = Query(..., alias="studentId"), db: Session = Depends(get_db)):
    """A student's payment attempts and whether the current billing period is paid."""
    if not validate_identifier(student_id):
        raise ValidationFailed("Invalid studentId")

    academic_year, semester = current_billing_period()
    billing_period = f"{academic_year}/S{semester}"
    records = PaymentStore(db).list_for_student(student_id)
    paid = [r for r in records if r.status == PaymentStatus.CONFIRMED.value]

    return PaymentHistoryResponse(
        studentId=student_id,
        billingPeriod=billing_period,
        currentPeriodPaid=any(r.billing_period == billing_period for r in paid),
        lastPaidPeriod=max((r.billing_period for r in paid), default=None),
        payments=[PaymentRecordResponse.model_validate(r) for r in records],
    )


@router.get("/fees", response_model=FeeListResponse)
def list_fees(route_id: str, stop_name: Optional[str] = None, db: Session = Depends(get_db)):
    """Active transport fees of the current billing period for a route."""
    academic_year, semester = current_billing_period()
    fees = FeeService.list_current(db, route_id, stop_name)
    return FeeListResponse(
        billing_period=f"{academic_year}/S{semester}",
        fees=[FeeResponse.model_validate(f) for f in fees],
    )


@router.post("/demo/{order_id}/pay", response_model=DemoPaymentResponse)
def demo_pay(
    order_id: str,
    payload: DemoPaymentRequest,
    gateway: GatewayClient = Depends(get_gateway_client),
    settings: Settings = Depends(get_settings),
):
    """Simulate the checkout widget against the demo gateway (DEMO_MODE only)."""
    if not settings.DEMO_MODE or not isinstance(gateway, DemoGatewayClient):
        raise RecordNotFound("Not found")
    if payload.status not in ("captured", "failed"):
        raise ValidationFailed("status must be 'captured' or 'failed'")
    return DemoPaymentResponse(**gateway.simulate_payment(order_id, status=payload.status, amount=payload.amount))


@router.get("/{record_id}", response_model=PaymentRecordResponse)
def get_payment(record_id: int, db: Session = Depends(get_db)):
    """Current state of a payment record."""
    record = PaymentStore(db).get(record_id)
    if record is None:
        raise RecordNotFound("Payment record not found")
    return record


@router.post("/{record_id}/refund", response_model=RefundResponse)
def refund_payment(
    record_id: int,
    payload: RefundRequest,
    request: Request,
    db: Session = Depends(get_db),
    gateway: GatewayClient = Depends(get_gateway_client),
):
    """Issue the single refund allowed on a confirmed payment."""
    store = PaymentStore(db)
    record = store.get(record_id)
    if record is None:
        raise RecordNotFound("Payment record not found")
    if record.status != PaymentStatus.CONFIRMED.value or not record.gateway_payment_id:
        raise RefundNotAllowed(f"Only confirmed payments can be refunded (status: {record.status})")
    if record.refund_id:
        raise RefundNotAllowed("Payment has already been refunded", extra={"refundId": record.refund_id})

    ok, message = validate_refund_amount(payload.amount, record.amount_expected)
    if not ok:
        raise ValidationFailed(message)

    refund = gateway.refund(record.gateway_payment_id, payload.amount)
    if not store.mark_refunded(record.id, refund.id, refund.amount):
        logger.error(f"Refund {refund.id} issued but record {record_id} already carries a refund")
        raise RefundNotAllowed("Payment was refunded concurrently", extra={"refundId": refund.id})

    record = store.reload(record)
    AuditService.log(
        db, record.gateway_order_id, "PAYMENT_REFUNDED",
        payload={"record_id": record.id, "refund_id": refund.id, "amount": refund.amount},
        payment_record_id=record.id,
        ip_address=_client_ip(request),
    )
    return RefundResponse(paymentRecordId=record.id, refundId=refund.id, amount=refund.amount, status=refund.status)
