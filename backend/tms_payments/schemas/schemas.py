"""
Pydantic Schemas — Request & Response models for API validation.
"""
from datetime import datetime, date
from typing import Optional, Dict, List
from pydantic import BaseModel, Field


# ──────────────── Orders ────────────────

class OrderCreateRequest(BaseModel):
    studentId: str = Field(..., min_length=1, description="Student identifier")
    routeId: str = Field(..., min_length=1, description="Allocated route identifier")
    stopName: str = Field(..., min_length=1, description="Boarding stop on the route")
    feeId: str = Field(..., min_length=1, description="Transport fee identifier")


class OrderHandle(BaseModel):
    """Everything the checkout widget needs to open a payment."""
    orderId: str
    amount: int
    currency: str
    paymentRecordId: int
    receipt: str
    keyId: Optional[str] = None


# ──────────────── Verification ────────────────

class VerifyRequest(BaseModel):
    order_id: str = Field(..., min_length=1)
    payment_id: str = Field(..., min_length=1)
    signature: str = Field(..., min_length=1)
    paymentRecordId: int


class VerifyResponse(BaseModel):
    status: str   # confirmed | failed | pending
    paymentRecordId: int
    paymentId: Optional[str] = None
    confirmedVia: Optional[str] = None
    failureReason: Optional[str] = None


class WebhookAck(BaseModel):
    status: str = "ok"
    outcome: str


# ──────────────── Records ────────────────

class PaymentRecordResponse(BaseModel):
    id: int
    student_id: str
    route_id: str
    stop_name: str
    billing_period: str
    fee_id: str
    amount_expected: int
    currency: str
    receipt_number: str
    gateway_order_id: str
    gateway_payment_id: Optional[str] = None
    status: str
    confirmed_via: Optional[str] = None
    failure_reason: Optional[str] = None
    payment_method: Optional[str] = None
    paid_at: Optional[datetime] = None
    refund_id: Optional[str] = None
    refunded_amount: Optional[int] = None
    version: int
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class PaymentHistoryResponse(BaseModel):
    studentId: str
    billingPeriod: str                          # Current period, e.g. 2025-26/S1
    currentPeriodPaid: bool
    lastPaidPeriod: Optional[str] = None
    payments: List[PaymentRecordResponse] = []


class FeeResponse(BaseModel):
    id: str
    route_id: str
    stop_name: Optional[str] = None
    academic_year: str
    semester: str
    amount: int
    currency: str
    effective_from: date
    effective_until: date

    class Config:
        from_attributes = True


class FeeListResponse(BaseModel):
    billing_period: str
    fees: List[FeeResponse] = []


# ──────────────── Refunds ────────────────

class RefundRequest(BaseModel):
    amount: Optional[int] = Field(None, gt=0, description="Partial amount in paisa; omit for a full refund")


class RefundResponse(BaseModel):
    paymentRecordId: int
    refundId: str
    amount: int
    status: str


# ──────────────── Demo gateway ────────────────

class DemoPaymentRequest(BaseModel):
    status: str = Field("captured", description="captured | failed")
    amount: Optional[int] = None


class DemoPaymentResponse(BaseModel):
    order_id: str
    payment_id: str
    signature: str


# ──────────────── Admin / Audit ────────────────

class AuditLogEntry(BaseModel):
    id: int
    subject: str
    payment_record_id: Optional[int] = None
    action: str
    payload_hash: Optional[str] = None
    timestamp: datetime
    log_metadata: Optional[Dict] = None

    class Config:
        from_attributes = True


class AuditTrailResponse(BaseModel):
    subject: str
    chain: Dict
    entries: List[AuditLogEntry] = []


class PaymentSummaryResponse(BaseModel):
    total: int
    by_status: Dict[str, int]
    amount_mismatches: int
    confirmed_amount: int


class ExpireStaleResponse(BaseModel):
    cutoff: datetime
    expired_ids: List[int] = []


# ──────────────── Generic ────────────────

class ErrorResponse(BaseModel):
    detail: str
    error_code: Optional[str] = None
