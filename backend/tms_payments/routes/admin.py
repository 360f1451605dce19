"""
Admin Routes — Operator reconciliation job, payment summary and audit trail access.
"""
import logging
from datetime import datetime, timedelta

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from tms_payments.config import Settings, get_settings
from tms_payments.database import get_db
from tms_payments.schemas.schemas import (
    AuditLogEntry, AuditTrailResponse, ExpireStaleResponse, PaymentSummaryResponse,
)
from tms_payments.services.audit_service import AuditService
from tms_payments.services.payment_store import PaymentStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments/admin", tags=["Admin"])


@router.get("/summary", response_model=PaymentSummaryResponse)
def get_summary(db: Session = Depends(get_db)):
    """Counts per status, amount-mismatch failures and confirmed revenue."""
    return PaymentSummaryResponse(**PaymentStore(db).summary())


@router.post("/expire-stale", response_model=ExpireStaleResponse)
def expire_stale(db: Session = Depends(get_db), settings: Settings = Depends(get_settings)):
    """Fail pending records older than PENDING_EXPIRY_MINUTES."""
    cutoff = datetime.utcnow() - timedelta(minutes=settings.PENDING_EXPIRY_MINUTES)
    store = PaymentStore(db)
    expired = store.expire_stale_pending(cutoff)

    for record_id in expired:
        record = store.get(record_id)
        AuditService.log(
            db, record.gateway_order_id, "PAYMENT_EXPIRED",
            payload={"record_id": record_id, "cutoff": cutoff.isoformat()},
            payment_record_id=record_id,
        )
    if expired:
        logger.info(f"Expired {len(expired)} stale pending payment(s): {expired}")

    return ExpireStaleResponse(cutoff=cutoff, expired_ids=expired)


@router.get("/audit/{subject}", response_model=AuditTrailResponse)
def get_audit_trail(subject: str, db: Session = Depends(get_db)):
    """Audit entries for a gateway order (or 'webhook') with chain verification."""
    entries = AuditService.get_trail(db, subject)
    return AuditTrailResponse(
        subject=subject,
        chain=AuditService.verify_chain(db, subject),
        entries=[AuditLogEntry.model_validate(e) for e in entries],
    )
