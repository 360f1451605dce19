"""
Payment Errors — One exception per business outcome the API reports.
Each carries its HTTP status and a stable error_code; a single handler in
main.py turns them into JSON responses.
"""
from typing import Any, Dict, Optional


class PaymentError(Exception):
    status_code: int = 400
    error_code: str = "PaymentError"

    def __init__(self, detail: str = "", extra: Optional[Dict[str, Any]] = None):
        super().__init__(detail or self.error_code)
        self.detail = detail or self.error_code
        self.extra = extra or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"detail": self.detail, "error_code": self.error_code, **self.extra}


class ValidationFailed(PaymentError):
    status_code = 400
    error_code = "ValidationFailed"


class FeeNotFound(PaymentError):
    status_code = 404
    error_code = "FeeNotFound"


class RecordNotFound(PaymentError):
    status_code = 404
    error_code = "RecordNotFound"


class AlreadyExists(PaymentError):
    """An active (pending/confirmed) attempt already exists for the scope key."""

    status_code = 409
    error_code = "AlreadyExists"

    def __init__(self, record):
        super().__init__(
            f"Payment already {record.status} for this billing period",
            extra={
                "existing_payment": {
                    "id": record.id,
                    "status": record.status,
                    "order_id": record.gateway_order_id,
                    "created_at": record.created_at.isoformat() if record.created_at else None,
                }
            },
        )
        self.record = record


class InvalidSignature(PaymentError):
    status_code = 400
    error_code = "InvalidSignature"


class AmountMismatch(PaymentError):
    status_code = 400
    error_code = "AmountMismatch"


class GatewayUnavailable(PaymentError):
    """Network failure, timeout or 5xx from the gateway. Retryable."""

    status_code = 502
    error_code = "GatewayUnavailable"


class GatewayRejected(PaymentError):
    """The gateway answered but refused the request (4xx)."""

    status_code = 502
    error_code = "GatewayRejected"


class StoreConflict(PaymentError):
    """Optimistic-lock failure that survived the re-read."""

    status_code = 409
    error_code = "StoreConflict"


class RefundNotAllowed(PaymentError):
    status_code = 409
    error_code = "RefundNotAllowed"
