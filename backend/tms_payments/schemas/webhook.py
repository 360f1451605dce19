"""
Webhook Events — Tagged variants of the gateway's event envelope.

The gateway posts {"event": ..., "payload": {"payment": {"entity": {...}}}}.
Each handled event type becomes its own model; anything else parses to
IgnoredEvent so nothing falls through implicitly.
"""
from typing import Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ValidationError


class PaymentEntity(BaseModel):
    id: str
    order_id: str
    amount: int
    currency: str = "INR"
    status: str
    method: Optional[str] = None
    error_code: Optional[str] = None
    error_description: Optional[str] = None


class OrderEntity(BaseModel):
    id: str
    amount: Optional[int] = None
    amount_paid: Optional[int] = None
    status: Optional[str] = None


class PaymentCapturedEvent(BaseModel):
    event: Literal["payment.captured"] = "payment.captured"
    payment: PaymentEntity


class PaymentFailedEvent(BaseModel):
    event: Literal["payment.failed"] = "payment.failed"
    payment: PaymentEntity


class OrderPaidEvent(BaseModel):
    event: Literal["order.paid"] = "order.paid"
    payment: PaymentEntity
    order: Optional[OrderEntity] = None


class IgnoredEvent(BaseModel):
    event: str
    reason: str = "unhandled_event"


WebhookEvent = Union[PaymentCapturedEvent, PaymentFailedEvent, OrderPaidEvent, IgnoredEvent]

_HANDLED = {
    "payment.captured": PaymentCapturedEvent,
    "payment.failed": PaymentFailedEvent,
    "order.paid": OrderPaidEvent,
}


def _entity(payload: Dict[str, Any], name: str) -> Optional[Dict[str, Any]]:
    wrapper = payload.get(name) or {}
    if not isinstance(wrapper, dict):
        return None
    return wrapper.get("entity")


def parse_webhook_event(envelope: Any) -> WebhookEvent:
    """Turn a decoded webhook body into one of the event variants."""
    if not isinstance(envelope, dict):
        return IgnoredEvent(event="", reason="malformed_envelope")

    event = str(envelope.get("event") or "")
    model = _HANDLED.get(event)
    if model is None:
        return IgnoredEvent(event=event)

    payload = envelope.get("payload") or {}
    if not isinstance(payload, dict):
        return IgnoredEvent(event=event, reason="malformed_payload")

    data: Dict[str, Any] = {"event": event, "payment": _entity(payload, "payment")}
    if model is OrderPaidEvent:
        data["order"] = _entity(payload, "order")
    try:
        return model.model_validate(data)
    except ValidationError:
        return IgnoredEvent(event=event, reason="malformed_payment_entity")
