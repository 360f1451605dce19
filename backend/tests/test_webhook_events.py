import json

from tms_payments.schemas.webhook import (
    IgnoredEvent, OrderPaidEvent, PaymentCapturedEvent, PaymentFailedEvent, parse_webhook_event,
)
from tests.conftest import webhook_body


def _parse(body: bytes):
    return parse_webhook_event(json.loads(body))


def test_payment_captured_variant():
    event = _parse(webhook_body())
    assert isinstance(event, PaymentCapturedEvent)
    assert event.payment.id == "pay_1"
    assert event.payment.order_id == "order_1"
    assert event.payment.amount == 50000


def test_payment_failed_variant_carries_error():
    event = _parse(webhook_body(
        event="payment.failed", status="failed",
        error_code="BAD_REQUEST_ERROR", error_description="Card declined",
    ))
    assert isinstance(event, PaymentFailedEvent)
    assert event.payment.error_description == "Card declined"


def test_order_paid_variant_includes_order():
    event = _parse(webhook_body(event="order.paid"))
    assert isinstance(event, OrderPaidEvent)
    assert event.order.id == "order_1"
    assert event.payment.status == "captured"


def test_unknown_event_is_ignored():
    event = _parse(webhook_body(event="refund.processed"))
    assert isinstance(event, IgnoredEvent)
    assert event.event == "refund.processed"
    assert event.reason == "unhandled_event"


def test_handled_event_without_entity_is_ignored():
    event = parse_webhook_event({"event": "payment.captured", "payload": {}})
    assert isinstance(event, IgnoredEvent)
    assert event.reason == "malformed_payment_entity"


def test_non_object_envelope_is_ignored():
    assert isinstance(parse_webhook_event(["payment.captured"]), IgnoredEvent)
