import threading

import pytest

from tms_payments.exceptions import GatewayUnavailable, InvalidSignature, RecordNotFound, ValidationFailed
from tms_payments.models.audit import AuditLog
from tms_payments.models.payment import AMOUNT_MISMATCH, FAILURE_REASON_LENGTH, PaymentRecord
from tms_payments.services import reconciliation as rec
from tms_payments.services.gateway_client import DemoGatewayClient
from tms_payments.services.order_service import OrderService
from tms_payments.services.reconciliation import PaymentEvidence, ReconciliationEngine, decide
from tms_payments.utils.hashing import client_signature_payload, compute_signature
from tests.conftest import FEE_AMOUNT, KEY_SECRET, add_fee, sign, webhook_body


class HookedGateway(DemoGatewayClient):
    """Demo gateway that can run a callback in the middle of fetch_payment."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.on_fetch = None
        self.fetch_error = None

    def fetch_payment(self, payment_id):
        if self.fetch_error is not None:
            raise self.fetch_error
        if self.on_fetch is not None:
            hook, self.on_fetch = self.on_fetch, None
            hook()
        return super().fetch_payment(payment_id)


@pytest.fixture
def gateway():
    return HookedGateway(key_secret=KEY_SECRET)


@pytest.fixture
def order(db, gateway, settings, fee):
    return OrderService(db, gateway, settings).create_order("stu_000123", "route_7", "Main Gate", "fee_s1")


def _engine(db, gateway, settings):
    return ReconciliationEngine(db, gateway, settings)


def _record(session_factory, record_id):
    session = session_factory()
    try:
        return session.query(PaymentRecord).filter(PaymentRecord.id == record_id).one()
    finally:
        session.close()


def _deliver(db, gateway, settings, body):
    return _engine(db, gateway, settings).handle_webhook(body, sign(body))


# ─── decide() ────────────────────────────────────────────────────────

def test_decide_amount_mismatch_beats_captured():
    evidence = PaymentEvidence(payment_id="pay_1", order_id="order_1", amount=99999, status="captured")
    status, reason = decide(100000, evidence)
    assert status.value == "failed"
    assert reason == AMOUNT_MISMATCH


def test_decide_in_flight_status_leaves_pending():
    evidence = PaymentEvidence(payment_id="pay_1", order_id="order_1", amount=100, status="authorized")
    assert decide(100, evidence) is None


def test_decide_failure_reason_from_gateway_error():
    evidence = PaymentEvidence(
        payment_id="pay_1", order_id="order_1", amount=100, status="failed",
        error_code="BAD_REQUEST_ERROR", error_description="Card declined",
    )
    assert decide(100, evidence)[1] == "BAD_REQUEST_ERROR: Card declined"


def test_failure_reason_fits_column():
    evidence = PaymentEvidence(
        payment_id="pay_1", order_id="order_1", amount=100, status="failed",
        error_code="GATEWAY_ERROR", error_description="Issuer bank declined. " * 40,
    )
    reason = evidence.failure_reason
    assert len(reason) == FAILURE_REASON_LENGTH
    assert reason.startswith("GATEWAY_ERROR: Issuer bank declined.")


def test_webhook_long_gateway_error_is_stored_truncated(db, session_factory, gateway, settings, order):
    body = webhook_body(
        event="payment.failed", payment_id="pay_1", order_id=order.orderId, amount=order.amount,
        status="failed", error_code="GATEWAY_ERROR", error_description="x" * 1000,
    )
    result = _deliver(db, gateway, settings, body)

    assert result.outcome == "failed"
    record = _record(session_factory, order.paymentRecordId)
    assert len(record.failure_reason) == FAILURE_REASON_LENGTH


# ─── Webhook trigger ─────────────────────────────────────────────────

def test_webhook_confirms_pending_record(db, session_factory, gateway, settings, order):
    body = webhook_body(payment_id="pay_1", order_id=order.orderId, amount=order.amount)
    result = _deliver(db, gateway, settings, body)

    assert result.outcome == rec.CONFIRMED
    record = _record(session_factory, order.paymentRecordId)
    assert record.status == "confirmed"
    assert record.gateway_payment_id == "pay_1"
    assert record.confirmed_via == "webhook"
    assert record.version == 2
    assert record.paid_at is not None


def test_webhook_redelivery_is_idempotent(db, session_factory, gateway, settings, order):
    body = webhook_body(payment_id="pay_1", order_id=order.orderId, amount=order.amount)

    outcomes = [_deliver(db, gateway, settings, body).outcome for _ in range(5)]

    assert outcomes == [rec.CONFIRMED] + [rec.ALREADY_TERMINAL] * 4
    record = _record(session_factory, order.paymentRecordId)
    assert record.version == 2
    assert db.query(AuditLog).filter(AuditLog.action == "PAYMENT_CONFIRMED").count() == 1


def test_webhook_amount_mismatch_fails_record(db, session_factory, gateway, settings):
    add_fee(db, fee_id="fee_big", amount=100000)
    order = OrderService(db, gateway, settings).create_order("stu_000123", "route_7", "Main Gate", "fee_big")

    body = webhook_body(payment_id="pay_1", order_id=order.orderId, amount=99999, status="captured")
    result = _deliver(db, gateway, settings, body)

    assert result.outcome == rec.MISMATCH
    assert result.is_amount_mismatch
    record = _record(session_factory, order.paymentRecordId)
    assert record.status == "failed"
    assert record.failure_reason == AMOUNT_MISMATCH
    assert record.gateway_payment_id == "pay_1"
    assert db.query(AuditLog).filter(AuditLog.action == "AMOUNT_MISMATCH").count() == 1


def test_webhook_payment_failed(db, session_factory, gateway, settings, order):
    body = webhook_body(
        event="payment.failed", payment_id="pay_2", order_id=order.orderId, amount=order.amount,
        status="failed", error_code="BAD_REQUEST_ERROR", error_description="Payment declined",
    )
    assert _deliver(db, gateway, settings, body).outcome == rec.FAILED

    record = _record(session_factory, order.paymentRecordId)
    assert record.status == "failed"
    assert record.failure_reason == "BAD_REQUEST_ERROR: Payment declined"

    # A later capture cannot resurrect a terminal record
    captured = webhook_body(payment_id="pay_3", order_id=order.orderId, amount=order.amount)
    assert _deliver(db, gateway, settings, captured).outcome == rec.ALREADY_TERMINAL
    assert _record(session_factory, order.paymentRecordId).gateway_payment_id == "pay_2"


def test_order_paid_event_confirms(db, session_factory, gateway, settings, order):
    body = webhook_body(event="order.paid", payment_id="pay_1", order_id=order.orderId, amount=order.amount)
    assert _deliver(db, gateway, settings, body).outcome == rec.CONFIRMED


def test_webhook_for_unknown_order_is_acknowledged(db, gateway, settings, order):
    body = webhook_body(order_id="order_unknown")
    assert _deliver(db, gateway, settings, body).outcome == rec.NOT_FOUND
    assert db.query(AuditLog).filter(AuditLog.action == "WEBHOOK_UNMATCHED").count() == 1


def test_unhandled_event_is_ignored(db, session_factory, gateway, settings, order):
    body = webhook_body(event="payment.authorized", order_id=order.orderId, status="authorized")
    assert _deliver(db, gateway, settings, body).outcome == rec.IGNORED
    assert _record(session_factory, order.paymentRecordId).status == "pending"


def test_invalid_webhook_signature_mutates_nothing(db, session_factory, gateway, settings, order):
    body = webhook_body(order_id=order.orderId, amount=order.amount)
    with pytest.raises(InvalidSignature):
        _engine(db, gateway, settings).handle_webhook(body, sign(body, "wrong"))
    with pytest.raises(InvalidSignature):
        _engine(db, gateway, settings).handle_webhook(body, None)

    record = _record(session_factory, order.paymentRecordId)
    assert record.status == "pending"
    assert record.version == 1


# ─── Client trigger ──────────────────────────────────────────────────

def test_client_verify_confirms(db, session_factory, gateway, settings, order):
    redirect = gateway.simulate_payment(order.orderId)

    result = _engine(db, gateway, settings).verify_client(order.paymentRecordId, **redirect)

    assert result.outcome == rec.CONFIRMED
    assert result.status == "confirmed"
    assert result.confirmed_via == "client"
    assert gateway.calls["fetch_payment"] == 1
    assert _record(session_factory, order.paymentRecordId).gateway_payment_id == redirect["payment_id"]


def test_client_verify_bad_signature_leaves_record(db, session_factory, gateway, settings, order):
    redirect = gateway.simulate_payment(order.orderId)
    redirect["signature"] = "0" * 64

    with pytest.raises(InvalidSignature):
        _engine(db, gateway, settings).verify_client(order.paymentRecordId, **redirect)

    assert gateway.calls["fetch_payment"] == 0
    record = _record(session_factory, order.paymentRecordId)
    assert record.status == "pending"
    assert db.query(AuditLog).filter(AuditLog.action == "SIGNATURE_INVALID").count() == 1


def test_client_verify_signature_for_another_order_is_rejected(db, gateway, settings, order):
    other = gateway.create_order(100, "INR", "r", {})
    redirect = gateway.simulate_payment(other.id)
    with pytest.raises(InvalidSignature):
        _engine(db, gateway, settings).verify_client(order.paymentRecordId, **redirect)


def test_client_verify_payment_of_another_order_is_rejected(db, session_factory, gateway, settings, order):
    other = gateway.create_order(order.amount, "INR", "r", {})
    foreign = gateway.simulate_payment(other.id)
    # Correctly signed for our order, but the gateway says the payment belongs elsewhere
    signature = compute_signature(client_signature_payload(order.orderId, foreign["payment_id"]), KEY_SECRET)

    with pytest.raises(ValidationFailed):
        _engine(db, gateway, settings).verify_client(
            order.paymentRecordId, order.orderId, foreign["payment_id"], signature,
        )
    assert _record(session_factory, order.paymentRecordId).status == "pending"


def test_client_verify_unknown_record(db, gateway, settings):
    with pytest.raises(RecordNotFound):
        _engine(db, gateway, settings).verify_client(404, "order_1", "pay_1", "sig")


def test_client_verify_gateway_timeout_keeps_pending(db, session_factory, gateway, settings, order):
    redirect = gateway.simulate_payment(order.orderId)
    gateway.fetch_error = GatewayUnavailable("timeout")

    with pytest.raises(GatewayUnavailable):
        _engine(db, gateway, settings).verify_client(order.paymentRecordId, **redirect)

    record = _record(session_factory, order.paymentRecordId)
    assert record.status == "pending"
    assert record.version == 1

    # The retry succeeds once the gateway is back
    gateway.fetch_error = None
    assert _engine(db, gateway, settings).verify_client(order.paymentRecordId, **redirect).status == "confirmed"


def test_client_verify_authorized_payment_stays_pending(db, session_factory, gateway, settings, order):
    redirect = gateway.simulate_payment(order.orderId, status="authorized")
    result = _engine(db, gateway, settings).verify_client(order.paymentRecordId, **redirect)
    assert result.outcome == rec.STILL_PENDING
    assert _record(session_factory, order.paymentRecordId).status == "pending"


def test_client_verify_declined_payment(db, gateway, settings, order):
    redirect = gateway.simulate_payment(order.orderId, status="failed")
    result = _engine(db, gateway, settings).verify_client(order.paymentRecordId, **redirect)
    assert result.status == "failed"
    assert result.failure_reason == "BAD_REQUEST_ERROR: Payment declined by bank"


def test_client_verify_after_webhook_short_circuits(db, gateway, settings, order):
    redirect = gateway.simulate_payment(order.orderId)
    body = webhook_body(payment_id=redirect["payment_id"], order_id=order.orderId, amount=order.amount)
    _deliver(db, gateway, settings, body)

    result = _engine(db, gateway, settings).verify_client(order.paymentRecordId, **redirect)

    assert result.outcome == rec.ALREADY_TERMINAL
    assert result.status == "confirmed"
    assert result.confirmed_via == "webhook"
    assert gateway.calls["fetch_payment"] == 0


# ─── Races ───────────────────────────────────────────────────────────

def test_webhook_wins_while_client_is_fetching(db, session_factory, gateway, settings, order):
    redirect = gateway.simulate_payment(order.orderId)
    body = webhook_body(payment_id=redirect["payment_id"], order_id=order.orderId, amount=order.amount)
    webhook_results = []

    def deliver_webhook():
        other = session_factory()
        try:
            webhook_results.append(_deliver(other, gateway, settings, body))
        finally:
            other.close()

    gateway.on_fetch = deliver_webhook

    result = _engine(db, gateway, settings).verify_client(order.paymentRecordId, **redirect)

    assert webhook_results[0].outcome == rec.CONFIRMED
    assert result.outcome == rec.ALREADY_TERMINAL
    assert result.status == "confirmed"
    record = _record(session_factory, order.paymentRecordId)
    assert record.confirmed_via == "webhook"
    assert record.version == 2
    assert db.query(AuditLog).filter(AuditLog.action == "PAYMENT_CONFIRMED").count() == 1


def test_concurrent_client_and_webhook_settle_once(session_factory, gateway, settings, db, order):
    redirect = gateway.simulate_payment(order.orderId)
    body = webhook_body(payment_id=redirect["payment_id"], order_id=order.orderId, amount=order.amount)
    barrier = threading.Barrier(2)
    results, errors = [], []

    def run(trigger):
        session = session_factory()
        try:
            engine = _engine(session, gateway, settings)
            barrier.wait()
            if trigger == "client":
                results.append(engine.verify_client(order.paymentRecordId, **redirect))
            else:
                results.append(engine.handle_webhook(body, sign(body)))
        except Exception as e:  # surfaced through the assertion below
            errors.append(e)
        finally:
            session.close()

    threads = [threading.Thread(target=run, args=(t,)) for t in ("client", "webhook")]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)

    assert errors == []
    assert sorted(r.outcome for r in results) == sorted([rec.CONFIRMED, rec.ALREADY_TERMINAL])
    assert all(r.status == "confirmed" for r in results)
    record = _record(session_factory, order.paymentRecordId)
    assert record.status == "confirmed"
    assert record.version == 2
    assert db.query(AuditLog).filter(AuditLog.action == "PAYMENT_CONFIRMED").count() == 1


def test_distinct_records_settle_independently(db, session_factory, gateway, settings, fee):
    service = OrderService(db, gateway, settings)
    orders = [service.create_order(f"stu_{i:06d}", "route_7", "Main Gate", "fee_s1") for i in range(3)]

    for i, o in enumerate(orders):
        body = webhook_body(payment_id=f"pay_{i}", order_id=o.orderId, amount=FEE_AMOUNT)
        assert _deliver(db, gateway, settings, body).outcome == rec.CONFIRMED

    assert {_record(session_factory, o.paymentRecordId).status for o in orders} == {"confirmed"}
