import json
import os
from datetime import date, timedelta

import pytest

os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402

from tms_payments.config import Settings, get_settings  # noqa: E402
from tms_payments.database import build_engine, get_db, init_db  # noqa: E402
from tms_payments.main import app  # noqa: E402
from tms_payments.models.fee import TransportFee  # noqa: E402
from tms_payments.services.gateway_client import DemoGatewayClient, get_gateway_client  # noqa: E402
from tms_payments.utils.hashing import compute_signature  # noqa: E402
from tms_payments.utils.rate_limiter import reset_rate_limits  # noqa: E402

KEY_SECRET = "test_key_secret"
WEBHOOK_SECRET = "whsec_test_secret"
FEE_AMOUNT = 50000


@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'payments.db'}")
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        ENVIRONMENT="test",
        DATABASE_URL=f"sqlite:///{tmp_path / 'payments.db'}",
        RAZORPAY_KEY_ID="rzp_test_key",
        RAZORPAY_KEY_SECRET=KEY_SECRET,
        RAZORPAY_WEBHOOK_SECRET=WEBHOOK_SECRET,
        LOG_DIR=str(tmp_path / "logs"),
    )


@pytest.fixture
def gateway():
    return DemoGatewayClient(key_secret=KEY_SECRET)


def add_fee(db, fee_id="fee_s1", route_id="route_7", stop_name=None, amount=FEE_AMOUNT, **overrides):
    today = date.today()
    fee = TransportFee(
        id=fee_id,
        route_id=route_id,
        stop_name=stop_name,
        academic_year=overrides.pop("academic_year", "2025-26"),
        semester=overrides.pop("semester", "1"),
        amount=amount,
        currency="INR",
        is_active=overrides.pop("is_active", True),
        effective_from=overrides.pop("effective_from", today - timedelta(days=30)),
        effective_until=overrides.pop("effective_until", today + timedelta(days=150)),
    )
    db.add(fee)
    db.commit()
    return fee


@pytest.fixture
def fee(db):
    return add_fee(db)


def webhook_body(event="payment.captured", payment_id="pay_1", order_id="order_1",
                 amount=FEE_AMOUNT, status="captured", **entity_fields) -> bytes:
    entity = {
        "id": payment_id,
        "entity": "payment",
        "order_id": order_id,
        "amount": amount,
        "currency": "INR",
        "status": status,
        "method": "upi",
        **entity_fields,
    }
    envelope = {
        "entity": "event",
        "event": event,
        "payload": {"payment": {"entity": entity}},
    }
    if event == "order.paid":
        envelope["payload"]["order"] = {"entity": {"id": order_id, "amount": amount, "amount_paid": amount, "status": "paid"}}
    return json.dumps(envelope).encode("utf-8")


def sign(body: bytes, secret: str = WEBHOOK_SECRET) -> str:
    return compute_signature(body, secret)


@pytest.fixture
def client(session_factory, gateway, settings):
    def override_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_gateway_client] = lambda: gateway
    app.dependency_overrides[get_settings] = lambda: settings
    reset_rate_limits()

    yield TestClient(app)

    app.dependency_overrides.clear()
