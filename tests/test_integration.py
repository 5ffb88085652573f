import json

import pytest
from fastapi.testclient import TestClient

import checkout_service.auth
import checkout_service.routes
from checkout_service.config import Settings
from checkout_service.database import Base, make_engine, make_session_factory
from checkout_service.gateway import GatewayOrder, GatewayPayment, ProbeResult
from checkout_service.main import app as fastapi_app
from checkout_service.models import Enrollment, Order, OrderItem
from checkout_service.signature import compute_signature, compute_webhook_signature

SQLALCHEMY_DATABASE_URL = "sqlite:///./test_integration.db"
engine = make_engine(SQLALCHEMY_DATABASE_URL)
TestingSessionLocal = make_session_factory(engine)

WEBHOOK_SECRET = "whsec_test"
TEST_SETTINGS = Settings(
    razorpay_key_id="rzp_test_key",
    razorpay_key_secret="test_key_secret",
    razorpay_webhook_secret=WEBHOOK_SECRET,
    gateway_max_retries=0,
    gateway_retry_backoff_seconds=0,
)


@pytest.fixture(autouse=True)
def setup_db():
    # Setup: Create the tables
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def gateway(mocker):
    gateway = mocker.Mock()
    gateway.create_order = mocker.AsyncMock(
        return_value=GatewayOrder(order_id="order_int_001", amount=49900, currency="INR"))
    gateway.fetch_payment = mocker.AsyncMock(return_value=ProbeResult.found(GatewayPayment(
        payment_id="pay_int_001", status="captured", amount=49900, currency="INR", order_id="order_int_001")))
    return gateway


@pytest.fixture
def client(monkeypatch, gateway):
    # Mock SessionLocal everywhere in the application to use the test database
    monkeypatch.setattr("checkout_service.routes.SessionLocal", TestingSessionLocal)
    monkeypatch.setattr("checkout_service.main.SessionLocal", TestingSessionLocal)

    # Bypass auth verification for tests
    fastapi_app.dependency_overrides[checkout_service.auth.verify_token] = lambda: "student-1"
    fastapi_app.dependency_overrides[checkout_service.routes.get_settings] = lambda: TEST_SETTINGS
    fastapi_app.dependency_overrides[checkout_service.routes.get_gateway] = lambda: gateway

    with TestClient(fastapi_app) as c:
        yield c

    # Cleanup dependencies
    fastapi_app.dependency_overrides.clear()


def webhook(client, event, payment_id="pay_int_001", gateway_order_id="order_int_001", status="captured"):
    body = json.dumps({
        "event": event,
        "payload": {"payment": {"entity": {
            "id": payment_id,
            "order_id": gateway_order_id,
            "status": status,
            "amount": 49900,
        }}},
    }).encode("utf-8")
    return client.post(
        "/webhook",
        content=body,
        headers={"x-razorpay-signature": compute_webhook_signature(body, WEBHOOK_SECRET)},
    )


def create_checkout(client):
    response = client.post("/orders", json={"items": [
        {"course_id": "course-python", "price": 29900},
        {"course_id": "course-sql", "price": 20000},
    ]})
    assert response.status_code == 200
    order_id = response.json()["order_id"]

    response = client.post("/create-razorpay-order", json={"amount": 49900, "order_id": order_id})
    assert response.status_code == 200
    assert response.json()["order_id"] == "order_int_001"
    return order_id


def test_full_checkout_lifecycle_integration(client, gateway):
    """
    1. Create local order (API -> DB)
    2. Create gateway order and bind it (API -> gateway mocked -> DB)
    3. Verify the callback (gateway probe mocked -> DB -> enrollments)
    4. Late webhook for the same payment is a no-op
    """
    order_id = create_checkout(client)

    db = TestingSessionLocal()
    order = db.get(Order, order_id)
    assert order.status == "pending"
    assert order.gateway_order_id == "order_int_001"
    db.close()

    response = client.post("/verify-razorpay-payment", json={
        "razorpay_order_id": "order_int_001",
        "razorpay_payment_id": "pay_int_001",
        "razorpay_signature": compute_signature("order_int_001", "pay_int_001", "test_key_secret"),
        "order_id": order_id,
    })

    assert response.status_code == 200
    assert response.json()["success"] is True
    gateway.fetch_payment.assert_awaited_once_with("pay_int_001")

    db = TestingSessionLocal()
    order = db.get(Order, order_id)
    assert order.status == "confirmed"
    assert order.payment_method == "Razorpay"
    assert order.gateway_payment_id == "pay_int_001"
    enrolled = {e.course_id for e in db.query(Enrollment).filter_by(student_id="student-1")}
    assert enrolled == {"course-python", "course-sql"}
    db.close()

    assert webhook(client, "payment.failed", status="failed").json() == {"ok": True}

    status = client.get(f"/orders/{order_id}").json()
    assert status["status"] == "confirmed"
    assert status["payment_id"] == "pay_int_001"


def test_webhook_confirms_order_when_client_never_calls_back(client):
    order_id = create_checkout(client)

    response = webhook(client, "payment.captured")

    assert response.status_code == 200
    db = TestingSessionLocal()
    assert db.get(Order, order_id).status == "confirmed"
    assert db.query(Enrollment).filter_by(student_id="student-1").count() == 2
    db.close()


def test_failed_attempt_webhook_does_not_block_a_retry(client, gateway):
    """
    1. Buyer's first card is declined; the gateway reports payment.failed
    2. The order stays pending
    3. Buyer pays again on the same gateway order and the callback confirms it
    """
    order_id = create_checkout(client)

    response = webhook(client, "payment.failed", payment_id="pay_attempt_1", status="failed")
    assert response.json() == {"ok": True}

    status = client.get(f"/orders/{order_id}").json()
    assert status["status"] == "pending"
    assert status["failure_reason"] is None

    gateway.fetch_payment.return_value = ProbeResult.found(GatewayPayment(
        payment_id="pay_attempt_2", status="captured", amount=49900, currency="INR", order_id="order_int_001"))
    response = client.post("/verify-razorpay-payment", json={
        "razorpay_order_id": "order_int_001",
        "razorpay_payment_id": "pay_attempt_2",
        "razorpay_signature": compute_signature("order_int_001", "pay_attempt_2", "test_key_secret"),
        "order_id": order_id,
    })

    assert response.status_code == 200
    assert response.json()["payment_id"] == "pay_attempt_2"
    db = TestingSessionLocal()
    order = db.get(Order, order_id)
    assert order.status == "confirmed"
    assert order.gateway_payment_id == "pay_attempt_2"
    assert db.query(Enrollment).filter_by(student_id="student-1").count() == 2
    db.close()


def test_webhook_for_wrong_amount_leaves_order_pending(client):
    order_id = create_checkout(client)

    body = json.dumps({
        "event": "payment.captured",
        "payload": {"payment": {"entity": {
            "id": "pay_int_001",
            "order_id": "order_int_001",
            "status": "captured",
            "amount": 100,
            "currency": "INR",
        }}},
    }).encode("utf-8")
    response = client.post(
        "/webhook",
        content=body,
        headers={"x-razorpay-signature": compute_webhook_signature(body, WEBHOOK_SECRET)},
    )

    assert response.json() == {"ok": True}
    db = TestingSessionLocal()
    assert db.get(Order, order_id).status == "pending"
    assert db.query(Enrollment).count() == 0
    db.close()


def test_webhook_non_existent_order(client):
    """Events for gateway orders we never bound are acknowledged and ignored."""
    response = webhook(client, "payment.captured", gateway_order_id="order_unknown")
    assert response.status_code == 200
    assert response.json() == {"ok": True}


def test_webhook_ignores_other_events(client):
    order_id = create_checkout(client)

    response = webhook(client, "refund.created")

    assert response.json() == {"ok": True}
    db = TestingSessionLocal()
    assert db.get(Order, order_id).status == "pending"
    db.close()


def test_webhook_invalid_signature(client):
    response = client.post(
        "/webhook",
        content=b'{"event": "payment.captured"}',
        headers={"x-razorpay-signature": "invalid_sig"},
    )

    assert response.status_code == 400
    assert response.json()["detail"] == "Invalid signature"


def test_enrollment_is_unique_per_student_and_course(client):
    db = TestingSessionLocal()
    order = Order(user_id="student-1", total_amount=100, status="confirmed")
    order.items = [OrderItem(course_id="course-python", price=100)]
    db.add(order)
    db.add(Enrollment(student_id="student-1", course_id="course-python"))
    db.commit()
    order_id = order.id
    db.close()

    response = client.post(f"/orders/{order_id}/enroll")

    assert response.json()["already_enrolled"] == ["course-python"]
    db = TestingSessionLocal()
    assert db.query(Enrollment).count() == 1
    db.close()
