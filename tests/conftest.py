import hashlib
import hmac
import itertools
import json
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

import auth
from config import Settings
from errors import InvalidSignature, PaymentVerificationFailed
from main import create_app
from models import MenuItem
from orders import start_checkout
from payments import (
    PaymentGateway, PaymentSession, PaymentVerification, WebhookEvent,
    decode_snapshot, encode_snapshot,
)
from realtime import Broadcaster
from schemas import CheckoutIntentRequest

FAKE_SECRET = b"fake-provider-secret"

ADDRESS = {
    "street": "12 Market Street",
    "city": "Springfield",
    "state": "IL",
    "zipCode": "62701",
    "country": "USA",
}


def fake_sign(message):
    if isinstance(message, str):
        message = message.encode("utf-8")
    return hmac.new(FAKE_SECRET, message, hashlib.sha256).hexdigest()


class FakeGateway(PaymentGateway):
    """In-memory provider: keeps created payments and lets tests 'pay' them."""

    name = "fake"
    signature_header = "X-Fake-Signature"

    def __init__(self):
        self.orders = {}
        self.idempotency_keys = []
        self._ids = itertools.count(1)

    def create_payment(self, amount, currency, snapshot, idempotency_key):
        self.idempotency_keys.append(idempotency_key)
        for ref, record in self.orders.items():
            if record["idempotency_key"] == idempotency_key:
                return PaymentSession(self.name, ref, record["amount"], currency, {"providerOrderId": ref})
        ref = f"order_fake_{next(self._ids)}"
        self.orders[ref] = {
            "amount": amount,
            "currency": currency,
            "notes": encode_snapshot(snapshot, 256, 14),
            "idempotency_key": idempotency_key,
            "payment_id": None,
            "charged": None,
        }
        return PaymentSession(self.name, ref, amount, currency, {"providerOrderId": ref})

    def pay(self, ref, charged=None):
        record = self.orders[ref]
        record["payment_id"] = f"pay_fake_{next(self._ids)}"
        record["charged"] = record["amount"] if charged is None else charged
        return {
            "providerOrderId": ref,
            "providerPaymentId": record["payment_id"],
            "signature": fake_sign(f"{ref}|{record['payment_id']}"),
        }

    def _verification(self, ref, payment_id):
        record = self.orders[ref]
        return PaymentVerification(
            verified=True,
            provider=self.name,
            correlation_id=payment_id,
            provider_order_id=ref,
            amount=record["charged"],
            currency=record["currency"],
            method="upi",
            metadata=decode_snapshot(record["notes"]),
        )

    def verify(self, proof):
        ref = proof.get("providerOrderId", "")
        payment_id = proof.get("providerPaymentId", "")
        if not hmac.compare_digest(fake_sign(f"{ref}|{payment_id}"), proof.get("signature", "")):
            raise InvalidSignature("Payment verification failed. Invalid signature.")
        if ref not in self.orders or self.orders[ref]["payment_id"] != payment_id:
            raise PaymentVerificationFailed("Unknown payment")
        return self._verification(ref, payment_id)

    def webhook(self, ref, event="payment.captured"):
        body = json.dumps({
            "event": event,
            "orderRef": ref,
            "paymentId": self.orders.get(ref, {}).get("payment_id"),
        }).encode("utf-8")
        return body, fake_sign(body)

    def parse_webhook(self, body, signature):
        if not hmac.compare_digest(fake_sign(body), signature or ""):
            raise InvalidSignature("Webhook signature verification failed")
        data = json.loads(body)
        if data["event"] == "payment.captured":
            return WebhookEvent("payment_succeeded", data["event"],
                                self._verification(data["orderRef"], data["paymentId"]))
        if data["event"] == "payment.failed":
            return WebhookEvent("payment_failed", data["event"], reason="card declined")
        return WebhookEvent("ignored", data["event"])


class Clock:
    def __init__(self):
        self.now = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def tick(self, minutes=1):
        self.now += timedelta(minutes=minutes)


class EventRecorder:
    def __init__(self):
        self.events = []

    def __call__(self, payload):
        self.events.append(payload)

    def of_type(self, event_type):
        return [e for e in self.events if e["type"] == event_type]


def bearer(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def recorder():
    return EventRecorder()


@pytest.fixture
def broadcaster(recorder):
    broadcaster = Broadcaster()
    broadcaster.add_listener(recorder)
    return broadcaster


@pytest.fixture
def settings(tmp_path):
    return Settings(database_url=f"sqlite:///{tmp_path / 'test.db'}", currency="INR")


@pytest.fixture
def app(settings, gateway, broadcaster, clock):
    return create_app(settings, gateway=gateway, broadcaster=broadcaster, clock=clock)


@pytest.fixture
def session(app):
    session = app.state.session_factory()
    yield session
    session.close()


@pytest.fixture
def client(app):
    with TestClient(app) as client:
        yield client


@pytest.fixture
def menu(session):
    items = {
        "burger": MenuItem(
            name="Burger", description="Beef burger", price=Decimal("10.00"),
            category="main-course", is_available=True, preparation_time=15,
            customization_options=[
                {"name": "Size", "required": True, "choices": [
                    {"label": "Regular", "price": "0"},
                    {"label": "Large", "price": "2.00"},
                ]},
                {"name": "Extras", "required": False, "choices": [
                    {"label": "Bacon", "price": "1.50"},
                    {"label": "Cheese", "price": "1.00"},
                ]},
            ],
        ),
        "fries": MenuItem(
            name="Fries", description="Crispy fries", price=Decimal("3.50"),
            category="sides", is_available=True, preparation_time=6,
            customization_options=[],
        ),
        "soup": MenuItem(
            name="Soup", description="Soup of the day", price=Decimal("5.00"),
            category="appetizer", is_available=False, preparation_time=5,
            customization_options=[],
        ),
    }
    session.add_all(items.values())
    session.commit()
    return items


@pytest.fixture
def customer(session):
    return auth.create_user(session, "Jane Doe", "jane@example.com", "password123")


@pytest.fixture
def customer_token(session, customer):
    return auth.issue_token(session, customer)


@pytest.fixture
def other_customer_token(session):
    user = auth.create_user(session, "John Roe", "john@example.com", "password123")
    return auth.issue_token(session, user)


@pytest.fixture
def kitchen_token(session):
    user = auth.create_user(session, "Kitchen Staff", "kitchen@example.com", "Kitchen123!", role="kitchen")
    return auth.issue_token(session, user)


@pytest.fixture
def admin_token(session):
    user = auth.create_user(session, "Admin", "admin@example.com", "Admin123!", role="admin")
    return auth.issue_token(session, user)


def burger_line(menu, size="Large", quantity=2, **extra):
    line = {"menuItemId": menu["burger"].id, "customizations": {"Size": size}, "quantity": quantity}
    line.update(extra)
    return line


@pytest.fixture
def checkout(session, gateway):
    """Open a payment directly through the service layer; returns the provider order id."""
    started = itertools.count(1_760_000_000_000)

    def _checkout(customer_id, cart_lines, declared_total, started_at=None):
        request = CheckoutIntentRequest(
            cart_lines=cart_lines,
            declared_total=declared_total,
            delivery_address=ADDRESS,
            checkout_started_at=started_at or next(started),
        )
        result = start_checkout(session, gateway, customer_id, request, "INR")
        return result["providerOrderId"]

    return _checkout


@pytest.fixture
def place_order(client, gateway, clock):
    """Run checkout-intent + payment + confirm over HTTP and return the order JSON."""
    started = itertools.count(1_760_000_000_000)

    def _place(token, cart_lines, declared_total):
        resp = client.post("/orders/checkout-intent", headers=bearer(token), json={
            "cartLines": cart_lines,
            "declaredTotal": declared_total,
            "deliveryAddress": ADDRESS,
            "checkoutStartedAt": next(started),
        })
        assert resp.status_code == 200, resp.text
        proof = gateway.pay(resp.json()["providerOrderId"])
        resp = client.post("/orders/confirm", headers=bearer(token), json={"paymentProof": proof})
        assert resp.status_code == 201, resp.text
        clock.tick()
        return resp.json()["order"]

    return _place
