import os

# Must be set before storefront is imported: engine and settings read them once
os.environ["DATABASE_URL"] = "sqlite:///./test_storefront.db"
os.environ["JWT_SECRET"] = "test_jwt_secret"
os.environ["PAYMENT_GATEWAY"] = "paystack"
os.environ["PAYSTACK_SECRET_KEY"] = "sk_test_secret"
os.environ["LOG_JSON"] = "false"

import json

import pytest
from fastapi.testclient import TestClient
from jose import jwt

from storefront.database import Base, SessionLocal, engine
from storefront.gateway import InitializeResult, VerifyResult, hmac_sha512_hex
from storefront.main import app as fastapi_app
from storefront.models import INITIALIZED, PaymentRecord
from storefront.paystack_service import PaystackGateway
from storefront.routes import get_gateways, get_notifier

WEBHOOK_SECRET = "sk_test_secret"


class FakeGateway(PaystackGateway):
    """Paystack adapter with the HTTP calls replaced; webhook parsing and
    signature checks are the real ones."""

    def __init__(self):
        super().__init__(secret_key=WEBHOOK_SECRET, base_url="https://paystack.invalid")
        self.verify_result = VerifyResult(provider_status="success", paid_amount_minor=None, succeeded=True)
        self.initialized = []
        self.verified = []

    def initialize(self, email, amount_major, currency, reference, callback_url, metadata=None):
        self.initialized.append({
            "email": email,
            "amount_major": amount_major,
            "currency": currency,
            "reference": reference,
            "metadata": metadata,
        })
        return InitializeResult(
            checkout_url=f"https://checkout.paystack.test/{reference}",
            provider_reference=reference,
            access_code="ac_test",
        )

    def verify(self, reference):
        self.verified.append(reference)
        return self.verify_result


class RecordingNotifier:
    """Stands in for OrderNotifier; keeps the references it was asked to mail."""

    def __init__(self):
        self.sent = []

    def order_paid(self, payment, order):
        self.sent.append((payment.reference, order.id))
        return True


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db():
    session = SessionLocal()
    yield session
    session.close()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def client(gateway, notifier):
    fastapi_app.dependency_overrides[get_gateways] = lambda: (lambda name=None: gateway)
    fastapi_app.dependency_overrides[get_notifier] = lambda: notifier
    with TestClient(fastapi_app) as c:
        yield c
    fastapi_app.dependency_overrides.clear()


def auth_headers(user_id="user-1", **claims):
    token = jwt.encode({"sub": user_id, **claims}, os.environ["JWT_SECRET"], algorithm="HS256")
    return {"Authorization": f"Bearer {token}"}


def signed_webhook(payload: dict, secret: str = WEBHOOK_SECRET):
    body = json.dumps(payload).encode("utf-8")
    return body, {"x-paystack-signature": hmac_sha512_hex(secret, body), "Content-Type": "application/json"}


def make_payment(session, reference="REF_1", user_id="user-1", status=INITIALIZED,
                 cart=None, amount_minor_units=None, gateway="paystack"):
    """Insert a payment row. Cart prices are minor units."""
    if cart is None:
        cart = [{"product_id": "p1", "variant_id": None, "quantity": 2, "unit_price_minor": 100000}]
    if amount_minor_units is None:
        amount_minor_units = sum(line["quantity"] * line["unit_price_minor"] for line in cart)

    payment = PaymentRecord(
        reference=reference,
        user_id=user_id,
        email="buyer@example.com",
        status=status,
        amount_minor_units=amount_minor_units,
        currency="NGN",
        cart_snapshot=cart,
        gateway=gateway,
    )
    session.add(payment)
    session.commit()
    return payment
