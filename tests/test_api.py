import json
from decimal import Decimal

from fastapi.concurrency import run_in_threadpool

from conftest import auth_headers, make_payment, signed_webhook
from storefront.database import SessionLocal
from storefront.errors import GatewayError, GatewayTimeout
from storefront.gateway import VerifyResult, hmac_sha512_hex
from storefront.main import app as fastapi_app
from storefront.models import INITIALIZED, PAID, Order, PaymentRecord
from storefront.monnify_service import MonnifyGateway
from storefront.routes import _handle_webhook, get_gateways

CART = [{"product_id": "p1", "price": 1000, "quantity": 2}]


def payment_status(reference):
    db = SessionLocal()
    try:
        return db.query(PaymentRecord).filter_by(reference=reference).one().status
    finally:
        db.close()


def order_count(reference=None):
    db = SessionLocal()
    try:
        q = db.query(Order)
        if reference:
            q = q.filter_by(payment_reference=reference)
        return q.count()
    finally:
        db.close()


# --- initialize ---

def test_initialize_payment_success(client, gateway):
    response = client.post(
        "/payments/initialize",
        json={"amount": 2000, "email": "buyer@example.com", "cart": CART, "meta": {"note": "gift"}},
        headers=auth_headers("user-1"),
    )

    assert response.status_code == 200
    body = response.json()
    reference = body["reference"]
    assert reference.startswith("REF_")
    assert body["authorization_url"] == f"https://checkout.paystack.test/{reference}"
    assert gateway.initialized[0]["metadata"] == {"user_id": "user-1", "note": "gift"}

    db = SessionLocal()
    payment = db.query(PaymentRecord).filter_by(reference=reference).one()
    assert payment.status == INITIALIZED
    assert payment.amount_minor_units == 200000
    assert payment.currency == "NGN"
    assert payment.user_id == "user-1"
    assert payment.cart_snapshot == [
        {"product_id": "p1", "variant_id": None, "name": None, "quantity": 2, "unit_price_minor": 100000}
    ]
    db.close()


def test_initialize_requires_auth(client):
    response = client.post("/payments/initialize", json={"amount": 2000, "email": "a@b.co", "cart": CART})

    assert response.status_code == 401


def test_initialize_rejects_bad_token(client):
    response = client.post(
        "/payments/initialize",
        json={"amount": 2000, "email": "a@b.co", "cart": CART},
        headers={"Authorization": "Bearer not-a-jwt"},
    )

    assert response.status_code == 401


def test_initialize_missing_fields_is_400(client):
    response = client.post("/payments/initialize", json={"cart": CART}, headers=auth_headers())

    assert response.status_code == 400


def test_initialize_amount_must_match_cart(client, gateway):
    response = client.post(
        "/payments/initialize",
        json={"amount": 1500, "email": "a@b.co", "cart": CART},
        headers=auth_headers(),
    )

    assert response.status_code == 400
    assert "cart total" in response.json()["detail"]
    assert gateway.initialized == []


def test_initialize_gateway_failure_leaves_no_record(client, gateway, mocker):
    mocker.patch.object(gateway, "initialize", side_effect=GatewayError("Paystack Service Unavailable"))

    response = client.post(
        "/payments/initialize",
        json={"amount": 2000, "email": "a@b.co", "cart": CART},
        headers=auth_headers(),
    )

    assert response.status_code == 502
    assert response.json()["detail"] == "Paystack Service Unavailable"
    db = SessionLocal()
    assert db.query(PaymentRecord).count() == 0
    db.close()


# --- verify ---

def test_verify_success_creates_order(client, gateway, db):
    make_payment(db, "REF_1")
    gateway.verify_result = VerifyResult("success", 200000, {}, succeeded=True)

    response = client.get("/payments/verify?reference=REF_1", headers=auth_headers("user-1"))

    assert response.status_code == 200
    body = response.json()
    assert body["paid"] is True
    assert body["status"] == PAID
    assert body["order_id"] is not None
    assert order_count("REF_1") == 1


def test_verify_already_paid_skips_gateway(client, gateway, db, mocker):
    make_payment(db, "REF_1", status=PAID)
    spy = mocker.spy(gateway, "verify")

    response = client.get("/payments/verify?reference=REF_1", headers=auth_headers("user-1"))

    assert response.status_code == 200
    assert response.json()["paid"] is True
    spy.assert_not_called()


def test_verify_failed(client, gateway, db):
    make_payment(db, "REF_1")
    gateway.verify_result = VerifyResult("failed", None, {}, succeeded=False)

    response = client.get("/payments/verify?reference=REF_1", headers=auth_headers("user-1"))

    assert response.json() == {"paid": False, "status": "failed", "reference": "REF_1", "order_id": None}
    assert order_count() == 0


def test_verify_other_users_payment_is_404(client, db):
    make_payment(db, "REF_1", user_id="user-1")

    response = client.get("/payments/verify?reference=REF_1", headers=auth_headers("user-2"))

    assert response.status_code == 404


def test_verify_requires_reference(client):
    response = client.get("/payments/verify", headers=auth_headers())

    assert response.status_code == 400


def test_verify_gateway_timeout_keeps_initialized(client, gateway, db, mocker):
    make_payment(db, "REF_1")
    mocker.patch.object(gateway, "verify", side_effect=GatewayTimeout("paystack did not respond", "REF_1"))

    response = client.get("/payments/verify?reference=REF_1", headers=auth_headers("user-1"))

    assert response.status_code == 504
    assert payment_status("REF_1") == INITIALIZED


def test_verify_amount_mismatch_is_not_success(client, gateway, db):
    make_payment(db, "REF_1")
    gateway.verify_result = VerifyResult("success", 100, {}, succeeded=True)

    response = client.get("/payments/verify?reference=REF_1", headers=auth_headers("user-1"))

    assert response.status_code == 500
    assert payment_status("REF_1") == INITIALIZED
    assert order_count() == 0


# --- webhook ---

def test_webhook_invalid_signature_is_rejected(client, db):
    make_payment(db, "REF_1")
    body, headers = signed_webhook({"event": "charge.success", "data": {"reference": "REF_1"}}, secret="wrong")

    response = client.post("/payments/webhook", content=body, headers=headers)

    assert response.status_code == 401
    assert payment_status("REF_1") == INITIALIZED
    assert order_count() == 0


def test_webhook_missing_signature_is_rejected(client, db):
    make_payment(db, "REF_1")

    response = client.post("/payments/webhook", json={"event": "charge.success", "data": {"reference": "REF_1"}})

    assert response.status_code == 401
    assert payment_status("REF_1") == INITIALIZED


def test_webhook_success(client, db):
    make_payment(db, "REF_1")
    body, headers = signed_webhook({"event": "charge.success", "data": {"reference": "REF_1", "amount": 200000}})

    response = client.post("/payments/webhook", content=body, headers=headers)

    assert response.status_code == 200
    assert response.json() == {"ok": True, "already_processed": False}
    assert payment_status("REF_1") == PAID
    assert order_count("REF_1") == 1


def test_webhook_charge_failed(client, db):
    make_payment(db, "REF_1")
    body, headers = signed_webhook({"event": "charge.failed", "data": {"reference": "REF_1"}})

    response = client.post("/payments/webhook", content=body, headers=headers)

    assert response.status_code == 200
    assert payment_status("REF_1") == "failed"


def test_webhook_unknown_reference(client):
    body, headers = signed_webhook({"event": "charge.success", "data": {"reference": "REF_NOPE"}})

    response = client.post("/payments/webhook", content=body, headers=headers)

    assert response.status_code == 404


def test_webhook_ignores_other_events(client):
    body, headers = signed_webhook({"event": "transfer.success", "data": {"reference": "TRF_1"}})

    response = client.post("/payments/webhook", content=body, headers=headers)

    assert response.status_code == 200
    assert response.json()["ignored"] is True


def test_webhook_malformed_payload(client):
    body, headers = signed_webhook({"event": "charge.success"})

    response = client.post("/payments/webhook", content=body, headers=headers)

    assert response.status_code == 400


def test_webhook_redelivery_sends_one_confirmation(client, db, notifier):
    make_payment(db, "REF_1")
    body, headers = signed_webhook({"event": "charge.success", "data": {"reference": "REF_1", "amount": 200000}})

    client.post("/payments/webhook", content=body, headers=headers)
    client.post("/payments/webhook", content=body, headers=headers)

    assert [reference for reference, _ in notifier.sent] == ["REF_1"]


def test_webhook_amount_mismatch_is_flagged_for_admin(client, db):
    make_payment(db, "REF_1")
    body, headers = signed_webhook({"event": "charge.success", "data": {"reference": "REF_1", "amount": 100}})

    response = client.post("/payments/webhook", content=body, headers=headers)

    assert response.status_code == 500
    assert payment_status("REF_1") == INITIALIZED
    repair = client.post("/admin/orders/repair", headers=auth_headers("admin-1", role="admin"))
    assert repair.json() == {"repaired": [], "failed": [], "flagged": ["REF_1"]}


def test_webhook_routed_by_signature_header(client, db, gateway):
    # Configured gateway is paystack; this record and its webhook are Monnify's
    monnify = MonnifyGateway("MK_TEST", "monnify_secret", "CONTRACT1")
    fastapi_app.dependency_overrides[get_gateways] = lambda: (
        lambda name=None: monnify if name == "monnify" else gateway
    )
    make_payment(db, "REF_M", gateway="monnify")
    body = json.dumps({
        "eventType": "SUCCESSFUL_TRANSACTION",
        "eventData": {"paymentReference": "REF_M", "paymentStatus": "PAID", "amountPaid": 2000},
    }).encode("utf-8")

    response = client.post(
        "/payments/webhook",
        content=body,
        headers={"monnify-signature": hmac_sha512_hex("monnify_secret", body), "Content-Type": "application/json"},
    )

    assert response.status_code == 200
    assert payment_status("REF_M") == PAID
    assert order_count("REF_M") == 1


def test_monnify_webhook_signed_with_wrong_secret_is_rejected(client, db, gateway):
    monnify = MonnifyGateway("MK_TEST", "monnify_secret", "CONTRACT1")
    fastapi_app.dependency_overrides[get_gateways] = lambda: (
        lambda name=None: monnify if name == "monnify" else gateway
    )
    make_payment(db, "REF_M", gateway="monnify")
    body = json.dumps({"eventType": "SUCCESSFUL_TRANSACTION", "eventData": {"paymentReference": "REF_M"}}).encode()

    response = client.post(
        "/payments/webhook",
        content=body,
        headers={"monnify-signature": hmac_sha512_hex("sk_test_secret", body)},
    )

    assert response.status_code == 401
    assert payment_status("REF_M") == INITIALIZED


def test_webhook_work_runs_in_threadpool(client, db, mocker):
    threadpool = mocker.patch("storefront.routes.run_in_threadpool", wraps=run_in_threadpool)
    make_payment(db, "REF_1")
    body, headers = signed_webhook({"event": "charge.success", "data": {"reference": "REF_1"}})

    response = client.post("/payments/webhook", content=body, headers=headers)

    assert response.status_code == 200
    threadpool.assert_called_once()
    assert threadpool.call_args.args[0] is _handle_webhook
    assert payment_status("REF_1") == PAID


# --- orders ---

def test_list_and_get_orders(client, db):
    make_payment(db, "REF_1", user_id="user-1")
    body, headers = signed_webhook({"event": "charge.success", "data": {"reference": "REF_1"}})
    client.post("/payments/webhook", content=body, headers=headers)

    listed = client.get("/orders", headers=auth_headers("user-1"))
    assert listed.status_code == 200
    orders = listed.json()
    assert len(orders) == 1
    order = orders[0]
    assert order["payment_reference"] == "REF_1"
    assert Decimal(order["amount"]) == Decimal("2000")
    assert Decimal(order["items"][0]["line_total"]) == Decimal("2000")

    fetched = client.get(f"/orders/{order['id']}", headers=auth_headers("user-1"))
    assert fetched.status_code == 200
    assert fetched.json()["id"] == order["id"]

    assert client.get(f"/orders/{order['id']}", headers=auth_headers("user-2")).status_code == 404
    assert client.get("/orders", headers=auth_headers("user-2")).json() == []


# --- admin ---

def test_repair_requires_admin(client):
    response = client.post("/admin/orders/repair", headers=auth_headers("user-1"))

    assert response.status_code == 403


def test_repair_creates_missing_order(client, db):
    make_payment(db, "REF_1", status=PAID)

    response = client.post("/admin/orders/repair", headers=auth_headers("admin-1", role="admin"))

    assert response.status_code == 200
    assert response.json() == {"repaired": ["REF_1"], "failed": [], "flagged": []}
    assert order_count("REF_1") == 1


def test_health(client):
    assert client.get("/health").json() == {"ok": True}
