import json
import secrets
import time
from typing import List

import structlog
from fastapi import APIRouter, Depends, Query, Request
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from storefront.auth import require_admin, verify_token
from storefront.config import Settings, get_settings
from storefront.database import get_db
from storefront.errors import NotFound, Unauthorized, ValidationError
from storefront.gateway import build_gateway, resolve_webhook_gateway, to_major_units, to_minor_units
from storefront.models import INITIALIZED, PAID, Order, PaymentRecord
from storefront.notifications import OrderNotifier
from storefront.orders import find_flagged_payments, repair_missing_orders
from storefront.reconciliation import reconcile
from storefront.schemas import (
    InitializePaymentIn,
    InitializePaymentOut,
    OrderItemOut,
    OrderOut,
    RepairOut,
    VerifyPaymentOut,
)

router = APIRouter()

logger = structlog.get_logger(component="routes")


def generate_reference() -> str:
    return f"REF_{int(time.time() * 1000)}_{secrets.token_hex(8)}"


def get_gateways(settings: Settings = Depends(get_settings)):
    """Yield a lookup ``gateway_for(name=None)``; clients are closed after the request."""
    built = {}

    def gateway_for(name=None):
        name = name or settings.payment_gateway
        if name not in built:
            built[name] = build_gateway(name, settings)
        return built[name]

    try:
        yield gateway_for
    finally:
        for gateway in built.values():
            gateway.close()


def get_notifier(settings: Settings = Depends(get_settings)) -> OrderNotifier:
    return OrderNotifier(settings)


def order_to_out(order: Order) -> OrderOut:
    return OrderOut(
        id=order.id,
        payment_reference=order.payment_reference,
        amount=to_major_units(order.amount_minor_units),
        currency=order.currency,
        status=order.status,
        created_at=order.created_at,
        items=[
            OrderItemOut(
                product_id=i.product_id,
                variant_id=i.variant_id,
                quantity=i.quantity,
                unit_price=to_major_units(i.unit_price_minor),
                line_total=to_major_units(i.line_total_minor),
            )
            for i in order.items
        ],
    )


@router.post("/payments/initialize", response_model=InitializePaymentOut)
def initialize_payment(
    request: InitializePaymentIn,
    claims: dict = Depends(verify_token),
    db: Session = Depends(get_db),
    gateways=Depends(get_gateways),
    settings: Settings = Depends(get_settings),
):
    user_id = str(claims["sub"])
    currency = (request.currency or settings.default_currency).upper()
    amount_minor = to_minor_units(request.amount)

    snapshot = []
    for line in request.cart:
        snapshot.append({
            "product_id": line.product_id,
            "variant_id": line.variant_id,
            "name": line.name,
            "quantity": line.quantity,
            "unit_price_minor": to_minor_units(line.price),
        })
    cart_total = sum(line["unit_price_minor"] * line["quantity"] for line in snapshot)
    if cart_total != amount_minor:
        raise ValidationError(
            f"amount {request.amount} does not match cart total {to_major_units(cart_total)}"
        )

    reference = generate_reference()
    gateway = gateways()
    log = logger.bind(reference=reference, user_id=user_id, gateway=gateway.name)
    log.info("payment_initialize_requested", amount=amount_minor, currency=currency, cart_items=len(snapshot))

    # Remote transaction first: a provider failure leaves no local row behind
    result = gateway.initialize(
        email=request.email,
        amount_major=request.amount,
        currency=currency,
        reference=reference,
        callback_url=settings.callback_url,
        metadata={"user_id": user_id, **(request.meta or {})},
    )

    payment = PaymentRecord(
        reference=reference,
        user_id=user_id,
        email=request.email,
        status=INITIALIZED,
        amount_minor_units=amount_minor,
        currency=currency,
        cart_snapshot=snapshot,
        meta=request.meta,
        gateway=gateway.name,
        provider_reference=result.provider_reference or result.access_code,
    )
    db.add(payment)
    db.commit()
    log.info("payment_initialized")

    return InitializePaymentOut(
        authorization_url=result.checkout_url,
        reference=reference,
        access_code=result.access_code,
    )


@router.get("/payments/verify", response_model=VerifyPaymentOut)
def verify_payment(
    reference: str = Query(None),
    claims: dict = Depends(verify_token),
    db: Session = Depends(get_db),
    gateways=Depends(get_gateways),
    notifier: OrderNotifier = Depends(get_notifier),
):
    if not reference:
        raise ValidationError("reference is required")

    user_id = str(claims["sub"])
    payment = (
        db.query(PaymentRecord)
        .filter(PaymentRecord.reference == reference, PaymentRecord.user_id == user_id)
        .first()
    )
    if not payment:
        raise NotFound("Payment not found or access denied", reference)

    # Already settled: no need to ask the gateway again
    if payment.status == PAID:
        return VerifyPaymentOut(
            paid=True,
            status=PAID,
            reference=reference,
            order_id=payment.order.id if payment.order else None,
        )

    verification = gateways(payment.gateway).verify(reference)
    logger.info(
        "payment_verified_with_gateway",
        reference=reference,
        provider_status=verification.provider_status,
        paid_amount=verification.paid_amount_minor,
    )

    result = reconcile(
        db,
        reference,
        verification.observed_status,
        verification.paid_amount_minor if verification.succeeded else None,
        notifier=notifier,
    )
    return VerifyPaymentOut(
        paid=result.paid,
        status=result.status,
        reference=reference,
        order_id=result.order.id if result.order else None,
    )


def _handle_webhook(raw: bytes, headers, db: Session, gateways, notifier) -> dict:
    name = resolve_webhook_gateway(headers)
    if name is None:
        logger.warning("webhook_signature_missing")
        raise Unauthorized("Missing signature")
    gateway = gateways(name)

    if not gateway.validate_webhook_signature(raw, headers.get(gateway.signature_header)):
        logger.warning("webhook_signature_invalid", provider=gateway.name)
        raise Unauthorized("Invalid signature")

    try:
        payload = json.loads(raw)
        if not isinstance(payload, dict):
            raise ValueError("payload is not an object")
        event = gateway.parse_webhook(payload)
    except ValueError as e:
        logger.warning("webhook_invalid_payload", provider=gateway.name, error=str(e))
        raise ValidationError("Invalid payload")

    if event is None:
        logger.info("webhook_ignored", provider=gateway.name, event_type=payload.get("event") or payload.get("eventType"))
        return {"ok": True, "ignored": True}

    logger.info(
        "webhook_received",
        provider=gateway.name,
        event_type=event.event_type,
        reference=event.reference,
        observed_status=event.observed_status,
    )
    result = reconcile(db, event.reference, event.observed_status, event.paid_amount_minor, notifier=notifier)
    return {"ok": True, "already_processed": result.already_processed}


@router.post("/payments/webhook")
async def payment_webhook(
    request: Request,
    db: Session = Depends(get_db),
    gateways=Depends(get_gateways),
    notifier: OrderNotifier = Depends(get_notifier),
):
    # Signature is over the exact bytes, so read them before any parsing
    raw = await request.body()
    # Database and SMTP work is blocking; keep it off the event loop
    return await run_in_threadpool(_handle_webhook, raw, request.headers, db, gateways, notifier)


@router.get("/orders", response_model=List[OrderOut])
def list_my_orders(claims: dict = Depends(verify_token), db: Session = Depends(get_db)):
    orders = (
        db.query(Order)
        .filter(Order.user_id == str(claims["sub"]))
        .order_by(Order.created_at.desc(), Order.id.desc())
        .all()
    )
    return [order_to_out(o) for o in orders]


@router.get("/orders/{order_id}", response_model=OrderOut)
def get_order(order_id: int, claims: dict = Depends(verify_token), db: Session = Depends(get_db)):
    order = (
        db.query(Order)
        .filter(Order.id == order_id, Order.user_id == str(claims["sub"]))
        .first()
    )
    if not order:
        raise NotFound("Order not found")
    return order_to_out(order)


@router.post("/admin/orders/repair", response_model=RepairOut)
def repair_orders(
    claims: dict = Depends(require_admin),
    db: Session = Depends(get_db),
    notifier: OrderNotifier = Depends(get_notifier),
):
    repaired, failed = repair_missing_orders(db, notifier=notifier)
    flagged = [p.reference for p in find_flagged_payments(db)]
    return RepairOut(repaired=repaired, failed=failed, flagged=flagged)
