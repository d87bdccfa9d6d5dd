from typing import List, Optional, Tuple

import structlog
from sqlalchemy import exc as sa_exc
from sqlalchemy.orm import Session

from storefront.errors import IntegrityError, StorefrontError
from storefront.models import PAID, Order, OrderItem, PaymentRecord

logger = structlog.get_logger(component="orders")


def get_order_for_reference(db: Session, reference: str) -> Optional[Order]:
    return db.query(Order).filter(Order.payment_reference == reference).first()


def build_line_items(reference: str, cart_snapshot) -> List[OrderItem]:
    """Turn a cart snapshot into order items; prices come from the snapshot only."""
    if not cart_snapshot:
        raise IntegrityError("Payment has an empty cart snapshot", reference)

    items = []
    for line in cart_snapshot:
        try:
            quantity = int(line["quantity"])
            unit_price = int(line["unit_price_minor"])
            product_id = str(line["product_id"])
        except (KeyError, TypeError, ValueError) as e:
            raise IntegrityError(f"Malformed cart line: {line!r}", reference) from e
        if quantity <= 0 or unit_price < 0:
            raise IntegrityError(f"Invalid cart line: {line!r}", reference)

        variant_id = line.get("variant_id")
        items.append(
            OrderItem(
                product_id=product_id,
                variant_id=str(variant_id) if variant_id is not None else None,
                quantity=quantity,
                unit_price_minor=unit_price,
                line_total_minor=unit_price * quantity,
            )
        )
    return items


def materialize(db: Session, payment: PaymentRecord) -> Order:
    """Create the order for a paid payment, or return the one that exists.

    The order total must equal both the sum of its line totals and the
    payment amount; anything else raises IntegrityError and writes nothing.
    """
    log = logger.bind(reference=payment.reference)

    if payment.status != PAID:
        raise IntegrityError(f"Cannot create an order for a {payment.status} payment", payment.reference)

    existing = get_order_for_reference(db, payment.reference)
    if existing:
        log.info("order_already_exists", order_id=existing.id)
        return existing

    items = build_line_items(payment.reference, payment.cart_snapshot)
    total = sum(i.line_total_minor for i in items)
    if total != payment.amount_minor_units:
        log.error("amount_mismatch", cart_total=total, payment_amount=payment.amount_minor_units)
        raise IntegrityError(
            f"Cart total {total} does not match payment amount {payment.amount_minor_units}",
            payment.reference,
        )

    order = Order(
        payment_reference=payment.reference,
        user_id=payment.user_id,
        amount_minor_units=total,
        currency=payment.currency,
        status="processing",
        items=items,
    )
    db.add(order)
    try:
        db.commit()
    except sa_exc.IntegrityError:
        # Unique payment_reference: someone else wrote it first
        db.rollback()
        existing = get_order_for_reference(db, payment.reference)
        if existing:
            log.info("order_created_concurrently", order_id=existing.id)
            return existing
        raise

    db.refresh(order)
    log.info("order_created", order_id=order.id, amount=order.amount_minor_units, items=len(items))
    return order


def find_paid_without_order(db: Session) -> List[PaymentRecord]:
    return (
        db.query(PaymentRecord)
        .outerjoin(Order, Order.payment_reference == PaymentRecord.reference)
        .filter(PaymentRecord.status == PAID, Order.id.is_(None))
        .order_by(PaymentRecord.paid_at)
        .all()
    )


def find_flagged_payments(db: Session) -> List[PaymentRecord]:
    """Unpaid payments whose gateway-reported amount did not match ours."""
    return (
        db.query(PaymentRecord)
        .filter(PaymentRecord.needs_review.is_(True), PaymentRecord.status != PAID)
        .order_by(PaymentRecord.updated_at)
        .all()
    )


def repair_missing_orders(db: Session, notifier=None) -> Tuple[List[str], List[str]]:
    """Materialize orders for paid payments that have none.

    Returns (repaired, failed) lists of references. A failure on one payment
    does not stop the others.
    """
    repaired, failed = [], []
    for payment in find_paid_without_order(db):
        reference = payment.reference
        try:
            order = materialize(db, payment)
        except (StorefrontError, sa_exc.SQLAlchemyError) as e:
            db.rollback()
            logger.error("order_repair_failed", reference=reference, error=str(e))
            failed.append(reference)
            continue
        repaired.append(reference)
        if notifier is not None:
            notifier.order_paid(payment, order)

    logger.info("order_repair_finished", repaired=len(repaired), failed=len(failed))
    return repaired, failed
