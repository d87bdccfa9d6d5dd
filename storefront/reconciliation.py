"""Payment reconciliation.

Both the webhook and the verify poll end up in ``reconcile``. The status
transition is a guarded UPDATE (``status != 'paid'``) so that, of any number
of concurrent callers for one reference, only the one whose update moves the
row to ``paid`` creates the order.
"""
from dataclasses import dataclass
from typing import Optional

import structlog
from sqlalchemy import exc as sa_exc
from sqlalchemy import update
from sqlalchemy.orm import Session

from storefront.errors import IntegrityError, NotFound, OrderMaterializationError, StorefrontError
from storefront.gateway import SUCCESS
from storefront.models import FAILED, PAID, Order, PaymentRecord, utcnow
from storefront.orders import materialize

logger = structlog.get_logger(component="reconciliation")


@dataclass
class ReconcileResult:
    reference: str
    status: str
    already_processed: bool = False
    order: Optional[Order] = None

    @property
    def paid(self) -> bool:
        return self.status == PAID


def get_payment(db: Session, reference: str) -> Optional[PaymentRecord]:
    return db.query(PaymentRecord).filter(PaymentRecord.reference == reference).first()


def _transition(db: Session, reference: str, new_status: str) -> bool:
    """Move a non-paid record to new_status. True if this call changed the row."""
    now = utcnow()
    values = {"status": new_status, "updated_at": now}
    if new_status == PAID:
        values["paid_at"] = now

    result = db.execute(
        update(PaymentRecord)
        .where(PaymentRecord.reference == reference, PaymentRecord.status != PAID)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def _flag_for_review(db: Session, reference: str, reason: str) -> None:
    """Mark a non-paid record for manual review. Status is left alone."""
    db.execute(
        update(PaymentRecord)
        .where(PaymentRecord.reference == reference, PaymentRecord.status != PAID)
        .values(needs_review=True, review_reason=reason[:255], updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    db.commit()


def reconcile(db: Session, reference: str, observed_status: str,
              paid_amount_minor: Optional[int] = None, notifier=None) -> ReconcileResult:
    """Apply a gateway observation to the record for ``reference``.

    Only the winning caller materializes the order and, when a notifier is
    given, sends the confirmation e-mail. Redeliveries and verify polls after
    that return ``already_processed`` and send nothing.
    """
    log = logger.bind(reference=reference, observed_status=observed_status)

    payment = get_payment(db, reference)
    if payment is None:
        log.warning("reconcile_unknown_reference")
        raise NotFound("Payment not found", reference)

    if payment.status == PAID:
        log.info("reconcile_already_processed")
        return ReconcileResult(reference, PAID, already_processed=True, order=payment.order)

    succeeded = observed_status == SUCCESS
    if succeeded and paid_amount_minor is not None and paid_amount_minor != payment.amount_minor_units:
        reason = f"Gateway reported {paid_amount_minor} paid, expected {payment.amount_minor_units}"
        log.error("amount_mismatch", expected=payment.amount_minor_units, paid=paid_amount_minor)
        _flag_for_review(db, reference, reason)
        raise IntegrityError(reason, reference)

    previous_status = payment.status
    new_status = PAID if succeeded else FAILED
    if not _transition(db, reference, new_status):
        # Another caller got the row to paid between our read and our update
        log.info("reconcile_lost_race")
        db.expire_all()
        payment = get_payment(db, reference)
        return ReconcileResult(reference, PAID, already_processed=True, order=payment.order)

    if new_status == FAILED:
        log.info("payment_failed", previous_status=previous_status)
        return ReconcileResult(reference, FAILED)

    log.info("reconcile_won")
    payment = get_payment(db, reference)
    try:
        order = materialize(db, payment)
    except (StorefrontError, sa_exc.SQLAlchemyError) as e:
        db.rollback()
        log.error("order_materialization_failed", error=str(e))
        raise OrderMaterializationError(
            f"Payment {reference} is paid but its order could not be created: {e}", reference
        ) from e

    if notifier is not None:
        notifier.order_paid(payment, order)
    return ReconcileResult(reference, PAID, order=order)
