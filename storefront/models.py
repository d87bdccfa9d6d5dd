from datetime import datetime, timezone

from sqlalchemy import Column, String, Integer, BigInteger, Boolean, DateTime, JSON, ForeignKey
from sqlalchemy.orm import relationship

from storefront.database import Base

INITIALIZED = "initialized"
PAID = "paid"
FAILED = "failed"


def utcnow():
    return datetime.now(timezone.utc)


class PaymentRecord(Base):
    __tablename__ = "payment_records"

    id = Column(Integer, primary_key=True)
    reference = Column(String(100), unique=True, index=True, nullable=False)   # idempotency key
    user_id = Column(String(64), index=True, nullable=False)
    email = Column(String(255), nullable=False)
    status = Column(String(20), nullable=False, default=INITIALIZED)          # initialized | paid | failed
    amount_minor_units = Column(BigInteger, nullable=False)                   # kobo for NGN
    currency = Column(String(3), nullable=False, default="NGN")
    cart_snapshot = Column(JSON, nullable=False, default=list)
    meta = Column(JSON, nullable=True)
    gateway = Column(String(20), nullable=False)                              # paystack | monnify
    provider_reference = Column(String(100), nullable=True)
    # set when the gateway disagrees with our amount; cleared only by a person
    needs_review = Column(Boolean, nullable=False, default=False, index=True)
    review_reason = Column(String(255), nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    order = relationship("Order", back_populates="payment", uselist=False)


class Order(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True)
    # unique: at most one order per payment
    payment_reference = Column(
        String(100), ForeignKey("payment_records.reference"), unique=True, index=True, nullable=False
    )
    user_id = Column(String(64), index=True, nullable=False)
    amount_minor_units = Column(BigInteger, nullable=False)
    currency = Column(String(3), nullable=False)
    status = Column(String(20), nullable=False, default="processing")        # processing | pending | shipped | fulfilled | cancelled
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    payment = relationship("PaymentRecord", back_populates="order")
    items = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderItem.id",
    )


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True)
    order_id = Column(Integer, ForeignKey("orders.id"), index=True, nullable=False)
    product_id = Column(String(64), nullable=False)
    variant_id = Column(String(64), nullable=True)
    quantity = Column(Integer, nullable=False)
    unit_price_minor = Column(BigInteger, nullable=False)                      # price at purchase time
    line_total_minor = Column(BigInteger, nullable=False)

    order = relationship("Order", back_populates="items")
