from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field


class CartLine(BaseModel):
    product_id: str = Field(min_length=1)
    variant_id: Optional[str] = None
    name: Optional[str] = None
    quantity: int = Field(gt=0)
    price: Decimal = Field(ge=0, description="Unit price in major units, e.g. 1000.00")


class InitializePaymentIn(BaseModel):
    amount: Decimal = Field(gt=0, description="Total in major units; must equal the cart total")
    email: str = Field(min_length=3)
    currency: Optional[str] = None
    cart: List[CartLine] = Field(min_length=1)
    meta: Optional[dict] = None


class InitializePaymentOut(BaseModel):
    authorization_url: str
    reference: str
    access_code: Optional[str] = None


class VerifyPaymentOut(BaseModel):
    paid: bool
    status: str
    reference: str
    order_id: Optional[int] = None


class OrderItemOut(BaseModel):
    product_id: str
    variant_id: Optional[str] = None
    quantity: int
    unit_price: Decimal
    line_total: Decimal


class OrderOut(BaseModel):
    id: int
    payment_reference: str
    amount: Decimal
    currency: str
    status: str
    created_at: datetime
    items: List[OrderItemOut]


class RepairOut(BaseModel):
    repaired: List[str]
    failed: List[str]
    flagged: List[str] = []   # gateway amount disagreed; needs a person
