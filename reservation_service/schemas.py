import enum
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Union

from pydantic import BaseModel, Field

from reservation_service.models import OrderStatus


class Outcome(str, enum.Enum):
    OK = "OK"
    OUT_OF_STOCK = "OUT_OF_STOCK"
    CART_EXPIRED_OR_MISSING = "CART_EXPIRED_OR_MISSING"
    ALREADY_SETTLED = "ALREADY_SETTLED"
    TRANSIENT_CONTENTION = "TRANSIENT_CONTENTION"


class CartLine(BaseModel):
    sku_id: str
    quantity: int

    class Config:
        from_attributes = True


class CartView(BaseModel):
    cart_id: str
    owner_id: Optional[str] = None
    lines: List[CartLine]
    created_at: datetime
    expires_at: datetime
    seconds_to_expiry: int


class OrderItemRead(BaseModel):
    sku_id: str
    sku_name: str
    quantity: int
    unit_price: Decimal

    class Config:
        from_attributes = True


class OrderRead(BaseModel):
    id: str
    payment_reference: str
    cart_id: str
    owner_id: Optional[str] = None
    status: OrderStatus
    total_amount: Decimal
    items: List[OrderItemRead]
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class Result(BaseModel):
    """Tagged outcome of a public cart or checkout operation."""

    outcome: Outcome
    data: Optional[Union[CartView, OrderRead]] = None
    detail: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.outcome is Outcome.OK

    @classmethod
    def success(cls, data) -> "Result":
        return cls(outcome=Outcome.OK, data=data)

    @classmethod
    def failure(cls, outcome: Outcome, detail: Optional[str] = None) -> "Result":
        return cls(outcome=outcome, detail=detail)


class ReclaimReport(BaseModel):
    reclaimed_carts: List[str] = Field(default_factory=list)
    released_units: Dict[str, int] = Field(default_factory=dict)
    contended: bool = False


class AddItemRequest(BaseModel):
    sku_id: str = Field(..., example="tee-black-m")
    quantity: int = Field(..., gt=0, example=2)
    owner_id: Optional[str] = Field(None, example="session-123")


class UpdateQuantityRequest(BaseModel):
    quantity: int = Field(..., ge=0, example=1)


class SettleRequest(BaseModel):
    cart_id: str = Field(..., example="session-123")
    payment_reference: str = Field(..., min_length=1, example="pay_123")


class OrderStatusUpdate(BaseModel):
    status: OrderStatus
