"""
Order schemas
"""
from datetime import datetime
from decimal import Decimal
from typing import Optional, List
from pydantic import BaseModel, Field


class OrderLineCreate(BaseModel):
    item_id: str = Field(min_length=1, max_length=64)
    quantity: int = Field(gt=0)
    item_name: Optional[str] = None
    unit_price: Optional[Decimal] = Field(default=None, ge=0)


class OrderCreate(BaseModel):
    buyer_id: str = Field(min_length=1, max_length=64)
    items: List[OrderLineCreate] = Field(min_length=1)


class OrderCancel(BaseModel):
    buyer_id: Optional[str] = None
    reason: str = Field(default="buyer", pattern="^(buyer|admin)$")


class OrderItemResponse(BaseModel):
    id: int
    position: int
    item_id: str
    quantity: int
    item_name: Optional[str]
    unit_price: Optional[Decimal]

    class Config:
        from_attributes = True


class OrderResponse(BaseModel):
    id: int
    order_number: str
    buyer_id: str
    status: str
    created_at: datetime
    expires_at: datetime
    resolved_at: Optional[datetime]
    payment_reference: Optional[str]
    payment_method: Optional[str]
    paid_at: Optional[datetime]
    cancellation_reason: Optional[str]
    rejected_payment_reference: Optional[str] = None
    rejected_payment_method: Optional[str] = None
    items: List[OrderItemResponse]

    class Config:
        from_attributes = True


class OrderList(BaseModel):
    orders: List[OrderResponse]
    total: int
    page: int
    per_page: int


class ReleaseResponse(BaseModel):
    order: OrderResponse
    units_restored: int


class ReservationStats(BaseModel):
    pending_orders: int
    awaiting_sweep: int
    expiring_soon: int
    units_held: int
    as_of: datetime
