"""
Payment collaborator schemas
"""
from typing import Optional
from pydantic import BaseModel, Field

from marketplace.schemas.order import OrderResponse


class PaymentConfirm(BaseModel):
    payment_reference: str = Field(min_length=1, max_length=255)
    payment_method: Optional[str] = Field(default=None, max_length=50)


class PaymentConfirmResponse(BaseModel):
    status: str  # "paid" or "already_processed"
    order: OrderResponse


class PaymentReject(BaseModel):
    payment_reference: Optional[str] = Field(default=None, max_length=255)
    payment_method: Optional[str] = Field(default=None, max_length=50)
