"""
Inventory ledger schemas
"""
from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field


class InventoryResponse(BaseModel):
    item_id: str
    available: int
    updated_at: Optional[datetime]

    class Config:
        from_attributes = True


class RestockRequest(BaseModel):
    quantity: int = Field(gt=0)
    reason: Optional[str] = Field(default=None, max_length=255)
