"""
Inventory ledger routes

Read access for admin/reporting and restock for receiving. Reservations
and releases only happen through order transitions.
"""
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.core.database import get_db
from marketplace.core.utils import utcnow
from marketplace.schemas.inventory import InventoryResponse, RestockRequest
from marketplace.services.inventory_ledger import inventory_ledger

router = APIRouter()


@router.get("/{item_id}", response_model=InventoryResponse)
async def get_inventory(item_id: str, db: AsyncSession = Depends(get_db)):
    entry = await inventory_ledger.get_entry(db, item_id)
    if not entry:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Item not stocked"
        )
    return entry


@router.post("/{item_id}/restock", response_model=InventoryResponse)
async def restock_item(
    item_id: str,
    payload: RestockRequest,
    db: AsyncSession = Depends(get_db)
):
    """Add received units; creates the ledger entry on first receipt."""
    await inventory_ledger.restock(db, item_id, payload.quantity, utcnow(), reason=payload.reason)
    await db.flush()
    entry = await inventory_ledger.get_entry(db, item_id)
    await db.refresh(entry)
    return entry
