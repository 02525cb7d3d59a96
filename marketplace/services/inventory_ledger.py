"""
Inventory Ledger

Atomic stock primitives. Every mutation is a single guarded statement
executed inside the caller's transaction, never a read-then-write:

- reserve: decrements only if available >= qty, else InsufficientStock
- release: increments unconditionally
- restock: upsert, so concurrent first receipts of an item both land

Which releases happen at all is decided by the order's status transition
(services.order_service), not here.
"""
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.core.exceptions import InsufficientStock, LedgerIntegrityError
from marketplace.models import InventoryItem, InventoryMovement, MovementType

logger = logging.getLogger(__name__)


def _insert_for(db: AsyncSession):
    """INSERT construct with ON CONFLICT support for the session's dialect."""
    if db.get_bind().dialect.name == "postgresql":
        return postgresql_insert
    return sqlite_insert


class InventoryLedger:
    """Per-item stock counter with atomic increment/decrement."""

    @staticmethod
    async def get_available(db: AsyncSession, item_id: str) -> Optional[int]:
        """Current available count, or None if the item has no ledger entry."""
        result = await db.execute(
            select(InventoryItem.available).where(InventoryItem.item_id == item_id)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def get_entry(db: AsyncSession, item_id: str) -> Optional[InventoryItem]:
        return await db.get(InventoryItem, item_id)

    @staticmethod
    async def reserve(
        db: AsyncSession,
        item_id: str,
        quantity: int,
        now: datetime,
        order_id: Optional[int] = None,
    ) -> int:
        """
        Decrement stock for item_id by quantity if enough is available.

        The availability check and the decrement are one statement, so two
        concurrent reservations of the last unit cannot both succeed.

        Returns:
            Stock remaining after the reservation

        Raises:
            InsufficientStock: nothing was changed
        """
        if quantity <= 0:
            raise ValueError("quantity must be positive")

        result = await db.execute(
            update(InventoryItem)
            .where(
                InventoryItem.item_id == item_id,
                InventoryItem.available >= quantity,
            )
            .values(available=InventoryItem.available - quantity, updated_at=now)
            .execution_options(synchronize_session=False)
        )

        if result.rowcount != 1:
            available = await InventoryLedger.get_available(db, item_id)
            if available is None:
                raise InsufficientStock(
                    f"Item {item_id} is not stocked",
                    item_id=item_id,
                    requested_qty=quantity,
                    available_qty=0,
                )
            raise InsufficientStock(
                f"Insufficient stock for {item_id} "
                f"(requested: {quantity}, available: {available})",
                item_id=item_id,
                requested_qty=quantity,
                available_qty=available,
            )

        new_stock = await InventoryLedger.get_available(db, item_id)
        db.add(InventoryMovement(
            item_id=item_id,
            movement_type=MovementType.RESERVED,
            quantity=-quantity,
            previous_stock=new_stock + quantity,
            new_stock=new_stock,
            order_id=order_id,
            created_at=now,
        ))
        return new_stock

    @staticmethod
    async def release(
        db: AsyncSession,
        item_id: str,
        quantity: int,
        now: datetime,
        order_id: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> int:
        """
        Increment stock for item_id by quantity.

        Raises:
            LedgerIntegrityError: the item has no ledger entry
        """
        if quantity <= 0:
            raise ValueError("quantity must be positive")

        result = await db.execute(
            update(InventoryItem)
            .where(InventoryItem.item_id == item_id)
            .values(available=InventoryItem.available + quantity, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise LedgerIntegrityError(
                f"Cannot release {quantity} units: no ledger entry for {item_id}",
                details={"item_id": item_id, "quantity": quantity, "order_id": order_id},
            )

        new_stock = await InventoryLedger.get_available(db, item_id)
        db.add(InventoryMovement(
            item_id=item_id,
            movement_type=MovementType.RELEASED,
            quantity=quantity,
            previous_stock=new_stock - quantity,
            new_stock=new_stock,
            order_id=order_id,
            reason=reason,
            created_at=now,
        ))
        return new_stock

    @staticmethod
    async def restock(
        db: AsyncSession,
        item_id: str,
        quantity: int,
        now: datetime,
        reason: Optional[str] = None,
    ) -> int:
        """Add received units, creating the ledger entry on first receipt."""
        if quantity <= 0:
            raise ValueError("quantity must be positive")

        insert = _insert_for(db)
        await db.execute(
            insert(InventoryItem)
            .values(item_id=item_id, available=quantity, created_at=now, updated_at=now)
            .on_conflict_do_update(
                index_elements=[InventoryItem.item_id],
                set_={"available": InventoryItem.available + quantity, "updated_at": now},
            )
        )
        new_stock = await InventoryLedger.get_available(db, item_id)

        db.add(InventoryMovement(
            item_id=item_id,
            movement_type=MovementType.RESTOCKED,
            quantity=quantity,
            previous_stock=new_stock - quantity,
            new_stock=new_stock,
            reason=reason,
            created_at=now,
        ))
        logger.info("Restocked %s: +%d (now %d)", item_id, quantity, new_stock)
        return new_stock


# Singleton instance
inventory_ledger = InventoryLedger()
