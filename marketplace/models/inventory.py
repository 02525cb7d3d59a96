"""
Inventory ledger models

InventoryItem is the single source of truth for units available to reserve.
Its counter is only changed through the atomic primitives in
services.inventory_ledger; every change writes an InventoryMovement row in
the same transaction.
"""
from sqlalchemy import (
    Column, Integer, String, ForeignKey, CheckConstraint, Index
)
from sqlalchemy.sql import func

from marketplace.core.database import Base, UTCDateTime


class MovementType:
    RESERVED = "reserved"
    RELEASED = "released"
    RESTOCKED = "restocked"


class InventoryItem(Base):
    """Ledger entry: available stock for one sellable item."""
    __tablename__ = "inventory_items"

    # Sellable item id from the catalog (artist product, ticket tier, service)
    item_id = Column(String(64), primary_key=True)
    available = Column(Integer, nullable=False, default=0)

    created_at = Column(UTCDateTime, nullable=False, server_default=func.now())
    updated_at = Column(UTCDateTime, nullable=True)

    __table_args__ = (
        CheckConstraint("available >= 0", name="ck_inventory_available_non_negative"),
    )

    def __repr__(self):
        return f"<InventoryItem {self.item_id}: {self.available} available>"


class InventoryMovement(Base):
    """Audit trail for ledger changes"""
    __tablename__ = "inventory_movements"

    id = Column(Integer, primary_key=True, index=True)

    item_id = Column(
        String(64),
        ForeignKey("inventory_items.item_id"),
        nullable=False,
        index=True
    )

    movement_type = Column(String(20), nullable=False, index=True)
    quantity = Column(Integer, nullable=False)  # positive for in, negative for out
    previous_stock = Column(Integer, nullable=False)
    new_stock = Column(Integer, nullable=False)

    # Source order for reserve/release movements
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=True, index=True)
    reason = Column(String(255), nullable=True)

    created_at = Column(UTCDateTime, nullable=False, index=True)

    __table_args__ = (
        CheckConstraint(
            "movement_type IN ('reserved', 'released', 'restocked')",
            name="chk_inventory_movement_type"
        ),
        Index("ix_inventory_movements_item_created", item_id, created_at.desc()),
    )

    def __repr__(self):
        return f"<InventoryMovement {self.id}: {self.movement_type} {self.quantity:+d} on {self.item_id}>"
