from marketplace.models.inventory import InventoryItem, InventoryMovement, MovementType
from marketplace.models.order import (
    Order,
    OrderItem,
    OrderStatus,
    CancellationReason,
    TERMINAL_STATUSES,
    RELEASE_STATUSES,
    can_transition,
)
