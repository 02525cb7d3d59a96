# Services layer for business logic
from marketplace.services.inventory_ledger import InventoryLedger, inventory_ledger
from marketplace.services.order_service import (
    OrderLine,
    OrderService,
    PaymentResult,
    ReleaseResult,
    order_service,
)
from marketplace.services.order_expiration import sweep_expired_orders

__all__ = [
    "InventoryLedger",
    "inventory_ledger",
    "OrderLine",
    "OrderService",
    "PaymentResult",
    "ReleaseResult",
    "order_service",
    "sweep_expired_orders",
]
