from marketplace.schemas.order import (
    OrderLineCreate, OrderCreate, OrderCancel, OrderItemResponse, OrderResponse,
    OrderList, ReleaseResponse, ReservationStats,
)
from marketplace.schemas.payment import PaymentConfirm, PaymentConfirmResponse
from marketplace.schemas.inventory import InventoryResponse, RestockRequest
