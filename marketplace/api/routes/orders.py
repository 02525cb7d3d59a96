"""
Order routes

Checkout (create), cancellation, and the read surface used by admin and
reporting collaborators. Authentication is handled upstream; buyer_id is
supplied by the checkout collaborator.
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, status

from marketplace.api.deps import get_order_service
from marketplace.core.config import settings
from marketplace.core.rate_limit import limiter
from marketplace.models import CancellationReason, OrderStatus
from marketplace.schemas.order import (
    OrderCancel,
    OrderCreate,
    OrderList,
    OrderResponse,
    ReleaseResponse,
    ReservationStats,
)
from marketplace.services.order_service import OrderLine, OrderService

router = APIRouter()


@router.post("", response_model=OrderResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(settings.RATE_LIMIT_CHECKOUT)
async def create_order(
    request: Request,
    order_data: OrderCreate,
    service: OrderService = Depends(get_order_service),
):
    """
    Reserve stock for every line and create a PENDING order.

    409 INSUFFICIENT_STOCK if any line cannot be reserved; nothing is held.
    """
    lines = [
        OrderLine(
            item_id=line.item_id,
            quantity=line.quantity,
            item_name=line.item_name,
            unit_price=line.unit_price,
        )
        for line in order_data.items
    ]
    return await service.create_order(order_data.buyer_id, lines)


@router.get("", response_model=OrderList)
async def list_orders(
    status_filter: Optional[OrderStatus] = Query(None, alias="status"),
    buyer_id: Optional[str] = None,
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=100),
    service: OrderService = Depends(get_order_service),
):
    """List orders, newest first"""
    orders, total = await service.list_orders(
        status=status_filter, buyer_id=buyer_id, page=page, per_page=per_page
    )
    return OrderList(orders=orders, total=total, page=page, per_page=per_page)


@router.get("/reservations/stats", response_model=ReservationStats)
async def reservation_stats(service: OrderService = Depends(get_order_service)):
    """Outstanding reservations and orders awaiting the sweeper"""
    return await service.get_reservation_stats()


@router.get("/{order_id}", response_model=OrderResponse)
async def get_order(order_id: int, service: OrderService = Depends(get_order_service)):
    """Get single order"""
    return await service.get_order(order_id)


@router.post("/{order_id}/cancel", response_model=ReleaseResponse)
async def cancel_order(
    order_id: int,
    payload: Optional[OrderCancel] = None,
    service: OrderService = Depends(get_order_service),
):
    """
    Cancel a PENDING order and restore its stock.

    Buyer cancellations with a buyer_id only match that buyer's orders.
    409 ORDER_CONFLICT if the order was already paid, cancelled, or expired.
    """
    payload = payload or OrderCancel()
    buyer_id = payload.buyer_id if payload.reason == CancellationReason.BUYER else None
    result = await service.cancel_order(order_id, reason=payload.reason, buyer_id=buyer_id)
    return ReleaseResponse(order=result.order, units_restored=result.units_restored)
