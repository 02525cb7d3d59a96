"""
Payment collaborator routes

Called by the payment integration once a gateway result is verified.
Gateway signature checks and charge capture live in that integration.
"""

from typing import Optional

from fastapi import APIRouter, Depends

from marketplace.api.deps import get_order_service
from marketplace.schemas.order import ReleaseResponse
from marketplace.schemas.payment import PaymentConfirm, PaymentConfirmResponse, PaymentReject
from marketplace.services.order_service import OrderService

router = APIRouter()


@router.post("/orders/{order_id}/confirm", response_model=PaymentConfirmResponse)
async def confirm_payment(
    order_id: int,
    payload: PaymentConfirm,
    service: OrderService = Depends(get_order_service),
):
    """
    Attach a payment and mark the order PAID.

    409 ORDER_CONFLICT if the order already resolved (e.g. expired before the
    payment landed); the caller should refund. Replaying the same
    payment_reference returns status "already_processed".
    """
    result = await service.confirm_payment(
        order_id, payload.payment_reference, payload.payment_method
    )
    return PaymentConfirmResponse(
        status="already_processed" if result.already_processed else "paid",
        order=result.order,
    )


@router.post("/orders/{order_id}/reject", response_model=ReleaseResponse)
async def reject_payment(
    order_id: int,
    payload: Optional[PaymentReject] = None,
    service: OrderService = Depends(get_order_service),
):
    """Gateway rejected or cancelled the payment: release the reservation."""
    payload = payload or PaymentReject()
    result = await service.reject_payment(
        order_id, payload.payment_reference, payload.payment_method
    )
    return ReleaseResponse(order=result.order, units_restored=result.units_restored)
