"""
Reservation engine tests

Covers order creation (all-or-nothing, concurrent buyers), the release
path (cancel/expire, idempotence, round trip), the payment contract, and
the pay-versus-expire race.
"""
import asyncio
import re
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from marketplace.core.exceptions import (
    InsufficientStock,
    InvalidOrderRequest,
    OrderConflict,
    OrderNotFound,
    TransactionFailure,
)
from marketplace.core.monitoring import metrics
from marketplace.models import (
    CancellationReason,
    InventoryMovement,
    MovementType,
    Order,
    OrderStatus,
)
from marketplace.services.order_service import OrderLine

from tests.conftest import T0, WINDOW


# =============================================================================
# CREATE
# =============================================================================

@pytest.mark.asyncio
async def test_create_order_reserves_stock_and_sets_deadline(service, stock, available):
    await stock("print-01", 5)

    order = await service.create_order(
        "buyer-1",
        [OrderLine("print-01", 2, item_name="Gig poster", unit_price=Decimal("25.00"))],
    )

    assert order.status == OrderStatus.PENDING.value
    assert order.created_at == T0
    assert order.expires_at == T0 + WINDOW
    assert order.payment_reference is None
    assert re.fullmatch(r"ORD-20260301-[0-9A-F]{8}", order.order_number)
    assert [(i.item_id, i.quantity) for i in order.items] == [("print-01", 2)]
    assert order.items[0].unit_price == Decimal("25.00")
    assert await available("print-01") == 3
    assert metrics.get_counter("orders_created_total") == 1


@pytest.mark.asyncio
async def test_create_order_is_all_or_nothing(service, session_factory, stock, available):
    await stock("print-01", 5)
    await stock("ticket-vip", 1)

    with pytest.raises(InsufficientStock) as exc_info:
        await service.create_order(
            "buyer-1",
            [OrderLine("print-01", 2), OrderLine("ticket-vip", 2)],
        )

    assert exc_info.value.item_id == "ticket-vip"
    assert await available("print-01") == 5
    assert await available("ticket-vip") == 1
    async with session_factory() as db:
        assert (await db.execute(select(func.count(Order.id)))).scalar() == 0
    assert metrics.get_counter("checkout_insufficient_stock_total") == 1


@pytest.mark.asyncio
async def test_create_order_sums_repeated_items(service, stock, available):
    await stock("print-01", 3)

    with pytest.raises(InsufficientStock):
        await service.create_order("buyer-1", [OrderLine("print-01", 2), OrderLine("print-01", 2)])
    assert await available("print-01") == 3

    order = await service.create_order("buyer-1", [OrderLine("print-01", 1), OrderLine("print-01", 2)])
    assert len(order.items) == 2
    assert await available("print-01") == 0


@pytest.mark.asyncio
@pytest.mark.parametrize("buyer_id, lines", [
    ("buyer-1", []),
    ("buyer-1", [OrderLine("print-01", 0)]),
    ("buyer-1", [OrderLine("print-01", -1)]),
    ("buyer-1", [OrderLine("", 1)]),
    ("", [OrderLine("print-01", 1)]),
])
async def test_create_order_rejects_malformed_input(service, stock, available, buyer_id, lines):
    await stock("print-01", 5)

    with pytest.raises(InvalidOrderRequest):
        await service.create_order(buyer_id, lines)
    assert await available("print-01") == 5


@pytest.mark.asyncio
async def test_concurrent_checkouts_for_last_unit(service, stock, available):
    await stock("print-01", 1)

    results = await asyncio.gather(
        service.create_order("buyer-1", [OrderLine("print-01", 1)]),
        service.create_order("buyer-2", [OrderLine("print-01", 1)]),
        return_exceptions=True,
    )

    orders = [r for r in results if isinstance(r, Order)]
    failures = [r for r in results if isinstance(r, InsufficientStock)]
    assert len(orders) == 1
    assert orders[0].status == OrderStatus.PENDING.value
    assert len(failures) == 1
    assert await available("print-01") == 0


@pytest.mark.asyncio
async def test_concurrent_checkouts_never_oversell(service, stock, available):
    await stock("ticket-ga", 3)

    results = await asyncio.gather(
        *(service.create_order(f"buyer-{n}", [OrderLine("ticket-ga", 1)]) for n in range(6)),
        return_exceptions=True,
    )

    orders = [r for r in results if isinstance(r, Order)]
    assert len(orders) == 3
    assert all(isinstance(r, (Order, InsufficientStock)) for r in results)
    assert await available("ticket-ga") == 0


@pytest.mark.asyncio
async def test_create_order_retries_transient_store_failure(service, stock, available, monkeypatch):
    await stock("print-01", 2)
    original = service._create_order_once
    calls = []

    async def flaky(buyer_id, lines):
        calls.append(buyer_id)
        if len(calls) == 1:
            raise OperationalError("INSERT INTO orders", {}, Exception("database is locked"))
        return await original(buyer_id, lines)

    monkeypatch.setattr(service, "_create_order_once", flaky)

    order = await service.create_order("buyer-1", [OrderLine("print-01", 1)])

    assert len(calls) == 2
    assert order.status == OrderStatus.PENDING.value
    assert await available("print-01") == 1


@pytest.mark.asyncio
async def test_create_order_gives_up_after_bounded_retries(service, stock, monkeypatch):
    await stock("print-01", 2)

    async def always_down(buyer_id, lines):
        raise OperationalError("INSERT INTO orders", {}, Exception("connection refused"))

    monkeypatch.setattr(service, "_create_order_once", always_down)

    with pytest.raises(TransactionFailure) as exc_info:
        await service.create_order("buyer-1", [OrderLine("print-01", 1)])
    assert exc_info.value.attempts == service.retry_config.max_retries + 1


# =============================================================================
# RELEASE
# =============================================================================

@pytest.mark.asyncio
async def test_cancel_restores_stock(service, stock, available):
    await stock("print-01", 5)
    order = await service.create_order("buyer-1", [OrderLine("print-01", 2)])

    result = await service.cancel_order(order.id)

    assert result.order.status == OrderStatus.CANCELLED.value
    assert result.order.cancellation_reason == CancellationReason.BUYER
    assert result.order.resolved_at == T0
    assert result.units_restored == 2
    assert await available("print-01") == 5


@pytest.mark.asyncio
async def test_release_twice_restores_stock_once(service, session_factory, clock, stock, available):
    await stock("print-01", 5)
    order = await service.create_order("buyer-1", [OrderLine("print-01", 2)])
    clock.advance(minutes=16)

    await service.expire_order(order.id)
    with pytest.raises(OrderConflict) as exc_info:
        await service.expire_order(order.id)
    with pytest.raises(OrderConflict):
        await service.cancel_order(order.id)

    assert exc_info.value.current_status == OrderStatus.EXPIRED.value
    assert await available("print-01") == 5
    async with session_factory() as db:
        released = (await db.execute(
            select(func.count(InventoryMovement.id)).where(
                InventoryMovement.order_id == order.id,
                InventoryMovement.movement_type == MovementType.RELEASED,
            )
        )).scalar()
    assert released == 1


@pytest.mark.asyncio
async def test_expire_round_trip_matches_pre_reservation_levels(service, clock, stock, available):
    await stock("item-a", 4)
    await stock("item-b", 2)
    order = await service.create_order("buyer-1", [OrderLine("item-a", 2), OrderLine("item-b", 1)])
    assert (await available("item-a"), await available("item-b")) == (2, 1)

    clock.advance(minutes=20)
    result = await service.expire_order(order.id)

    assert result.order.status == OrderStatus.EXPIRED.value
    assert result.order.cancellation_reason == CancellationReason.EXPIRED
    assert result.units_restored == 3
    assert result.items_restored == 2
    assert (await available("item-a"), await available("item-b")) == (4, 2)


@pytest.mark.asyncio
async def test_expire_before_deadline_is_conflict(service, clock, stock, available):
    await stock("print-01", 1)
    order = await service.create_order("buyer-1", [OrderLine("print-01", 1)])
    clock.advance(minutes=14, seconds=59)

    with pytest.raises(OrderConflict) as exc_info:
        await service.expire_order(order.id)

    assert "not expired yet" in exc_info.value.message
    assert exc_info.value.current_status == OrderStatus.PENDING.value
    assert await available("print-01") == 0


@pytest.mark.asyncio
async def test_expire_exactly_at_deadline(service, clock, stock):
    await stock("print-01", 1)
    order = await service.create_order("buyer-1", [OrderLine("print-01", 1)])
    clock.set(order.expires_at)

    result = await service.expire_order(order.id)

    assert result.order.status == OrderStatus.EXPIRED.value


@pytest.mark.asyncio
async def test_cancel_checks_ownership(service, stock, available):
    await stock("print-01", 1)
    order = await service.create_order("buyer-1", [OrderLine("print-01", 1)])

    with pytest.raises(OrderNotFound):
        await service.cancel_order(order.id, buyer_id="buyer-2")
    assert await available("print-01") == 0

    result = await service.cancel_order(order.id, buyer_id="buyer-1")
    assert result.order.status == OrderStatus.CANCELLED.value


@pytest.mark.asyncio
async def test_release_unknown_order(service):
    with pytest.raises(OrderNotFound):
        await service.cancel_order(9999)


@pytest.mark.asyncio
async def test_release_rejects_non_release_status(service):
    with pytest.raises(ValueError):
        await service.release_order(1, OrderStatus.PAID)


# =============================================================================
# PAYMENT
# =============================================================================

@pytest.mark.asyncio
async def test_confirm_payment_keeps_stock_reserved(service, clock, stock, available):
    await stock("print-01", 2)
    order = await service.create_order("buyer-1", [OrderLine("print-01", 2)])
    clock.advance(minutes=5)

    result = await service.confirm_payment(order.id, "pay_123", "card")

    assert not result.already_processed
    assert result.order.status == OrderStatus.PAID.value
    assert result.order.payment_reference == "pay_123"
    assert result.order.payment_method == "card"
    assert result.order.paid_at == T0 + timedelta(minutes=5)
    assert await available("print-01") == 0
    assert metrics.get_counter("orders_paid_total") == 1


@pytest.mark.asyncio
async def test_paid_order_cannot_be_released(service, clock, stock, available):
    await stock("print-01", 1)
    order = await service.create_order("buyer-1", [OrderLine("print-01", 1)])
    await service.confirm_payment(order.id, "pay_123")
    clock.advance(hours=1)

    with pytest.raises(OrderConflict) as exc_info:
        await service.expire_order(order.id)
    with pytest.raises(OrderConflict):
        await service.cancel_order(order.id)

    assert exc_info.value.current_status == OrderStatus.PAID.value
    assert exc_info.value.payment_reference == "pay_123"
    assert await available("print-01") == 0


@pytest.mark.asyncio
async def test_duplicate_confirmation_is_already_processed(service, stock):
    await stock("print-01", 1)
    order = await service.create_order("buyer-1", [OrderLine("print-01", 1)])
    await service.confirm_payment(order.id, "pay_123")

    replay = await service.confirm_payment(order.id, "pay_123")
    assert replay.already_processed
    assert replay.order.status == OrderStatus.PAID.value

    with pytest.raises(OrderConflict):
        await service.confirm_payment(order.id, "pay_other")
    assert metrics.get_counter("orders_paid_total") == 1


@pytest.mark.asyncio
async def test_payment_after_expiry_is_conflict(service, clock, stock, available):
    await stock("print-01", 1)
    order = await service.create_order("buyer-1", [OrderLine("print-01", 1)])
    clock.advance(minutes=16)
    await service.expire_order(order.id)

    with pytest.raises(OrderConflict) as exc_info:
        await service.confirm_payment(order.id, "pay_late")

    assert exc_info.value.current_status == OrderStatus.EXPIRED.value
    assert exc_info.value.attempted_status == OrderStatus.PAID.value
    assert await available("print-01") == 1


@pytest.mark.asyncio
async def test_payment_past_deadline_before_sweep_wins(service, clock, stock, available):
    await stock("print-01", 1)
    order = await service.create_order("buyer-1", [OrderLine("print-01", 1)])
    clock.advance(minutes=16)

    result = await service.confirm_payment(order.id, "pay_123")

    assert result.order.status == OrderStatus.PAID.value
    assert await available("print-01") == 0


@pytest.mark.asyncio
async def test_confirm_payment_unknown_order(service):
    with pytest.raises(OrderNotFound):
        await service.confirm_payment(4242, "pay_123")


@pytest.mark.asyncio
async def test_confirm_payment_requires_reference(service):
    with pytest.raises(InvalidOrderRequest):
        await service.confirm_payment(1, "")


@pytest.mark.asyncio
async def test_reject_payment_cancels_and_restores(service, stock, available):
    await stock("print-01", 3)
    order = await service.create_order("buyer-1", [OrderLine("print-01", 3)])

    result = await service.reject_payment(order.id, "pay_declined_9", "card")

    assert result.order.status == OrderStatus.CANCELLED.value
    assert result.order.cancellation_reason == CancellationReason.PAYMENT_REJECTED
    assert result.order.rejected_payment_reference == "pay_declined_9"
    assert result.order.rejected_payment_method == "card"
    assert result.order.payment_reference is None
    assert await available("print-01") == 3


@pytest.mark.asyncio
async def test_reject_payment_without_gateway_details(service, stock):
    await stock("print-01", 1)
    order = await service.create_order("buyer-1", [OrderLine("print-01", 1)])

    result = await service.reject_payment(order.id)

    assert result.order.rejected_payment_reference is None
    assert result.order.cancellation_reason == CancellationReason.PAYMENT_REJECTED


@pytest.mark.asyncio
async def test_payment_and_expiry_race_has_one_winner(service, clock, stock, available):
    await stock("print-01", 1)
    order = await service.create_order("buyer-1", [OrderLine("print-01", 1)])
    clock.advance(minutes=15, seconds=1)

    paid, expired = await asyncio.gather(
        service.confirm_payment(order.id, "pay_123"),
        service.expire_order(order.id),
        return_exceptions=True,
    )

    outcomes = [paid, expired]
    conflicts = [o for o in outcomes if isinstance(o, OrderConflict)]
    assert len(conflicts) == 1
    final = await service.get_order(order.id)
    if isinstance(expired, OrderConflict):
        assert final.status == OrderStatus.PAID.value
        assert await available("print-01") == 0
    else:
        assert final.status == OrderStatus.EXPIRED.value
        assert final.payment_reference is None
        assert await available("print-01") == 1


@pytest.mark.asyncio
async def test_sweep_candidate_paid_in_between_is_left_alone(service, clock, stock, available):
    await stock("print-01", 1)
    order = await service.create_order("buyer-1", [OrderLine("print-01", 1)])
    clock.advance(minutes=16)

    candidates = await service.find_expired_order_ids(clock.now(), limit=10)
    assert candidates == [order.id]

    await service.confirm_payment(order.id, "pay_123")
    with pytest.raises(OrderConflict):
        await service.expire_order(order.id)
    assert await available("print-01") == 0


# =============================================================================
# READS
# =============================================================================

@pytest.mark.asyncio
async def test_list_orders_filters_and_paginates(service, clock, stock):
    await stock("print-01", 10)
    first = await service.create_order("buyer-1", [OrderLine("print-01", 1)])
    clock.advance(seconds=1)
    second = await service.create_order("buyer-2", [OrderLine("print-01", 1)])
    clock.advance(seconds=1)
    third = await service.create_order("buyer-1", [OrderLine("print-01", 1)])
    await service.cancel_order(second.id)

    orders, total = await service.list_orders()
    assert total == 3
    assert [o.id for o in orders] == [third.id, second.id, first.id]

    orders, total = await service.list_orders(status=OrderStatus.PENDING)
    assert total == 2
    assert {o.id for o in orders} == {first.id, third.id}

    orders, total = await service.list_orders(buyer_id="buyer-1", page=2, per_page=1)
    assert total == 2
    assert [o.id for o in orders] == [first.id]


@pytest.mark.asyncio
async def test_reservation_stats(service, clock, stock):
    await stock("print-01", 10)
    stale = await service.create_order("buyer-1", [OrderLine("print-01", 2)])
    clock.advance(minutes=12)
    await service.create_order("buyer-2", [OrderLine("print-01", 3)])
    paid = await service.create_order("buyer-3", [OrderLine("print-01", 1)])
    await service.confirm_payment(paid.id, "pay_1")
    clock.advance(minutes=4)

    stats = await service.get_reservation_stats()

    assert stats["pending_orders"] == 2
    assert stats["awaiting_sweep"] == 1
    assert stats["units_held"] == 5
    assert stale.expires_at <= clock.now()


@pytest.mark.asyncio
async def test_get_order_not_found(service):
    with pytest.raises(OrderNotFound):
        await service.get_order(123)
