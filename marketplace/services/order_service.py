"""
OrderService - Reservation Engine

Single source of truth for order creation and every order status
transition. Each public operation runs in its own transaction:

- create_order: reserve every line on the ledger and insert the PENDING
  order, all or nothing
- release_order: guarded PENDING -> CANCELLED/EXPIRED plus ledger restore
- confirm_payment: guarded PENDING -> PAID, ledger untouched

The status guard (status = PENDING AND payment_reference IS NULL) is part
of the same UPDATE that changes the status, so whichever of payment,
cancellation, or expiry commits first wins and the others observe
OrderConflict without touching the ledger.
"""
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from marketplace.core.clock import Clock, system_clock
from marketplace.core.config import settings
from marketplace.core.database import AsyncSessionLocal
from marketplace.core.exceptions import (
    InsufficientStock,
    InvalidOrderRequest,
    OrderConflict,
    OrderNotFound,
    TransactionFailure,
)
from marketplace.core.monitoring import metrics
from marketplace.core.retry import RetryConfig, is_transient_db_error, run_with_retry
from marketplace.core.utils import generate_order_number
from marketplace.models import (
    CancellationReason,
    Order,
    OrderItem,
    OrderStatus,
    RELEASE_STATUSES,
    can_transition,
)
from marketplace.services.inventory_ledger import inventory_ledger

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OrderLine:
    """Line item supplied by the checkout/cart collaborator."""
    item_id: str
    quantity: int
    item_name: Optional[str] = None
    unit_price: Optional[Decimal] = None


@dataclass
class PaymentResult:
    """Outcome of a payment confirmation."""
    order: Order
    already_processed: bool = False


@dataclass
class ReleaseResult:
    """Outcome of a successful release transition."""
    order: Order
    units_restored: int
    items_restored: int


def _validate_lines(lines: Sequence[OrderLine]) -> List[OrderLine]:
    if not lines:
        raise InvalidOrderRequest("Order must contain at least one line")
    for line in lines:
        if not line.item_id:
            raise InvalidOrderRequest("Order line is missing an item id")
        if isinstance(line.quantity, bool) or not isinstance(line.quantity, int) or line.quantity <= 0:
            raise InvalidOrderRequest(
                f"Quantity for {line.item_id} must be a positive integer",
                details={"item_id": line.item_id, "quantity": line.quantity},
            )
    return list(lines)


def _reservation_totals(lines: Iterable[OrderLine]) -> List[Tuple[str, int]]:
    """Total quantity per item, in a stable item order so concurrent
    checkouts lock ledger rows in the same sequence."""
    totals = {}
    for line in lines:
        totals[line.item_id] = totals.get(line.item_id, 0) + line.quantity
    return sorted(totals.items())


def _wrap_store_error(error: DBAPIError, description: str) -> TransactionFailure:
    return TransactionFailure(
        f"{description} failed: {type(error.orig).__name__ if error.orig else type(error).__name__}",
        details={"transient": is_transient_db_error(error)},
    )


class OrderService:
    """Reservation engine: order creation and guarded status transitions."""

    def __init__(
        self,
        session_factory: async_sessionmaker = AsyncSessionLocal,
        clock: Clock = system_clock,
        reservation_window: Optional[timedelta] = None,
        retry_config: Optional[RetryConfig] = None,
    ):
        self.session_factory = session_factory
        self.clock = clock
        self.reservation_window = reservation_window or timedelta(
            minutes=settings.ORDER_RESERVATION_WINDOW_MINUTES
        )
        self.retry_config = retry_config or RetryConfig(
            max_retries=settings.CHECKOUT_MAX_RETRIES,
            base_delay=settings.CHECKOUT_RETRY_BASE_DELAY,
            max_delay=settings.CHECKOUT_RETRY_MAX_DELAY,
        )

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_order(self, buyer_id: str, lines: Sequence[OrderLine]) -> Order:
        """
        Reserve stock for every line and create a PENDING order.

        All-or-nothing: if any line cannot be reserved the whole transaction
        rolls back and InsufficientStock is raised; no order exists and the
        ledger is unchanged. Transient store failures are retried with
        backoff, then surfaced as TransactionFailure.
        """
        if not buyer_id:
            raise InvalidOrderRequest("Buyer id is required")
        lines = _validate_lines(lines)

        start_time = time.time()
        try:
            order = await run_with_retry(
                lambda: self._create_order_once(buyer_id, lines),
                self.retry_config,
                description=f"create_order buyer={buyer_id}",
            )
        except InsufficientStock:
            metrics.increment("checkout_insufficient_stock_total")
            raise

        duration = time.time() - start_time
        metrics.increment("orders_created_total")
        metrics.observe("checkout_duration_seconds", duration)
        logger.info(
            f"CHECKOUT_METRIC: order_created "
            f"order_number={order.order_number} "
            f"buyer_id={buyer_id} "
            f"line_count={len(lines)} "
            f"units={order.total_quantity} "
            f"expires_at={order.expires_at.isoformat()} "
            f"duration_ms={duration * 1000:.2f}"
        )
        return order

    async def _create_order_once(self, buyer_id: str, lines: List[OrderLine]) -> Order:
        now = self.clock.now()
        async with self.session_factory() as db:
            async with db.begin():
                order = Order(
                    buyer_id=buyer_id,
                    order_number=generate_order_number(now),
                    status=OrderStatus.PENDING.value,
                    created_at=now,
                    expires_at=now + self.reservation_window,
                    items=[
                        OrderItem(
                            position=position,
                            item_id=line.item_id,
                            quantity=line.quantity,
                            item_name=line.item_name,
                            unit_price=line.unit_price,
                        )
                        for position, line in enumerate(lines)
                    ],
                )
                db.add(order)
                await db.flush()

                for item_id, quantity in _reservation_totals(lines):
                    await inventory_ledger.reserve(db, item_id, quantity, now, order_id=order.id)

            return order

    # ------------------------------------------------------------------
    # Release (cancel / expire)
    # ------------------------------------------------------------------

    async def release_order(
        self,
        order_id: int,
        target_status: OrderStatus,
        reason: Optional[str] = None,
        buyer_id: Optional[str] = None,
        now: Optional[datetime] = None,
        rejected_payment: Optional[Tuple[Optional[str], Optional[str]]] = None,
    ) -> ReleaseResult:
        """
        Move a PENDING, unpaid order to CANCELLED or EXPIRED and give its
        reserved stock back to the ledger.

        The guard, the status write, and the ledger increments share one
        transaction. A second release of the same order fails the guard and
        raises OrderConflict with no ledger change, so every reservation is
        restored at most once.

        EXPIRED additionally requires expires_at <= now. `now` defaults to
        the service clock; the sweeper passes the instant it scanned with.
        `rejected_payment` is the gateway's (reference, method) for a
        declined payment, kept apart from payment_reference.
        """
        target_status = OrderStatus(target_status)
        if target_status not in RELEASE_STATUSES or not can_transition(
            OrderStatus.PENDING, target_status
        ):
            raise ValueError(f"{target_status.value} is not a release status")
        if reason is None:
            reason = (
                CancellationReason.EXPIRED
                if target_status == OrderStatus.EXPIRED
                else CancellationReason.BUYER
            )

        now = now or self.clock.now()
        values = {
            "status": target_status.value,
            "resolved_at": now,
            "cancellation_reason": reason,
        }
        if rejected_payment is not None:
            values["rejected_payment_reference"], values["rejected_payment_method"] = rejected_payment
        try:
            async with self.session_factory() as db:
                async with db.begin():
                    guard = [
                        Order.id == order_id,
                        Order.status == OrderStatus.PENDING.value,
                        Order.payment_reference.is_(None),
                    ]
                    if target_status == OrderStatus.EXPIRED:
                        guard.append(Order.expires_at <= now)
                    if buyer_id is not None:
                        guard.append(Order.buyer_id == buyer_id)

                    result = await db.execute(
                        update(Order)
                        .where(*guard)
                        .values(**values)
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount != 1:
                        raise await self._conflict_for(db, order_id, target_status, buyer_id)

                    items = (await db.execute(
                        select(OrderItem).where(OrderItem.order_id == order_id)
                    )).scalars().all()

                    units = 0
                    for item_id, quantity in _reservation_totals(items):
                        await inventory_ledger.release(
                            db, item_id, quantity, now, order_id=order_id, reason=reason
                        )
                        units += quantity

                    order = await self._load_order(db, order_id)
        except DBAPIError as e:
            raise _wrap_store_error(e, f"release_order order={order_id}") from e

        metrics.increment(f"orders_{target_status.value.lower()}_total")
        return ReleaseResult(order=order, units_restored=units, items_restored=len(items))

    async def cancel_order(
        self,
        order_id: int,
        reason: str = CancellationReason.BUYER,
        buyer_id: Optional[str] = None,
    ) -> ReleaseResult:
        """Buyer/admin cancellation before payment. Pass buyer_id to enforce ownership."""
        result = await self.release_order(
            order_id, OrderStatus.CANCELLED, reason=reason, buyer_id=buyer_id
        )
        logger.info(
            "Cancelled order %s (%s), restored %d units",
            result.order.order_number, reason, result.units_restored,
        )
        return result

    async def expire_order(self, order_id: int, now: Optional[datetime] = None) -> ReleaseResult:
        return await self.release_order(order_id, OrderStatus.EXPIRED, now=now)

    # ------------------------------------------------------------------
    # Payment collaborator contract
    # ------------------------------------------------------------------

    async def confirm_payment(
        self,
        order_id: int,
        payment_reference: str,
        payment_method: Optional[str] = None,
    ) -> PaymentResult:
        """
        Attach a payment and mark the order PAID, conditional on the order
        still being PENDING and unpaid. Stock stays decremented.

        Raises OrderConflict if the order already resolved so the caller can
        react (e.g. refund a payment that landed after expiry).
        A repeated confirmation carrying the reference already on the order
        is reported as already_processed instead.
        """
        if not payment_reference:
            raise InvalidOrderRequest("Payment reference is required")

        now = self.clock.now()
        try:
            async with self.session_factory() as db:
                async with db.begin():
                    result = await db.execute(
                        update(Order)
                        .where(
                            Order.id == order_id,
                            Order.status == OrderStatus.PENDING.value,
                            Order.payment_reference.is_(None),
                        )
                        .values(
                            status=OrderStatus.PAID.value,
                            payment_reference=payment_reference,
                            payment_method=payment_method,
                            paid_at=now,
                            resolved_at=now,
                        )
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount != 1:
                        current = await self._load_order(db, order_id)
                        if (
                            current is not None
                            and current.status == OrderStatus.PAID.value
                            and current.payment_reference == payment_reference
                        ):
                            logger.info(
                                "Order %s already paid with %s, skipping",
                                current.order_number, payment_reference,
                            )
                            return PaymentResult(order=current, already_processed=True)
                        raise await self._conflict_for(db, order_id, OrderStatus.PAID)

                    order = await self._load_order(db, order_id)
        except DBAPIError as e:
            raise _wrap_store_error(e, f"confirm_payment order={order_id}") from e

        metrics.increment("orders_paid_total")
        logger.info("Order %s paid (payment=%s)", order.order_number, payment_reference)
        return PaymentResult(order=order)

    async def reject_payment(
        self,
        order_id: int,
        payment_reference: Optional[str] = None,
        payment_method: Optional[str] = None,
    ) -> ReleaseResult:
        """
        Payment gateway reported a rejected/cancelled payment.

        The gateway's payment id and method are recorded on the cancelled
        order as the rejected attempt; payment_reference stays NULL.
        """
        result = await self.release_order(
            order_id,
            OrderStatus.CANCELLED,
            reason=CancellationReason.PAYMENT_REJECTED,
            rejected_payment=(payment_reference, payment_method),
        )
        logger.info(
            "Payment %s rejected for order %s, restored %d units",
            payment_reference or "-", result.order.order_number, result.units_restored,
        )
        return result

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_order(self, order_id: int) -> Order:
        async with self.session_factory() as db:
            order = await self._load_order(db, order_id)
        if order is None:
            raise OrderNotFound(order_id)
        return order

    async def list_orders(
        self,
        status: Optional[OrderStatus] = None,
        buyer_id: Optional[str] = None,
        page: int = 1,
        per_page: int = 20,
    ) -> Tuple[List[Order], int]:
        """Paginated order listing for admin/reporting, newest first."""
        filters = []
        if status is not None:
            filters.append(Order.status == OrderStatus(status).value)
        if buyer_id is not None:
            filters.append(Order.buyer_id == buyer_id)

        async with self.session_factory() as db:
            total = (await db.execute(
                select(func.count(Order.id)).where(*filters)
            )).scalar() or 0
            result = await db.execute(
                select(Order)
                .where(*filters)
                .order_by(Order.created_at.desc(), Order.id.desc())
                .offset((page - 1) * per_page)
                .limit(per_page)
            )
            orders = list(result.scalars().all())
        return orders, total

    async def find_expired_order_ids(self, now: datetime, limit: int) -> List[int]:
        """PENDING, unpaid orders whose reservation window has elapsed, oldest first."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(Order.id)
                .where(
                    Order.status == OrderStatus.PENDING.value,
                    Order.payment_reference.is_(None),
                    Order.expires_at <= now,
                )
                .order_by(Order.expires_at, Order.id)
                .limit(limit)
            )
            return list(result.scalars().all())

    async def get_reservation_stats(self, now: Optional[datetime] = None) -> dict:
        """Outstanding reservations, for monitoring."""
        now = now or self.clock.now()
        pending = [
            Order.status == OrderStatus.PENDING.value,
            Order.payment_reference.is_(None),
        ]
        async with self.session_factory() as db:
            pending_orders = (await db.execute(
                select(func.count(Order.id)).where(*pending)
            )).scalar() or 0
            awaiting_sweep = (await db.execute(
                select(func.count(Order.id)).where(*pending, Order.expires_at <= now)
            )).scalar() or 0
            expiring_soon = (await db.execute(
                select(func.count(Order.id)).where(
                    *pending,
                    Order.expires_at > now,
                    Order.expires_at <= now + timedelta(minutes=5),
                )
            )).scalar() or 0
            units_held = (await db.execute(
                select(func.coalesce(func.sum(OrderItem.quantity), 0))
                .join(Order, Order.id == OrderItem.order_id)
                .where(*pending)
            )).scalar() or 0

        return {
            "pending_orders": pending_orders,
            "awaiting_sweep": awaiting_sweep,
            "expiring_soon": expiring_soon,
            "units_held": int(units_held),
            "as_of": now.isoformat(),
        }

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    async def _load_order(db: AsyncSession, order_id: int) -> Optional[Order]:
        result = await db.execute(select(Order).where(Order.id == order_id))
        return result.scalar_one_or_none()

    @staticmethod
    async def _conflict_for(
        db: AsyncSession,
        order_id: int,
        attempted: OrderStatus,
        buyer_id: Optional[str] = None,
    ) -> Exception:
        """Explain why a guarded transition matched no row."""
        current = await OrderService._load_order(db, order_id)
        if current is None or (buyer_id is not None and current.buyer_id != buyer_id):
            return OrderNotFound(order_id)
        metrics.increment("order_conflicts_total")
        if not current.is_terminal and current.payment_reference is None:
            # Only reachable for EXPIRED: the deadline has not passed yet
            return OrderConflict(
                order_id,
                current_status=current.status,
                attempted_status=attempted.value,
                message=f"Order {order_id} reservation has not expired yet",
                details={"expires_at": current.expires_at.isoformat()},
            )
        return OrderConflict(
            order_id,
            current_status=current.status,
            attempted_status=attempted.value,
            payment_reference=current.payment_reference,
        )


# Singleton instance
order_service = OrderService()
