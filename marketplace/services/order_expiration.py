"""
Order Expiration Service

Releases reservations held by orders whose payment window has elapsed.
Run on a fixed interval by jobs.order_expiration.

Each order is expired in its own transaction, so one failure never aborts
the rest of the batch. A failed order still matches the sweep query and is
picked up again on the next run. Overlapping sweeps are safe: the loser of
any race on an order gets OrderConflict and changes nothing.
"""
import logging
from datetime import datetime
from typing import Optional

from marketplace.core.config import settings
from marketplace.core.exceptions import OrderConflict
from marketplace.core.monitoring import metrics
from marketplace.services.order_service import OrderService, order_service

logger = logging.getLogger(__name__)


async def sweep_expired_orders(
    service: Optional[OrderService] = None,
    batch_size: Optional[int] = None,
    now: Optional[datetime] = None,
) -> dict:
    """
    Expire every PENDING, unpaid order past its deadline.

    Returns:
        dict with counts of matched, expired, conflicting and failed orders
        and the units returned to the ledger
    """
    service = service or order_service
    batch_size = batch_size or settings.ORDER_SWEEP_BATCH_SIZE
    now = now or service.clock.now()

    stats = {
        "orders_found": 0,
        "orders_expired": 0,
        "units_restored": 0,
        "conflicts": 0,
        "errors": 0,
    }

    order_ids = await service.find_expired_order_ids(now, batch_size)
    if not order_ids:
        return stats

    stats["orders_found"] = len(order_ids)

    for order_id in order_ids:
        try:
            result = await service.expire_order(order_id, now=now)
        except OrderConflict as e:
            # Paid or cancelled since the scan, or expired by an overlapping sweep
            stats["conflicts"] += 1
            logger.debug(f"Skipping order {order_id}: {e.message}")
            continue
        except Exception as e:
            stats["errors"] += 1
            metrics.increment("order_sweep_errors_total")
            logger.error(f"Failed to expire order {order_id}: {e}", exc_info=True)
            continue

        stats["orders_expired"] += 1
        stats["units_restored"] += result.units_restored
        metrics.increment("order_units_released_total", result.units_restored)
        logger.info(
            f"Expired order {result.order.order_number}: "
            f"restored {result.units_restored} units across {result.items_restored} lines"
        )

    logger.info(
        f"Order sweep complete: {stats['orders_expired']}/{stats['orders_found']} expired, "
        f"{stats['units_restored']} units restored, "
        f"{stats['conflicts']} conflicts, {stats['errors']} errors"
    )
    return stats
