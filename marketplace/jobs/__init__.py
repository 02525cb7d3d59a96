"""
Jobs Package

Background jobs that run alongside the API or under run_sweeper.py.
"""
from marketplace.jobs.order_expiration import (
    OrderExpirationScheduler,
    order_expiration_scheduler,
)

__all__ = [
    "OrderExpirationScheduler",
    "order_expiration_scheduler",
]
