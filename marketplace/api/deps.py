"""
API dependencies
"""
from marketplace.services.order_service import OrderService, order_service


def get_order_service() -> OrderService:
    """Reservation engine used by the request handlers."""
    return order_service
