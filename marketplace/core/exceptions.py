"""
Marketplace Exception Hierarchy

Structured exception classes for the order reservation subsystem.
All exceptions include code, message, and details for audit trail and
debugging.

Exception Hierarchy:
    MarketplaceError
    ├── InventoryError
    │   ├── InsufficientStock
    │   └── LedgerIntegrityError
    ├── OrderError
    │   ├── OrderNotFound
    │   ├── OrderConflict
    │   └── InvalidOrderRequest
    ├── TransactionFailure
    └── RateLimited
"""
from typing import Optional, Dict, Any


class MarketplaceError(Exception):
    """
    Base exception for all marketplace custom errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code for programmatic handling
        details: Additional context for debugging/audit
        severity: P0-P3 severity level
    """

    default_code: str = "MARKETPLACE_ERROR"
    default_severity: str = "P2"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        severity: Optional[str] = None,
    ):
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}
        self.severity = severity or self.default_severity
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "severity": self.severity,
            "details": self.details,
        }

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(code={self.code!r}, message={self.message!r})"


# =============================================================================
# INVENTORY ERRORS
# =============================================================================

class InventoryError(MarketplaceError):
    """Base exception for inventory ledger errors."""
    default_code = "INVENTORY_ERROR"
    default_severity = "P1"


class InsufficientStock(InventoryError):
    """A reservation could not be satisfied from available stock."""
    default_code = "INSUFFICIENT_STOCK"
    default_severity = "P3"

    def __init__(
        self,
        message: str,
        item_id: Optional[str] = None,
        requested_qty: Optional[int] = None,
        available_qty: Optional[int] = None,
        **kwargs
    ):
        details = kwargs.pop("details", {})
        details.update({
            "item_id": item_id,
            "requested_qty": requested_qty,
            "available_qty": available_qty,
        })
        self.item_id = item_id
        self.requested_qty = requested_qty
        self.available_qty = available_qty
        super().__init__(message, details=details, **kwargs)


class LedgerIntegrityError(InventoryError):
    """Ledger row missing or inconsistent with an order's lines."""
    default_code = "LEDGER_INTEGRITY_ERROR"
    default_severity = "P0"


# =============================================================================
# ORDER ERRORS
# =============================================================================

class OrderError(MarketplaceError):
    """Base exception for order lifecycle errors."""
    default_code = "ORDER_ERROR"


class OrderNotFound(OrderError):
    default_code = "ORDER_NOT_FOUND"
    default_severity = "P3"

    def __init__(self, order_id: int, **kwargs):
        self.order_id = order_id
        details = kwargs.pop("details", {})
        details["order_id"] = order_id
        super().__init__(f"Order {order_id} not found", details=details, **kwargs)


class OrderConflict(OrderError):
    """
    Transition attempted on an order that is no longer in the expected state.

    Expected and recoverable: another path (payment, cancellation, expiry)
    resolved the order first.
    """
    default_code = "ORDER_CONFLICT"
    default_severity = "P3"

    def __init__(
        self,
        order_id: int,
        current_status: Optional[str] = None,
        attempted_status: Optional[str] = None,
        payment_reference: Optional[str] = None,
        **kwargs
    ):
        self.order_id = order_id
        self.current_status = current_status
        self.attempted_status = attempted_status
        self.payment_reference = payment_reference
        details = kwargs.pop("details", {})
        details.update({
            "order_id": order_id,
            "current_status": current_status,
            "attempted_status": attempted_status,
        })
        message = kwargs.pop(
            "message",
            f"Order {order_id} is {current_status}; cannot transition to {attempted_status}",
        )
        super().__init__(message, details=details, **kwargs)


class InvalidOrderRequest(OrderError):
    """Malformed order input (empty lines, non-positive quantities)."""
    default_code = "INVALID_ORDER_REQUEST"
    default_severity = "P3"


# =============================================================================
# STORE ERRORS
# =============================================================================

class TransactionFailure(MarketplaceError):
    """Backing store unavailable, deadlocked, or otherwise failed to commit."""
    default_code = "TRANSACTION_FAILED"
    default_severity = "P1"

    def __init__(self, message: str, attempts: Optional[int] = None, **kwargs):
        details = kwargs.pop("details", {})
        details["attempts"] = attempts
        self.attempts = attempts
        super().__init__(message, details=details, **kwargs)


class RateLimited(MarketplaceError):
    """Client exceeded a request limit (checkout holds stock, so it is limited hardest)."""
    default_code = "RATE_LIMITED"
    default_severity = "P3"

    def __init__(self, limit: str, retry_after: int, **kwargs):
        details = kwargs.pop("details", {})
        details.update({"limit": limit, "retry_after": retry_after})
        self.limit = limit
        self.retry_after = retry_after
        super().__init__(
            f"Too many requests ({limit}). Please try again in {retry_after} seconds.",
            details=details,
            **kwargs
        )


# =============================================================================
# EXCEPTION CATALOG
# =============================================================================

EXCEPTION_CATALOG = {
    "INSUFFICIENT_STOCK": {"class": InsufficientStock, "severity": "P3", "http_status": 409},
    "LEDGER_INTEGRITY_ERROR": {"class": LedgerIntegrityError, "severity": "P0", "http_status": 500},
    "ORDER_NOT_FOUND": {"class": OrderNotFound, "severity": "P3", "http_status": 404},
    "ORDER_CONFLICT": {"class": OrderConflict, "severity": "P3", "http_status": 409},
    "INVALID_ORDER_REQUEST": {"class": InvalidOrderRequest, "severity": "P3", "http_status": 422},
    "TRANSACTION_FAILED": {"class": TransactionFailure, "severity": "P1", "http_status": 503},
    "RATE_LIMITED": {"class": RateLimited, "severity": "P3", "http_status": 429},
}
