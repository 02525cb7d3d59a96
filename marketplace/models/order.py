"""
Order models

An order owns the intent to purchase a fixed set of quantities. Lines are
written once, with the order, and never mutated. Orders are never deleted;
they move to a terminal status and are retained for audit.

State machine:
    PENDING -> PAID       (payment confirmation; ledger untouched)
    PENDING -> CANCELLED  (buyer/admin cancellation or rejected payment; ledger restored)
    PENDING -> EXPIRED    (expiration sweeper only; ledger restored)
"""
import enum

from sqlalchemy import (
    Column, Integer, String, ForeignKey, Numeric, CheckConstraint, Index
)
from sqlalchemy.orm import relationship

from marketplace.core.database import Base, UTCDateTime


class OrderStatus(str, enum.Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"


TERMINAL_STATUSES = frozenset({OrderStatus.PAID, OrderStatus.CANCELLED, OrderStatus.EXPIRED})

# Terminal states from which the reserved stock goes back to the ledger
RELEASE_STATUSES = frozenset({OrderStatus.CANCELLED, OrderStatus.EXPIRED})

ALLOWED_TRANSITIONS = {
    OrderStatus.PENDING: frozenset({OrderStatus.PAID, OrderStatus.CANCELLED, OrderStatus.EXPIRED}),
    OrderStatus.PAID: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
    OrderStatus.EXPIRED: frozenset(),
}


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[OrderStatus(current)]


class CancellationReason:
    BUYER = "buyer"
    ADMIN = "admin"
    PAYMENT_REJECTED = "payment_rejected"
    EXPIRED = "expired"


class Order(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    buyer_id = Column(String(64), nullable=False, index=True)

    # Display only
    order_number = Column(String(32), unique=True, index=True, nullable=False)

    status = Column(String(16), nullable=False, default=OrderStatus.PENDING.value, index=True)

    # Timestamps
    created_at = Column(UTCDateTime, nullable=False)
    expires_at = Column(UTCDateTime, nullable=False, index=True)  # immutable once set
    resolved_at = Column(UTCDateTime, nullable=True)

    # Payment (set only by the payment confirmation path)
    payment_reference = Column(String(255), nullable=True, index=True)
    payment_method = Column(String(50), nullable=True)
    paid_at = Column(UTCDateTime, nullable=True)

    cancellation_reason = Column(String(32), nullable=True)

    # Declined gateway attempt; never written to payment_reference
    rejected_payment_reference = Column(String(255), nullable=True)
    rejected_payment_method = Column(String(50), nullable=True)

    items = relationship(
        "OrderItem",
        back_populates="order",
        order_by="OrderItem.position",
        lazy="selectin",
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('PENDING', 'PAID', 'CANCELLED', 'EXPIRED')",
            name="chk_order_status"
        ),
        Index("ix_orders_sweep", status, expires_at),
    )

    @property
    def is_terminal(self) -> bool:
        return OrderStatus(self.status) in TERMINAL_STATUSES

    @property
    def total_quantity(self) -> int:
        return sum(item.quantity for item in self.items)

    def __repr__(self):
        return f"<Order {self.order_number}: {self.status}>"


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    position = Column(Integer, nullable=False)

    item_id = Column(String(64), nullable=False, index=True)  # catalog id; may have no ledger entry
    quantity = Column(Integer, nullable=False)

    # Snapshot at time of order, display only
    item_name = Column(String(255), nullable=True)
    unit_price = Column(Numeric(12, 2), nullable=True)

    order = relationship("Order", back_populates="items")

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_order_item_quantity_positive"),
    )
