import enum
from datetime import datetime, timezone

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    String,
)
from sqlalchemy.orm import relationship

from reservation_service.database import Base


def utcnow() -> datetime:
    # Naive UTC, matching the DateTime columns.
    return datetime.now(timezone.utc).replace(tzinfo=None)


class CartStatus(enum.Enum):
    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"
    RECLAIMED = "RECLAIMED"
    SETTLED = "SETTLED"


class OrderStatus(enum.Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"


ORDER_TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.PAID, OrderStatus.CANCELLED},
    OrderStatus.PAID: {OrderStatus.PROCESSING, OrderStatus.CANCELLED, OrderStatus.REFUNDED},
    OrderStatus.PROCESSING: {OrderStatus.SHIPPED, OrderStatus.CANCELLED, OrderStatus.REFUNDED},
    OrderStatus.SHIPPED: {OrderStatus.DELIVERED, OrderStatus.REFUNDED},
    OrderStatus.DELIVERED: {OrderStatus.REFUNDED},
    OrderStatus.CANCELLED: set(),
    OrderStatus.REFUNDED: set(),
}


class Sku(Base):
    __tablename__ = "skus"
    __table_args__ = (
        CheckConstraint("available_quantity >= 0", name="ck_skus_available_non_negative"),
    )

    id = Column(String, primary_key=True, index=True)
    name = Column(String, nullable=False)
    unit_price = Column(Numeric(10, 2), nullable=False, default=0)
    available_quantity = Column(Integer, nullable=False, default=0)
    version = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class Cart(Base):
    __tablename__ = "carts"
    __table_args__ = (
        CheckConstraint("expires_at >= created_at", name="ck_carts_expiry_after_creation"),
    )

    id = Column(String, primary_key=True, index=True)
    owner_id = Column(String, nullable=True, index=True)
    # SETTLED and RECLAIMED rows are kept as tombstones until the id is reused.
    # EXPIRED is never stored, it is derived from expires_at.
    status = Column(Enum(CartStatus), default=CartStatus.ACTIVE, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    expires_at = Column(DateTime, nullable=False, index=True)

    def state(self, now: datetime) -> CartStatus:
        if self.status is CartStatus.ACTIVE and self.expires_at <= now:
            return CartStatus.EXPIRED
        return self.status

    def is_live(self, now: datetime) -> bool:
        return self.state(now) is CartStatus.ACTIVE


class Reservation(Base):
    __tablename__ = "reservations"
    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_reservations_quantity_positive"),
    )

    # The composite key doubles as the (cart_id, sku_id) uniqueness constraint.
    cart_id = Column(String, ForeignKey("carts.id", ondelete="CASCADE"), primary_key=True)
    sku_id = Column(String, ForeignKey("skus.id"), primary_key=True, index=True)
    quantity = Column(Integer, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class Order(Base):
    __tablename__ = "orders"

    id = Column(String, primary_key=True, index=True)
    payment_reference = Column(String, unique=True, nullable=False)
    cart_id = Column(String, index=True, nullable=False)
    owner_id = Column(String, nullable=True, index=True)
    status = Column(Enum(OrderStatus), default=OrderStatus.PAID, nullable=False)
    total_amount = Column(Numeric(12, 2), nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    items = relationship(
        "OrderItem",
        back_populates="order",
        lazy="selectin",
        order_by="OrderItem.sku_id",
        cascade="all, delete-orphan",
    )


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False, index=True)
    sku_id = Column(String, ForeignKey("skus.id"), nullable=False)
    sku_name = Column(String, nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Numeric(10, 2), nullable=False)

    order = relationship("Order", back_populates="items")
