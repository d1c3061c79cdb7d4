from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship
from datetime import datetime, timezone
import enum

Base = declarative_base()


def utcnow():
    return datetime.now(timezone.utc)


class ChangeType(str, enum.Enum):
    ADD = "add"
    SUBTRACT = "subtract"
    RESERVE = "reserve"
    RELEASE = "release"


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PREPARING = "preparing"
    DELIVERY = "delivery"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


ChangeTypeColumn = Enum(ChangeType, values_callable=_enum_values, name="change_type")
OrderStatusColumn = Enum(OrderStatus, values_callable=_enum_values, name="order_status")


class StockItem(Base):
    """A sellable product's inventory row.

    ``name``, ``price`` and ``is_available`` belong to the catalog and are only
    read here. ``stock`` and ``reserved`` are written exclusively by the ledger
    and the reservation service, and every such write bumps ``version``.
    """

    __tablename__ = "stock_items"
    __table_args__ = (
        CheckConstraint("stock >= 0", name="ck_stock_items_stock_non_negative"),
        CheckConstraint("reserved >= 0", name="ck_stock_items_reserved_non_negative"),
        CheckConstraint("reserved <= stock", name="ck_stock_items_reserved_within_stock"),
    )

    id = Column(String, primary_key=True, index=True)
    name = Column(String, nullable=False)
    price = Column(Float, nullable=False)
    is_available = Column(Boolean, default=True, nullable=False)
    stock = Column(Integer, default=0, nullable=False)
    reserved = Column(Integer, default=0, nullable=False)
    version = Column(Integer, default=0, nullable=False)
    min_stock = Column(Integer, default=0, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    @property
    def available(self):
        return self.stock - self.reserved


class InventoryHistory(Base):
    __tablename__ = "inventory_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    item_id = Column(String, ForeignKey("stock_items.id"), index=True, nullable=False)
    change_type = Column(ChangeTypeColumn, nullable=False)
    quantity = Column(Integer, nullable=False)
    stock_before = Column(Integer, nullable=False)
    stock_after = Column(Integer, nullable=False)
    reserved_before = Column(Integer, nullable=False)
    reserved_after = Column(Integer, nullable=False)
    order_id = Column(String, ForeignKey("orders.id"), index=True, nullable=True)
    actor_id = Column(String, nullable=False)
    note = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class Cart(Base):
    __tablename__ = "carts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, unique=True, index=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    items = relationship("CartItem", back_populates="cart", order_by="CartItem.id")


class CartItem(Base):
    __tablename__ = "cart_items"
    __table_args__ = (
        UniqueConstraint("cart_id", "item_id", name="uq_cart_items_cart_item"),
        CheckConstraint("quantity > 0", name="ck_cart_items_quantity_positive"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    cart_id = Column(Integer, ForeignKey("carts.id"), index=True, nullable=False)
    item_id = Column(String, ForeignKey("stock_items.id"), nullable=False)
    quantity = Column(Integer, nullable=False)

    cart = relationship("Cart", back_populates="items")
    item = relationship("StockItem", lazy="joined")


class Order(Base):
    __tablename__ = "orders"

    id = Column(String, primary_key=True, index=True)
    user_id = Column(String, index=True, nullable=False)
    total_amount = Column(Float, nullable=False)
    status = Column(OrderStatusColumn, default=OrderStatus.PENDING, nullable=False)
    delivery_address = Column(Text, nullable=False)
    phone = Column(String, nullable=False)
    notes = Column(Text, nullable=True)
    order_date = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    items = relationship("OrderItem", back_populates="order", order_by="OrderItem.id")


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String, ForeignKey("orders.id"), index=True, nullable=False)
    item_id = Column(String, ForeignKey("stock_items.id"), nullable=False)
    quantity = Column(Integer, nullable=False)
    # Price at order time; later catalog price changes do not touch it.
    price = Column(Float, nullable=False)

    order = relationship("Order", back_populates="items")
    item = relationship("StockItem", lazy="joined")


class OrderStatusHistory(Base):
    __tablename__ = "order_status_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String, ForeignKey("orders.id"), index=True, nullable=False)
    previous_status = Column(OrderStatusColumn, nullable=True)
    new_status = Column(OrderStatusColumn, nullable=False)
    updated_by = Column(String, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    note = Column(Text, nullable=True)
