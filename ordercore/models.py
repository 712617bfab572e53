"""SQLAlchemy tables for orders, order lines, stock, carts and checkout keys.

The storage layer enforces what the application relies on: order numbers
are unique, stock never goes below zero, and deleting an order removes its
lines and idempotency keys with it.
"""

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, mapped_column, relationship

MONEY = Numeric(12, 2)


class Base(DeclarativeBase):
    pass


class OrderRow(Base):
    """One checkout transaction.

    Attributes:
        id: Internal autoincrement primary key.
        order_number: External token, unique at the storage layer.
        status: ``OrderStatus`` value.
        total_amount: Exact decimal total computed at creation.
    """

    __tablename__ = "orders"

    id = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_number = mapped_column(String(64), nullable=False)
    user_id = mapped_column(Integer, nullable=False, index=True)
    total_amount = mapped_column(MONEY, nullable=False)
    status = mapped_column(String(32), nullable=False)
    receiver_name = mapped_column(String(64), nullable=False)
    receiver_phone = mapped_column(String(32), nullable=False)
    receiver_address = mapped_column(String(255), nullable=False)
    created_at = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at = mapped_column(DateTime(timezone=True), nullable=False)

    lines = relationship(
        "OrderLineRow",
        order_by="OrderLineRow.id",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    __table_args__ = (
        UniqueConstraint("order_number", name="ux_orders_order_number"),
    )


class OrderLineRow(Base):
    __tablename__ = "order_lines"

    id = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id = mapped_column(ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    # weak reference: no foreign key to the catalog
    product_id = mapped_column(Integer, nullable=False)
    quantity = mapped_column(Integer, nullable=False)
    unit_price = mapped_column(MONEY, nullable=False)

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_order_lines_quantity_positive"),
    )


class StockRow(Base):
    """Available quantity for a product."""

    __tablename__ = "stock"

    product_id = mapped_column(Integer, primary_key=True, autoincrement=False)
    quantity = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        CheckConstraint("quantity >= 0", name="ck_stock_quantity_non_negative"),
    )


class CartLineRow(Base):
    """Cart contents, owned by the cart store; read and cleared at checkout.

    Insertion order is the autoincrement id.
    """

    __tablename__ = "cart_lines"

    id = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id = mapped_column(Integer, nullable=False, index=True)
    product_id = mapped_column(Integer, nullable=False)
    quantity = mapped_column(Integer, nullable=False)
    unit_price = mapped_column(MONEY, nullable=False)


class CheckoutKeyRow(Base):
    """Idempotency key for a checkout request.

    Attributes:
        key: Client-provided idempotency key.
        request_hash: SHA-256 hex digest of the canonical request.
        order_id: Order created under the key.
    """

    __tablename__ = "checkout_keys"

    key = mapped_column(String(200), primary_key=True)
    request_hash = mapped_column(String(64), nullable=False)
    order_id = mapped_column(ForeignKey("orders.id", ondelete="CASCADE"), nullable=True)
