"""
Order Models: Order, OrderItem.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import AuditMixin, Base, new_id

if TYPE_CHECKING:
    from .restaurant import Restaurant, Table, MenuItem
    from .billing import Bill


class Order(AuditMixin, Base):
    """
    A customer's requested items for a table.

    (restaurant_id, idempotency_key) is unique: the constraint is what decides
    the winner when two identical submissions race.
    """

    __tablename__ = "customer_order"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    restaurant_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("restaurant.id"), nullable=False, index=True
    )
    table_id: Mapped[Optional[str]] = mapped_column(
        String(64), ForeignKey("restaurant_table.id"), index=True
    )
    status: Mapped[str] = mapped_column(
        String(16), default="PENDING", nullable=False, index=True
    )  # PENDING, ACCEPTED, PREPARING, SERVED, CANCELLED
    type: Mapped[str] = mapped_column(String(16), default="DINE_IN", nullable=False)
    idempotency_key: Mapped[str] = mapped_column(String(128), nullable=False)
    is_priority: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    total_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    restaurant: Mapped["Restaurant"] = relationship(back_populates="orders")
    table: Mapped[Optional["Table"]] = relationship()
    items: Mapped[list["OrderItem"]] = relationship(
        back_populates="order", cascade="all, delete-orphan", order_by="OrderItem.position"
    )
    bill: Mapped[Optional["Bill"]] = relationship(back_populates="order", uselist=False)

    __table_args__ = (
        UniqueConstraint("restaurant_id", "idempotency_key", name="uq_order_restaurant_idempotency_key"),
        CheckConstraint("total_cents >= 0", name="chk_order_total_non_negative"),
        Index("ix_order_restaurant_status", "restaurant_id", "status"),
    )

    def __repr__(self) -> str:
        return f"<Order(id={self.id}, restaurant={self.restaurant_id}, status='{self.status}', total={self.total_cents})>"


class OrderItem(AuditMixin, Base):
    """
    A single line within an order.
    Stores the price at the time of order; billing never reads live menu prices.
    """

    __tablename__ = "order_item"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    order_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("customer_order.id"), nullable=False, index=True
    )
    menu_item_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("menu_item.id"), nullable=False, index=True
    )
    position: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    price_cents: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (
        CheckConstraint("quantity > 0", name="chk_order_item_quantity_positive"),
        CheckConstraint("price_cents >= 0", name="chk_order_item_price_non_negative"),
    )

    order: Mapped["Order"] = relationship(back_populates="items")
    menu_item: Mapped["MenuItem"] = relationship()

    @property
    def line_total_cents(self) -> int:
        return self.price_cents * self.quantity
