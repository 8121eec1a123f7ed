"""
Restaurant Models: Restaurant, Table, MenuItem.

These are read-only lookups for the ordering core; their CRUD lives elsewhere.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from sqlalchemy import CheckConstraint, ForeignKey, Index, Integer, String, Text, Boolean
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import AuditMixin, Base, new_id

if TYPE_CHECKING:
    from .order import Order


class Restaurant(AuditMixin, Base):
    """A tenant: every order, table and menu item belongs to one restaurant."""

    __tablename__ = "restaurant"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="INR", nullable=False)

    tables: Mapped[list["Table"]] = relationship(back_populates="restaurant")
    menu_items: Mapped[list["MenuItem"]] = relationship(back_populates="restaurant")
    orders: Mapped[list["Order"]] = relationship(back_populates="restaurant")

    def __repr__(self) -> str:
        return f"<Restaurant(id={self.id}, name={self.name!r})>"


class Table(AuditMixin, Base):
    """A physical table, reachable by its QR token."""

    __tablename__ = "restaurant_table"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    restaurant_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("restaurant.id"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(Text, nullable=False)
    qr_token: Mapped[str] = mapped_column(String(128), unique=True, nullable=False, default=new_id)

    restaurant: Mapped["Restaurant"] = relationship(back_populates="tables")

    def __repr__(self) -> str:
        return f"<Table(id={self.id}, name={self.name!r}, restaurant={self.restaurant_id})>"


class MenuItem(AuditMixin, Base):
    """A priced item on a restaurant's menu."""

    __tablename__ = "menu_item"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    restaurant_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("restaurant.id"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(Text, nullable=False)
    price_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    is_available: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    restaurant: Mapped["Restaurant"] = relationship(back_populates="menu_items")

    __table_args__ = (
        CheckConstraint("price_cents >= 0", name="chk_menu_item_price_non_negative"),
        Index("ix_menu_item_restaurant_available", "restaurant_id", "is_available"),
    )

    def __repr__(self) -> str:
        return f"<MenuItem(id={self.id}, name={self.name!r}, price={self.price_cents})>"
