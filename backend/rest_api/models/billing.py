"""
Billing Models: Bill, BillItem, BillSequence, Payment.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any, Optional

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
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
    from .order import Order


class Bill(AuditMixin, Base):
    """
    The bill for a single served order.

    balance_cents is always total_cents - paid_cents, and paid_cents is the sum
    of SUCCEEDED payments. The bill closes when the balance reaches zero and is
    never reopened by the reconciler.
    """

    __tablename__ = "bill"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    bill_number: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    restaurant_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("restaurant.id"), nullable=False, index=True
    )
    order_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("customer_order.id"), nullable=False, unique=True
    )
    table_id: Mapped[Optional[str]] = mapped_column(
        String(64), ForeignKey("restaurant_table.id"), index=True
    )
    status: Mapped[str] = mapped_column(
        String(16), default="OPEN", nullable=False, index=True
    )  # OPEN, CLOSED
    subtotal_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    tax_rate: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    cgst_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    sgst_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    paid_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    balance_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    parent_bill_id: Mapped[Optional[str]] = mapped_column(String(64), ForeignKey("bill.id"))
    closed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    order: Mapped["Order"] = relationship(back_populates="bill")
    items: Mapped[list["BillItem"]] = relationship(
        back_populates="bill", cascade="all, delete-orphan", order_by="BillItem.position"
    )
    payments: Mapped[list["Payment"]] = relationship(back_populates="bill")

    __table_args__ = (
        CheckConstraint("paid_cents <= total_cents", name="chk_bill_paid_not_exceed_total"),
        CheckConstraint("total_cents >= 0", name="chk_bill_total_non_negative"),
        CheckConstraint("paid_cents >= 0", name="chk_bill_paid_non_negative"),
        Index("ix_bill_restaurant_status", "restaurant_id", "status"),
    )

    def __repr__(self) -> str:
        return (
            f"<Bill(id={self.id}, number={self.bill_number}, total={self.total_cents}, "
            f"paid={self.paid_cents}, status={self.status})>"
        )


class BillItem(AuditMixin, Base):
    """A bill line, copied from the order's price snapshot."""

    __tablename__ = "bill_item"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    bill_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("bill.id"), nullable=False, index=True
    )
    menu_item_id: Mapped[str] = mapped_column(String(64), ForeignKey("menu_item.id"), nullable=False)
    position: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    price_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    total_cents: Mapped[int] = mapped_column(Integer, nullable=False)

    bill: Mapped["Bill"] = relationship(back_populates="items")

    __table_args__ = (
        CheckConstraint("quantity > 0", name="chk_bill_item_quantity_positive"),
    )


class BillSequence(Base):
    """
    Per-restaurant yearly counter for bill numbers.
    Always read with SELECT ... FOR UPDATE before incrementing.
    """

    __tablename__ = "bill_sequence"

    restaurant_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("restaurant.id"), primary_key=True
    )
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    last_number: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    def __repr__(self) -> str:
        return f"<BillSequence(restaurant={self.restaurant_id}, year={self.year}, last={self.last_number})>"


class Payment(AuditMixin, Base):
    """
    A payment towards a bill.
    Multiple payments can be made for partial payments.

    gateway_payment_id is the correlation id used to match gateway callbacks
    (Cashfree order_id, mock reference).
    """

    __tablename__ = "payment"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    bill_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("bill.id"), nullable=False, index=True
    )
    method: Mapped[str] = mapped_column(String(16), nullable=False)  # CASH, UPI, CARD, QR, WALLET, NETBANKING
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(
        String(16), default="PENDING", nullable=False, index=True
    )  # PENDING, PROCESSING, SUCCEEDED, FAILED
    gateway: Mapped[str] = mapped_column(String(32), default="mock", nullable=False)
    gateway_payment_id: Mapped[Optional[str]] = mapped_column(String(128), index=True)
    gateway_response: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON)
    payment_link: Mapped[Optional[str]] = mapped_column(Text)
    succeeded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    failed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    # Client-supplied key; a resubmitted request returns the original payment
    idempotency_key: Mapped[Optional[str]] = mapped_column(String(128))

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="chk_payment_amount_positive"),
        UniqueConstraint("bill_id", "idempotency_key", name="uq_payment_bill_idempotency_key"),
        Index("ix_payment_bill_status", "bill_id", "status"),
    )

    bill: Mapped["Bill"] = relationship(back_populates="payments")

    def __repr__(self) -> str:
        return f"<Payment(id={self.id}, bill={self.bill_id}, amount={self.amount_cents}, status={self.status}, gateway={self.gateway})>"
