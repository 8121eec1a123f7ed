"""
Bill Generator Domain Service.

Turns a SERVED order into exactly one bill. Amounts come from the order's
price snapshot, never from the live menu.
"""

from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from shared.config.constants import BillStatus, OrderStatus
from shared.config.logging import get_logger
from shared.config.settings import settings
from shared.infrastructure.db import UnitOfWork
from shared.utils.exceptions import (
    ConflictError,
    InvalidStateError,
    MissingDataError,
    NotFoundError,
)
from rest_api.models import Bill, BillItem, BillSequence, Order, OrderItem

logger = get_logger(__name__)

# One retry when the loser of a race finds no bill (e.g. a sequence row race)
MAX_CREATE_ATTEMPTS = 2


def calculate_gst(subtotal_cents: int, tax_rate: int) -> tuple[int, int]:
    """
    Split GST equally into (cgst, sgst), each rounded half-up to the minor unit.

    >>> calculate_gst(10000, 18)
    (900, 900)
    >>> calculate_gst(1001, 18)
    (90, 90)
    """
    half = (subtotal_cents * tax_rate + 100) // 200
    return half, half


def format_bill_number(year: int, number: int) -> str:
    return f"BILL-{year}-{number:06d}"


class BillGeneratorService:
    """
    Domain service for bill creation.

    UNIQUE(bill.order_id) arbitrates concurrent requests for the same order;
    the bill number comes from a per-restaurant BillSequence row read
    FOR UPDATE.
    """

    def __init__(self, uow: UnitOfWork):
        self._uow = uow

    @property
    def _db(self) -> Session:
        return self._uow.session

    def get_bill(self, bill_id: str) -> Bill:
        bill = self._db.scalar(
            select(Bill).options(selectinload(Bill.items)).where(Bill.id == bill_id)
        )
        if not bill:
            raise NotFoundError("Bill", bill_id)
        return bill

    def find_by_order(self, order_id: str) -> Bill | None:
        return self._db.scalar(
            select(Bill).options(selectinload(Bill.items)).where(Bill.order_id == order_id)
        )

    def create_bill_from_order(self, order_id: str) -> tuple[Bill, bool]:
        """
        Create the bill for a served order.

        Returns (bill, created) tuple. created is False when the order already
        had a bill.
        Raises:
            NotFoundError: order missing
            InvalidStateError: order is not SERVED
            MissingDataError: order has no table
            ConflictError: a concurrent insert won but cannot be read back
        """
        for attempt in range(1, MAX_CREATE_ATTEMPTS + 1):
            order = self._db.scalar(
                select(Order)
                .options(selectinload(Order.items).selectinload(OrderItem.menu_item))
                .where(Order.id == order_id)
            )
            if not order:
                raise NotFoundError("Order", order_id)

            existing = self.find_by_order(order_id)
            if existing:
                return existing, False

            if order.status != OrderStatus.SERVED:
                raise InvalidStateError(
                    "Only SERVED orders can generate a bill",
                    order_id=order_id,
                    status=order.status,
                )
            if not order.table_id:
                raise MissingDataError("Order has no table assigned", order_id=order_id)

            try:
                with self._uow.transaction() as db:
                    bill = self._build_bill(db, order)
                    db.add(bill)
                    db.flush()
            except IntegrityError:
                winner = self.find_by_order(order_id)
                if winner:
                    logger.info(
                        "Bill creation lost race, returning winner",
                        bill_id=winner.id,
                        order_id=order_id,
                    )
                    return winner, False
                logger.warning(
                    "Bill creation conflicted without a winner",
                    order_id=order_id,
                    attempt=attempt,
                )
                continue

            logger.info(
                "Bill created",
                bill_id=bill.id,
                bill_number=bill.bill_number,
                order_id=order_id,
                total_cents=bill.total_cents,
            )
            return bill, True

        raise ConflictError("Bill could not be created, please retry", order_id=order_id)

    def _build_bill(self, db: Session, order: Order) -> Bill:
        subtotal_cents = 0
        items: list[BillItem] = []
        for item in order.items:
            line_total = item.price_cents * item.quantity
            subtotal_cents += line_total
            items.append(
                BillItem(
                    menu_item_id=item.menu_item_id,
                    position=item.position,
                    name=item.menu_item.name,
                    quantity=item.quantity,
                    price_cents=item.price_cents,
                    total_cents=line_total,
                )
            )

        tax_rate = settings.tax_rate
        cgst_cents, sgst_cents = calculate_gst(subtotal_cents, tax_rate)
        total_cents = subtotal_cents + cgst_cents + sgst_cents

        return Bill(
            bill_number=self._next_bill_number(db, order.restaurant_id),
            restaurant_id=order.restaurant_id,
            order_id=order.id,
            table_id=order.table_id,
            status=BillStatus.OPEN,
            subtotal_cents=subtotal_cents,
            tax_rate=tax_rate,
            cgst_cents=cgst_cents,
            sgst_cents=sgst_cents,
            total_cents=total_cents,
            paid_cents=0,
            balance_cents=total_cents,
            items=items,
        )

    def _next_bill_number(self, db: Session, restaurant_id: str) -> str:
        """Allocate the next number; the counter restarts every calendar year."""
        year = datetime.now(timezone.utc).year
        sequence = db.scalar(
            select(BillSequence)
            .where(BillSequence.restaurant_id == restaurant_id)
            .with_for_update()
        )
        if sequence is None:
            sequence = BillSequence(restaurant_id=restaurant_id, year=year, last_number=0)
            db.add(sequence)
        elif sequence.year != year:
            sequence.year = year
            sequence.last_number = 0

        sequence.last_number += 1
        return format_bill_number(year, sequence.last_number)
