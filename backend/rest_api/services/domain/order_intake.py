"""
Order Intake Domain Service.

Creates orders exactly once per (restaurant, idempotency key), no matter how
many times a client resubmits the same request.
"""

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import selectinload

from shared.config.constants import ORDER_TRANSITIONS, Limits, OrderStatus, OrderType
from shared.config.logging import get_logger
from shared.config.settings import settings
from shared.infrastructure.db import UnitOfWork
from shared.utils.exceptions import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from rest_api.models import MenuItem, Order, OrderItem, Restaurant, Table

logger = get_logger(__name__)


def merge_items(items: list[tuple[str, int]]) -> list[tuple[str, int]]:
    """
    Validate requested lines and merge repeated menu items by summing quantities.

    First-seen order is preserved.
    """
    if not items:
        raise ValidationError("items are required")
    if len(items) > Limits.MAX_ITEMS_PER_ORDER:
        raise ValidationError(
            f"An order can have at most {Limits.MAX_ITEMS_PER_ORDER} items",
            count=len(items),
        )

    merged: dict[str, int] = {}
    for menu_item_id, quantity in items:
        if not menu_item_id:
            raise ValidationError("menuItemId is required")
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise ValidationError(
                "quantity must be a positive integer",
                menu_item_id=menu_item_id,
                value=quantity,
            )
        merged[menu_item_id] = merged.get(menu_item_id, 0) + quantity

    for menu_item_id, quantity in merged.items():
        if quantity > Limits.MAX_QUANTITY_PER_ITEM:
            raise ValidationError(
                f"quantity cannot exceed {Limits.MAX_QUANTITY_PER_ITEM}",
                menu_item_id=menu_item_id,
                value=quantity,
            )

    return list(merged.items())


def validate_idempotency_key(idempotency_key: str | None) -> str:
    if idempotency_key is None or not idempotency_key.strip():
        raise ValidationError("idempotencyKey is required")
    if len(idempotency_key) > settings.idempotency_key_max_length:
        raise ValidationError(
            f"idempotencyKey cannot exceed {settings.idempotency_key_max_length} characters",
            length=len(idempotency_key),
        )
    return idempotency_key


class OrderIntakeService:
    """
    Domain service for order creation and the order lifecycle.

    The existence check is an optimisation; the database unique constraint on
    (restaurant_id, idempotency_key) is what actually guarantees a single order.
    """

    def __init__(self, uow: UnitOfWork):
        self._uow = uow

    @property
    def _db(self):
        return self._uow.session

    def find_by_idempotency_key(self, restaurant_id: str, idempotency_key: str) -> Order | None:
        return self._db.scalar(
            select(Order)
            .options(selectinload(Order.items))
            .where(
                Order.restaurant_id == restaurant_id,
                Order.idempotency_key == idempotency_key,
            )
        )

    def create_order(
        self,
        restaurant_id: str,
        items: list[tuple[str, int]],
        idempotency_key: str,
        type: str = OrderType.DINE_IN,
        table_id: str | None = None,
        is_priority: bool = False,
        notes: str | None = None,
    ) -> tuple[Order, bool]:
        """
        Create an order, or return the one already created with this key.

        Returns (order, created) tuple. created is False for a replay.
        Raises:
            ValidationError: bad items, key, type or notes
            NotFoundError: restaurant, table or menu items missing
            ConflictError: a concurrent insert won but cannot be read back
        """
        idempotency_key = validate_idempotency_key(idempotency_key)
        lines = merge_items(items)
        if type not in OrderType.ALL:
            raise ValidationError(f"Invalid order type '{type}'", value=type)
        if notes is not None and len(notes) > Limits.MAX_NOTES_LENGTH:
            raise ValidationError(f"notes cannot exceed {Limits.MAX_NOTES_LENGTH} characters")

        existing = self.find_by_idempotency_key(restaurant_id, idempotency_key)
        if existing:
            logger.info(
                "Order replayed",
                order_id=existing.id,
                restaurant_id=restaurant_id,
                idempotency_key=idempotency_key,
            )
            return existing, False

        try:
            with self._uow.transaction() as db:
                order = self._build_order(
                    db, restaurant_id, lines, idempotency_key, type, table_id, is_priority, notes
                )
                db.add(order)
                db.flush()
        except IntegrityError:
            # A concurrent request with the same key committed first
            winner = self.find_by_idempotency_key(restaurant_id, idempotency_key)
            if winner is None:
                raise ConflictError(
                    "Order could not be created, please retry",
                    restaurant_id=restaurant_id,
                    idempotency_key=idempotency_key,
                )
            logger.info(
                "Order creation lost race, returning winner",
                order_id=winner.id,
                restaurant_id=restaurant_id,
                idempotency_key=idempotency_key,
            )
            return winner, False

        logger.info(
            "Order created",
            order_id=order.id,
            restaurant_id=restaurant_id,
            table_id=table_id,
            items_count=len(order.items),
            total_cents=order.total_cents,
        )
        return order, True

    def _build_order(
        self,
        db,
        restaurant_id: str,
        lines: list[tuple[str, int]],
        idempotency_key: str,
        type: str,
        table_id: str | None,
        is_priority: bool,
        notes: str | None,
    ) -> Order:
        restaurant = db.scalar(
            select(Restaurant).where(
                Restaurant.id == restaurant_id,
                Restaurant.is_active.is_(True),
            )
        )
        if not restaurant:
            raise NotFoundError("Restaurant", restaurant_id)

        if table_id is not None:
            table = db.scalar(
                select(Table).where(
                    Table.id == table_id,
                    Table.restaurant_id == restaurant_id,
                    Table.is_active.is_(True),
                )
            )
            if not table:
                raise NotFoundError("Table", table_id, restaurant_id=restaurant_id)

        menu_item_ids = [menu_item_id for menu_item_id, _ in lines]
        menu_items = {
            item.id: item
            for item in db.execute(
                select(MenuItem).where(
                    MenuItem.id.in_(menu_item_ids),
                    MenuItem.restaurant_id == restaurant_id,
                    MenuItem.is_active.is_(True),
                    MenuItem.is_available.is_(True),
                )
            ).scalars()
        }
        missing = [menu_item_id for menu_item_id in menu_item_ids if menu_item_id not in menu_items]
        if missing:
            raise NotFoundError(
                "Menu items",
                ", ".join(missing),
                restaurant_id=restaurant_id,
            )

        order = Order(
            restaurant_id=restaurant_id,
            table_id=table_id,
            status=OrderStatus.PENDING,
            type=type,
            idempotency_key=idempotency_key,
            is_priority=is_priority,
            notes=notes,
        )
        total_cents = 0
        for position, (menu_item_id, quantity) in enumerate(lines):
            price_cents = menu_items[menu_item_id].price_cents
            order.items.append(
                OrderItem(
                    menu_item_id=menu_item_id,
                    position=position,
                    quantity=quantity,
                    price_cents=price_cents,
                )
            )
            total_cents += price_cents * quantity
        order.total_cents = total_cents
        return order

    def get_order(self, order_id: str) -> Order:
        """Raises NotFoundError if the order does not exist."""
        order = self._db.scalar(
            select(Order).options(selectinload(Order.items)).where(Order.id == order_id)
        )
        if not order:
            raise NotFoundError("Order", order_id)
        return order

    def update_status(self, order_id: str, new_status: str) -> Order:
        """
        Move an order along its lifecycle.

        Setting the status the order already has is a no-op, so a replayed
        status update succeeds.
        Raises:
            NotFoundError: order missing
            ValidationError: unknown status
            InvalidTransitionError: transition not allowed
        """
        if new_status not in OrderStatus.ALL:
            raise ValidationError(f"Invalid order status '{new_status}'", value=new_status)

        with self._uow.transaction() as db:
            order = db.scalar(
                select(Order).where(Order.id == order_id).with_for_update()
            )
            if not order:
                raise NotFoundError("Order", order_id)

            old_status = order.status
            if old_status == new_status:
                return order
            if new_status not in ORDER_TRANSITIONS.get(old_status, frozenset()):
                raise InvalidTransitionError("order", old_status, new_status, order_id=order_id)

            order.status = new_status

        logger.info(
            "Order status updated",
            order_id=order_id,
            from_status=old_status,
            to_status=new_status,
        )
        return order
