"""
Centralized constants for the backend application.
Avoids magic strings for statuses shared by models, services and schemas.

Usage:
    from shared.config.constants import OrderStatus, BillStatus

    if order.status != OrderStatus.SERVED:
        ...
"""

from typing import Final


# =============================================================================
# Order lifecycle
# =============================================================================


class OrderStatus:
    """Order status constants."""

    PENDING: Final[str] = "PENDING"
    ACCEPTED: Final[str] = "ACCEPTED"
    PREPARING: Final[str] = "PREPARING"
    SERVED: Final[str] = "SERVED"
    CANCELLED: Final[str] = "CANCELLED"

    ALL: Final[list[str]] = [PENDING, ACCEPTED, PREPARING, SERVED, CANCELLED]
    TERMINAL: Final[frozenset[str]] = frozenset({SERVED, CANCELLED})


# Allowed forward transitions; CANCELLED is reachable from every non-terminal state
ORDER_TRANSITIONS: Final[dict[str, frozenset[str]]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.ACCEPTED, OrderStatus.CANCELLED}),
    OrderStatus.ACCEPTED: frozenset({OrderStatus.PREPARING, OrderStatus.CANCELLED}),
    OrderStatus.PREPARING: frozenset({OrderStatus.SERVED, OrderStatus.CANCELLED}),
    OrderStatus.SERVED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}


class OrderType:
    """How the order is fulfilled."""

    DINE_IN: Final[str] = "DINE_IN"
    TAKEAWAY: Final[str] = "TAKEAWAY"
    DELIVERY: Final[str] = "DELIVERY"

    ALL: Final[list[str]] = [DINE_IN, TAKEAWAY, DELIVERY]


# =============================================================================
# Billing
# =============================================================================


class BillStatus:
    """Bill status constants."""

    OPEN: Final[str] = "OPEN"
    CLOSED: Final[str] = "CLOSED"


class PaymentStatus:
    """Payment status constants."""

    PENDING: Final[str] = "PENDING"
    PROCESSING: Final[str] = "PROCESSING"
    SUCCEEDED: Final[str] = "SUCCEEDED"
    FAILED: Final[str] = "FAILED"

    ALL: Final[list[str]] = [PENDING, PROCESSING, SUCCEEDED, FAILED]


class PaymentMethod:
    """Payment method constants."""

    CASH: Final[str] = "CASH"
    UPI: Final[str] = "UPI"
    CARD: Final[str] = "CARD"
    QR: Final[str] = "QR"
    WALLET: Final[str] = "WALLET"
    NETBANKING: Final[str] = "NETBANKING"

    ALL: Final[list[str]] = [CASH, UPI, CARD, QR, WALLET, NETBANKING]


class PaymentGateway:
    """Provider names stored on Payment.gateway."""

    CASH: Final[str] = "cash"
    MOCK: Final[str] = "mock"
    CASHFREE: Final[str] = "cashfree"


class WebhookEventStatus:
    """Outcome of a processed gateway webhook."""

    PROCESSED: Final[str] = "PROCESSED"
    IGNORED: Final[str] = "IGNORED"


# =============================================================================
# Limits
# =============================================================================


class Limits:
    """Input limits for order intake."""

    MAX_ITEMS_PER_ORDER: Final[int] = 100
    MAX_QUANTITY_PER_ITEM: Final[int] = 999
    MAX_NOTES_LENGTH: Final[int] = 500
