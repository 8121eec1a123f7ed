"""
SQLAlchemy ORM Models Package.

All models are organized into domain-specific modules:
- base: Base class and AuditMixin
- restaurant: Restaurant, Table, MenuItem
- order: Order, OrderItem
- billing: Bill, BillItem, BillSequence, Payment
- webhook: WebhookEvent
"""

# Base classes
from .base import Base, AuditMixin, new_id, utcnow

# Tenant lookups
from .restaurant import Restaurant, Table, MenuItem

# Orders
from .order import Order, OrderItem

# Billing
from .billing import Bill, BillItem, BillSequence, Payment

# Gateway callbacks
from .webhook import WebhookEvent

__all__ = [
    "Base",
    "AuditMixin",
    "new_id",
    "utcnow",
    "Restaurant",
    "Table",
    "MenuItem",
    "Order",
    "OrderItem",
    "Bill",
    "BillItem",
    "BillSequence",
    "Payment",
    "WebhookEvent",
]
