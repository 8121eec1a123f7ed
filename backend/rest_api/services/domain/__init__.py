"""
Domain Services - Application Layer.

Structure:
    Router (thin controller)
        ↓
    Service (business logic)  ← YOU ARE HERE
        ↓
    Model (entity)

Services receive a UnitOfWork and own their transactions.

Usage:
    from rest_api.services.domain import OrderIntakeService

    # In router
    service = OrderIntakeService(uow)
    order, created = service.create_order(...)
"""

from .order_intake import OrderIntakeService
from .bill_generator import BillGeneratorService

__all__ = [
    "OrderIntakeService",
    "BillGeneratorService",
]
