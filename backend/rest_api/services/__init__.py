"""
Services module for business logic.

- domain/: order intake and bill generation
- payments/: payment creation, reconciliation and gateway integrations

Usage:
    from rest_api.services.domain import BillGeneratorService
    service = BillGeneratorService(uow)
    bill, created = service.create_bill_from_order(order_id)
"""
