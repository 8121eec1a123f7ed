"""
Orders router.
Handles QR order submission, order status and bill generation.

Order submission is idempotent: the client sends an idempotencyKey and any
resubmission with the same key gets the original order back with 200.
"""

from fastapi import APIRouter, Depends, Request, Response, status

from shared.config.settings import settings
from shared.infrastructure.db import UnitOfWork
from shared.security.rate_limit import limiter
from shared.utils.schemas import (
    BillOutput,
    BillResponse,
    CreateOrderRequest,
    OrderOutput,
    OrderResponse,
    UpdateOrderStatusRequest,
)
from rest_api.routers._common import get_uow
from rest_api.services.domain import BillGeneratorService, OrderIntakeService


router = APIRouter(prefix="/api/orders", tags=["orders"])


@router.post("", response_model=OrderResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(settings.order_rate_limit)
def create_order(
    request: Request,
    response: Response,
    body: CreateOrderRequest,
    uow: UnitOfWork = Depends(get_uow),
) -> OrderResponse:
    """
    Submit an order.

    Returns 201 with the new order, or 200 with the original order when the
    idempotencyKey was already used for this restaurant.
    """
    order, created = OrderIntakeService(uow).create_order(
        restaurant_id=body.restaurant_id,
        items=[(item.menu_item_id, item.quantity) for item in body.items],
        idempotency_key=body.idempotency_key,
        type=body.type,
        table_id=body.table_id,
        is_priority=body.is_priority,
        notes=body.notes,
    )
    if not created:
        response.status_code = status.HTTP_200_OK
    return OrderResponse(order=OrderOutput.model_validate(order))


@router.get("/{order_id}", response_model=OrderResponse)
def get_order(
    order_id: str,
    uow: UnitOfWork = Depends(get_uow),
) -> OrderResponse:
    order = OrderIntakeService(uow).get_order(order_id)
    return OrderResponse(order=OrderOutput.model_validate(order))


@router.patch("/{order_id}/status", response_model=OrderResponse)
def update_order_status(
    order_id: str,
    body: UpdateOrderStatusRequest,
    uow: UnitOfWork = Depends(get_uow),
) -> OrderResponse:
    """
    Move an order along PENDING -> ACCEPTED -> PREPARING -> SERVED,
    or cancel it before it is served.
    """
    service = OrderIntakeService(uow)
    service.update_status(order_id, body.status)
    return OrderResponse(order=OrderOutput.model_validate(service.get_order(order_id)))


@router.post("/{order_id}/generate-bill", response_model=BillResponse)
def generate_bill(
    order_id: str,
    uow: UnitOfWork = Depends(get_uow),
) -> BillResponse:
    """
    Create the bill for a SERVED order.

    Calling this again for the same order returns the existing bill.
    """
    bill, _ = BillGeneratorService(uow).create_bill_from_order(order_id)
    return BillResponse(bill=BillOutput.model_validate(bill), order_id=order_id)
