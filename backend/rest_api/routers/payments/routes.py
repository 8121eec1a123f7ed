"""
Payments router.
Handles payment creation, client-side verification and Cashfree webhooks.

Gateway calls go through the providers in rest_api.services.payments, which
are wrapped in a circuit breaker; all bill arithmetic happens in
PaymentReconciler.
"""

from fastapi import APIRouter, Depends, Header, Request, Response, status
from starlette.concurrency import run_in_threadpool

from shared.config.settings import settings
from shared.infrastructure.db import UnitOfWork
from shared.security.rate_limit import limiter
from shared.utils.schemas import (
    CreatePaymentRequest,
    PaymentOutput,
    PaymentResponse,
    VerifyPaymentRequest,
    VerifyPaymentResponse,
    WebhookAck,
)
from rest_api.routers._common import get_providers, get_uow
from rest_api.services.payments import (
    CashfreeWebhookHandler,
    PaymentReconciler,
    PaymentService,
    ProviderRegistry,
)


router = APIRouter(prefix="/api/payments", tags=["payments"])


@router.post("", response_model=PaymentResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(settings.payment_rate_limit)
def create_payment(
    request: Request,
    response: Response,
    body: CreatePaymentRequest,
    uow: UnitOfWork = Depends(get_uow),
    providers: ProviderRegistry = Depends(get_providers),
) -> PaymentResponse:
    """
    Open a payment against a bill.

    CASH payments are settled immediately; other methods return a PENDING
    payment with the gateway's payment link. Returns 200 with the original
    payment when the idempotencyKey was already used for this bill.
    """
    payment, created = PaymentService(uow, providers).create_payment(
        bill_id=body.bill_id,
        method=body.method,
        amount_cents=body.amount,
        provider_name=body.provider,
        idempotency_key=body.idempotency_key,
    )
    if not created:
        response.status_code = status.HTTP_200_OK
    return PaymentResponse(payment=PaymentOutput.model_validate(payment))


@router.post("/verify", response_model=VerifyPaymentResponse)
@limiter.limit(settings.payment_rate_limit)
def verify_payment(
    request: Request,
    body: VerifyPaymentRequest,
    uow: UnitOfWork = Depends(get_uow),
    providers: ProviderRegistry = Depends(get_providers),
) -> VerifyPaymentResponse:
    """
    Reconcile a payment with the gateway.

    gatewayResponse is what the client received from the gateway; when it is
    omitted the status is fetched from the gateway directly.
    """
    result = PaymentReconciler(uow, providers).verify_payment(body.payment_id, body.gateway_response)
    return VerifyPaymentResponse(
        success=result.success,
        payment_id=result.payment_id,
        status=result.status,
        amount=result.amount_cents,
        method=result.method,
    )


@router.post("/webhook/cashfree", response_model=WebhookAck)
async def cashfree_webhook(
    request: Request,
    x_webhook_signature: str | None = Header(default=None),
    x_webhook_timestamp: str | None = Header(default=None),
    uow: UnitOfWork = Depends(get_uow),
    providers: ProviderRegistry = Depends(get_providers),
) -> WebhookAck:
    """
    Cashfree payment webhook.

    The raw body is needed for signature verification, so it is read here and
    processing runs in the threadpool like the synchronous endpoints.
    """
    raw_body = await request.body()
    handler = CashfreeWebhookHandler(uow, PaymentReconciler(uow, providers))
    await run_in_threadpool(handler.handle, raw_body, x_webhook_signature, x_webhook_timestamp)
    return WebhookAck(received=True)
