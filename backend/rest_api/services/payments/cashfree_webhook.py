"""
Cashfree webhook handling.

Cashfree signs each delivery as base64(HMAC-SHA256(secret, timestamp + body))
and may deliver the same event more than once. Every handled event is
recorded in WebhookEvent by cf_payment_id so redeliveries are acknowledged
without being applied twice.
"""

import base64
import hashlib
import hmac
import json
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from shared.config.constants import PaymentGateway, WebhookEventStatus
from shared.config.logging import get_logger, mask_secret
from shared.config.settings import settings
from shared.infrastructure.db import UnitOfWork
from shared.utils.exceptions import PaymentAmountError, ValidationError
from rest_api.models import Payment, WebhookEvent
from .reconciler import PaymentReconciler

logger = get_logger(__name__)

# Event types that carry a payment outcome
PAYMENT_EVENTS = frozenset({
    "PAYMENT_SUCCESS_WEBHOOK",
    "PAYMENT_FAILED_WEBHOOK",
    "PAYMENT_USER_DROPPED_WEBHOOK",
})

# Outcomes returned by handle()
DUPLICATE = "DUPLICATE"


def compute_signature(raw_body: bytes, timestamp: str, secret: str) -> str:
    digest = hmac.new(
        secret.encode("utf-8"),
        timestamp.encode("utf-8") + raw_body,
        hashlib.sha256,
    ).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_signature(raw_body: bytes, timestamp: str | None, signature: str | None, secret: str) -> bool:
    if not signature or timestamp is None or not secret:
        return False
    expected = compute_signature(raw_body, timestamp, secret)
    return hmac.compare_digest(expected, signature)


class CashfreeWebhookHandler:
    def __init__(
        self,
        uow: UnitOfWork,
        reconciler: PaymentReconciler,
        secret: str | None = None,
    ):
        self._uow = uow
        self._reconciler = reconciler
        self._secret = settings.cashfree_webhook_secret if secret is None else secret

    @property
    def _db(self) -> Session:
        return self._uow.session

    def handle(self, raw_body: bytes, signature: str | None, timestamp: str | None) -> str:
        """
        Verify, deduplicate and reconcile one webhook delivery.

        Returns the WebhookEventStatus recorded, or DUPLICATE for a redelivery.
        Raises:
            ValidationError: bad signature or malformed payload
            GatewayError: the payload could not be reconciled (Cashfree retries)
        """
        if not self._secret:
            logger.error("Cashfree webhook received but no webhook secret is configured")
            raise ValidationError("Invalid webhook signature")
        if not verify_signature(raw_body, timestamp, signature, self._secret):
            logger.warning("Cashfree webhook signature rejected", signature=mask_secret(signature))
            raise ValidationError("Invalid webhook signature", has_signature=bool(signature))

        try:
            payload = json.loads(raw_body)
        except ValueError:
            raise ValidationError("Invalid webhook payload")
        if not isinstance(payload, dict):
            raise ValidationError("Invalid webhook payload")

        event_type = str(payload.get("type") or "")
        data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
        payment_data = data.get("payment") if isinstance(data.get("payment"), dict) else {}
        order_data = data.get("order") if isinstance(data.get("order"), dict) else {}
        cf_payment_id = payment_data.get("cf_payment_id")
        if not cf_payment_id:
            raise ValidationError("Missing cf_payment_id")
        cf_payment_id = str(cf_payment_id)

        if self._db.scalar(select(WebhookEvent).where(WebhookEvent.gateway_event_id == cf_payment_id)):
            logger.info("Cashfree webhook already processed", cf_payment_id=cf_payment_id, event_type=event_type)
            return DUPLICATE

        payment_id = None
        status = WebhookEventStatus.IGNORED
        if event_type in PAYMENT_EVENTS:
            payment = self._find_payment(order_data.get("order_id"))
            if payment is None:
                logger.warning(
                    "Cashfree webhook for unknown payment",
                    cf_payment_id=cf_payment_id,
                    gateway_order_id=order_data.get("order_id"),
                )
            else:
                payment_id = payment.id
                status = self._reconcile(payment, payload, cf_payment_id)
        else:
            logger.info("Cashfree webhook ignored", event_type=event_type, cf_payment_id=cf_payment_id)

        return self._record(cf_payment_id, event_type, status, payment_id)

    def _find_payment(self, gateway_order_id: Any) -> Payment | None:
        if not gateway_order_id:
            return None
        return self._db.scalar(
            select(Payment).where(
                Payment.gateway == PaymentGateway.CASHFREE,
                Payment.gateway_payment_id == str(gateway_order_id),
            )
        )

    def _reconcile(self, payment: Payment, payload: dict[str, Any], cf_payment_id: str) -> str:
        try:
            result = self._reconciler.verify_payment(payment.id, payload)
        except PaymentAmountError:
            # Already logged for refund; acknowledging stops Cashfree redelivering
            return WebhookEventStatus.IGNORED

        logger.info(
            "Cashfree webhook reconciled",
            cf_payment_id=cf_payment_id,
            payment_id=payment.id,
            status=result.status,
        )
        return WebhookEventStatus.PROCESSED

    def _record(self, cf_payment_id: str, event_type: str, status: str, payment_id: str | None) -> str:
        try:
            with self._uow.transaction() as db:
                db.add(
                    WebhookEvent(
                        gateway=PaymentGateway.CASHFREE,
                        gateway_event_id=cf_payment_id,
                        event_type=event_type or "UNKNOWN",
                        status=status,
                        payment_id=payment_id,
                    )
                )
        except IntegrityError:
            logger.info("Cashfree webhook recorded concurrently", cf_payment_id=cf_payment_id)
            return DUPLICATE
        return status
