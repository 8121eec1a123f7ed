"""
Payment creation.

Opens a PENDING payment against an OPEN bill through its provider. Cash is
settled on the spot through the reconciler, so the bill is updated in the same
request. A client that resubmits with the same idempotency key gets the
original payment back instead of a second one.
"""

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from shared.config.constants import BillStatus, PaymentGateway, PaymentMethod, PaymentStatus
from shared.config.logging import get_logger
from shared.config.settings import settings
from shared.infrastructure.db import UnitOfWork
from shared.utils.exceptions import (
    ConflictError,
    InvalidStateError,
    NotFoundError,
    PaymentAmountError,
    ValidationError,
)
from rest_api.models import Bill, Payment, new_id
from rest_api.services.domain.order_intake import validate_idempotency_key
from .providers import ProviderRegistry, get_provider_registry
from .reconciler import PaymentReconciler

logger = get_logger(__name__)


class PaymentService:
    def __init__(self, uow: UnitOfWork, providers: ProviderRegistry | None = None):
        self._uow = uow
        self._providers = providers or get_provider_registry()

    @property
    def _db(self) -> Session:
        return self._uow.session

    def get_payment(self, payment_id: str) -> Payment:
        payment = self._db.scalar(select(Payment).where(Payment.id == payment_id))
        if not payment:
            raise NotFoundError("Payment", payment_id)
        return payment

    def find_by_idempotency_key(self, bill_id: str, idempotency_key: str) -> Payment | None:
        return self._db.scalar(
            select(Payment).where(
                Payment.bill_id == bill_id,
                Payment.idempotency_key == idempotency_key,
            )
        )

    def create_payment(
        self,
        bill_id: str,
        method: str,
        amount_cents: int,
        provider_name: str | None = None,
        idempotency_key: str | None = None,
    ) -> tuple[Payment, bool]:
        """
        Create a payment for part or all of a bill's balance.

        Returns (payment, created) tuple. created is False when the
        idempotency key was already used for this bill; the original payment
        is returned even if it has since closed the bill.
        Raises:
            ValidationError: unknown method or provider, bad idempotency key
            PaymentAmountError: amount not positive or above the balance
            NotFoundError: bill missing
            InvalidStateError: bill already closed
            ConflictError: a concurrent insert won but cannot be read back
            GatewayError: the provider could not open the payment
        """
        if method not in PaymentMethod.ALL:
            raise ValidationError(f"Invalid payment method '{method}'", value=method)
        if isinstance(amount_cents, bool) or not isinstance(amount_cents, int) or amount_cents <= 0:
            raise PaymentAmountError(amount_cents, "must be a positive integer amount in minor units")
        if idempotency_key is not None:
            idempotency_key = validate_idempotency_key(idempotency_key)
            existing = self.find_by_idempotency_key(bill_id, idempotency_key)
            if existing:
                logger.info(
                    "Payment replayed",
                    payment_id=existing.id,
                    bill_id=bill_id,
                    idempotency_key=idempotency_key,
                )
                return existing, False

        bill = self._db.scalar(select(Bill).where(Bill.id == bill_id))
        if not bill:
            raise NotFoundError("Bill", bill_id)
        if bill.status != BillStatus.OPEN:
            raise InvalidStateError("Bill is already closed", bill_id=bill_id)
        if amount_cents > bill.balance_cents:
            raise PaymentAmountError(
                amount_cents,
                f"exceeds the bill balance of {bill.balance_cents}",
                bill_id=bill_id,
            )

        if method == PaymentMethod.CASH:
            gateway = PaymentGateway.CASH
        else:
            gateway = provider_name or settings.default_payment_provider
        provider = self._providers.get(gateway)

        payment = Payment(
            id=new_id(),
            bill_id=bill.id,
            method=method,
            amount_cents=amount_cents,
            status=PaymentStatus.PENDING,
            gateway=provider.name,
            idempotency_key=idempotency_key,
        )
        opened = provider.create_payment(payment, bill)
        payment.gateway_payment_id = opened.gateway_payment_id
        payment.payment_link = opened.payment_link
        payment.gateway_response = opened.raw or None

        try:
            with self._uow.transaction() as db:
                db.add(payment)
                db.flush()
        except IntegrityError:
            # A concurrent request with the same key committed first
            winner = self.find_by_idempotency_key(bill_id, idempotency_key) if idempotency_key else None
            if winner is None:
                raise ConflictError(
                    "Payment could not be created, please retry",
                    bill_id=bill_id,
                    idempotency_key=idempotency_key,
                )
            logger.info(
                "Payment creation lost race, returning winner",
                payment_id=winner.id,
                bill_id=bill_id,
                idempotency_key=idempotency_key,
            )
            return winner, False

        logger.info(
            "Payment created",
            payment_id=payment.id,
            bill_id=bill_id,
            method=method,
            gateway=payment.gateway,
            amount_cents=amount_cents,
        )

        if method == PaymentMethod.CASH:
            PaymentReconciler(self._uow, self._providers).apply_success(payment.id)

        return payment, True
