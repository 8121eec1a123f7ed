"""
Payment Reconciler.

Brings a Payment and its Bill in line with what the gateway reports.

Rules:
- paid_cents is always the sum of SUCCEEDED payments, and never exceeds total
- balance_cents = total_cents - paid_cents
- the bill closes when the balance reaches zero and is never reopened here
- a SUCCEEDED payment is never downgraded
"""

from dataclasses import dataclass
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from shared.config.constants import BillStatus, PaymentStatus
from shared.config.logging import get_logger
from shared.infrastructure.db import UnitOfWork
from shared.utils.exceptions import GatewayError, NotFoundError, PaymentAmountError
from rest_api.models import Bill, Payment, utcnow
from .providers import GatewayResult, ProviderRegistry, get_provider_registry

logger = get_logger(__name__)


@dataclass(frozen=True)
class VerifyResult:
    success: bool
    payment_id: str
    status: str
    amount_cents: int
    method: str

    @classmethod
    def of(cls, payment: Payment) -> "VerifyResult":
        return cls(
            success=payment.status == PaymentStatus.SUCCEEDED,
            payment_id=payment.id,
            status=payment.status,
            amount_cents=payment.amount_cents,
            method=payment.method,
        )


def _locked(query):
    """SELECT ... FOR UPDATE, refreshing any copy already in the session."""
    return query.with_for_update().execution_options(populate_existing=True)


def succeeded_total(db: Session, bill_id: str, exclude_payment_id: str | None = None) -> int:
    query = select(func.coalesce(func.sum(Payment.amount_cents), 0)).where(
        Payment.bill_id == bill_id,
        Payment.status == PaymentStatus.SUCCEEDED,
    )
    if exclude_payment_id is not None:
        query = query.where(Payment.id != exclude_payment_id)
    return int(db.scalar(query) or 0)


class PaymentReconciler:
    def __init__(self, uow: UnitOfWork, providers: ProviderRegistry | None = None):
        self._uow = uow
        self._providers = providers or get_provider_registry()

    @property
    def _db(self) -> Session:
        return self._uow.session

    def _get_payment(self, payment_id: str) -> Payment:
        payment = self._db.scalar(select(Payment).where(Payment.id == payment_id))
        if not payment:
            raise NotFoundError("Payment", payment_id)
        return payment

    def verify_payment(
        self,
        payment_id: str,
        gateway_response: Any = None,
    ) -> VerifyResult:
        """
        Interpret the gateway's view of a payment and apply it.

        Re-verifying a payment that already SUCCEEDED returns the stored state
        without contacting the gateway.
        Raises:
            NotFoundError: payment missing
            GatewayError: response not understood (including a non-object
                response), or amount/id mismatch
            PaymentAmountError: applying the payment would overpay the bill
        """
        payment = self._get_payment(payment_id)
        if payment.status == PaymentStatus.SUCCEEDED:
            return VerifyResult.of(payment)

        provider = self._providers.get(payment.gateway)
        if gateway_response is not None and not isinstance(gateway_response, dict):
            raise GatewayError(
                provider.name,
                f"unrecognised response of type {type(gateway_response).__name__}",
                payment_id=payment.id,
            )
        result = provider.interpret(payment, gateway_response)
        self._check_integrity(payment, result)

        if result.status == PaymentStatus.SUCCEEDED:
            return self.apply_success(payment_id, raw=result.raw)
        return self._record_status(payment_id, result)

    def _check_integrity(self, payment: Payment, result: GatewayResult) -> None:
        if (
            result.gateway_payment_id
            and payment.gateway_payment_id
            and result.gateway_payment_id != payment.gateway_payment_id
        ):
            raise GatewayError(
                payment.gateway,
                "response belongs to another gateway payment",
                payment_id=payment.id,
                expected=payment.gateway_payment_id,
                received=result.gateway_payment_id,
            )
        if result.status == PaymentStatus.SUCCEEDED and result.amount_cents is None:
            raise GatewayError(payment.gateway, "success reported without amount", payment_id=payment.id)
        if result.amount_cents is not None and result.amount_cents != payment.amount_cents:
            raise GatewayError(
                payment.gateway,
                "amount mismatch",
                payment_id=payment.id,
                expected_cents=payment.amount_cents,
                reported_cents=result.amount_cents,
            )

    def apply_success(self, payment_id: str, raw: dict[str, Any] | None = None) -> VerifyResult:
        """
        Mark a payment SUCCEEDED and recompute its bill, atomically.

        The bill row is locked first, then the payment, for every caller.
        """
        bill_id = self._get_payment(payment_id).bill_id

        with self._uow.transaction() as db:
            bill = db.scalar(_locked(select(Bill).where(Bill.id == bill_id)))
            payment = db.scalar(_locked(select(Payment).where(Payment.id == payment_id)))
            if bill is None:
                raise NotFoundError("Bill", bill_id, payment_id=payment_id)

            if payment.status == PaymentStatus.SUCCEEDED:
                return VerifyResult.of(payment)

            new_paid = succeeded_total(db, bill.id, exclude_payment_id=payment.id) + payment.amount_cents
            if new_paid > bill.total_cents:
                logger.error(
                    "Overpayment rejected, refund required",
                    payment_id=payment.id,
                    bill_id=bill.id,
                    amount_cents=payment.amount_cents,
                    total_cents=bill.total_cents,
                    paid_cents=bill.paid_cents,
                    gateway=payment.gateway,
                    gateway_payment_id=payment.gateway_payment_id,
                )
                raise PaymentAmountError(
                    payment.amount_cents,
                    "exceeds the bill balance",
                    payment_id=payment.id,
                    bill_id=bill.id,
                )

            now = utcnow()
            payment.status = PaymentStatus.SUCCEEDED
            payment.succeeded_at = now
            if raw:
                payment.gateway_response = raw

            bill.paid_cents = new_paid
            bill.balance_cents = bill.total_cents - new_paid
            if bill.balance_cents <= 0 and bill.status != BillStatus.CLOSED:
                bill.status = BillStatus.CLOSED
                bill.closed_at = now

        logger.info(
            "Payment succeeded",
            payment_id=payment.id,
            bill_id=bill.id,
            amount_cents=payment.amount_cents,
            paid_cents=bill.paid_cents,
            balance_cents=bill.balance_cents,
            bill_status=bill.status,
        )
        return VerifyResult.of(payment)

    def _record_status(self, payment_id: str, result: GatewayResult) -> VerifyResult:
        with self._uow.transaction() as db:
            payment = db.scalar(_locked(select(Payment).where(Payment.id == payment_id)))
            if payment.status == PaymentStatus.SUCCEEDED:
                return VerifyResult.of(payment)

            old_status = payment.status
            payment.status = result.status
            if result.raw:
                payment.gateway_response = result.raw
            if result.status == PaymentStatus.FAILED and payment.failed_at is None:
                payment.failed_at = utcnow()

        if old_status != result.status:
            logger.info(
                "Payment status updated",
                payment_id=payment_id,
                from_status=old_status,
                to_status=result.status,
            )
        return VerifyResult.of(payment)
