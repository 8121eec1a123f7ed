"""
Tests for PaymentService and PaymentReconciler.

Bills in these tests come from make_bill: dosa x2 + chai x1, subtotal 27000,
GST 18% -> total 31860.
"""

import json
from unittest.mock import patch

import httpx
import pytest
from sqlalchemy import func, select

from rest_api.models import Payment
from rest_api.services.payments import (
    CashfreeProvider,
    CircuitBreaker,
    CircuitBreakerConfig,
    PaymentReconciler,
    PaymentService,
)
from shared.config.constants import BillStatus, PaymentGateway, PaymentMethod, PaymentStatus
from shared.utils.exceptions import (
    ConflictError,
    GatewayError,
    InvalidStateError,
    PaymentAmountError,
    ValidationError,
)

TOTAL = 31860


def refreshed(db_session, entity):
    db_session.refresh(entity)
    return entity


def count_payments(db_session, bill_id) -> int:
    return db_session.scalar(select(func.count()).select_from(Payment).where(Payment.bill_id == bill_id))


class TestCreatePayment:
    def test_online_payment_starts_pending(self, uow, providers, make_bill):
        bill = make_bill()

        payment, _ = PaymentService(uow, providers).create_payment(bill.id, PaymentMethod.UPI, TOTAL)

        assert payment.status == PaymentStatus.PENDING
        assert payment.gateway == PaymentGateway.MOCK
        assert payment.gateway_payment_id == f"mock_{payment.id}"
        assert payment.payment_link

    def test_cash_settles_immediately(self, uow, db_session, providers, make_bill):
        bill = make_bill()

        payment, _ = PaymentService(uow, providers).create_payment(bill.id, PaymentMethod.CASH, TOTAL)

        bill = refreshed(db_session, bill)
        assert refreshed(db_session, payment).status == PaymentStatus.SUCCEEDED
        assert bill.status == BillStatus.CLOSED
        assert bill.paid_cents == TOTAL
        assert bill.balance_cents == 0

    def test_amount_above_balance(self, uow, providers, make_bill):
        bill = make_bill()

        with pytest.raises(PaymentAmountError):
            PaymentService(uow, providers).create_payment(bill.id, PaymentMethod.UPI, TOTAL + 1)

    @pytest.mark.parametrize("amount", [0, -100, 10.5])
    def test_amount_must_be_positive_integer(self, uow, providers, make_bill, amount):
        bill = make_bill()

        with pytest.raises(PaymentAmountError):
            PaymentService(uow, providers).create_payment(bill.id, PaymentMethod.UPI, amount)

    def test_closed_bill(self, uow, providers, make_bill):
        bill = make_bill()
        service = PaymentService(uow, providers)
        service.create_payment(bill.id, PaymentMethod.CASH, TOTAL)

        with pytest.raises(InvalidStateError):
            service.create_payment(bill.id, PaymentMethod.UPI, 100)

    def test_unknown_method(self, uow, providers, make_bill):
        bill = make_bill()

        with pytest.raises(ValidationError):
            PaymentService(uow, providers).create_payment(bill.id, "CHEQUE", 100)

    def test_unknown_provider(self, uow, providers, make_bill):
        bill = make_bill()

        with pytest.raises(ValidationError):
            PaymentService(uow, providers).create_payment(
                bill.id, PaymentMethod.CARD, 100, provider_name="paypal"
            )


class TestPaymentIdempotency:
    def test_resubmitted_cash_payment_is_applied_once(self, uow, db_session, providers, make_bill):
        bill = make_bill()
        service = PaymentService(uow, providers)

        first, created = service.create_payment(bill.id, PaymentMethod.CASH, TOTAL // 2, idempotency_key="pay-1")
        second, replayed = service.create_payment(bill.id, PaymentMethod.CASH, TOTAL // 2, idempotency_key="pay-1")

        bill = refreshed(db_session, bill)
        assert created is True
        assert replayed is False
        assert second.id == first.id
        assert count_payments(db_session, bill.id) == 1
        assert bill.paid_cents == TOTAL // 2
        assert bill.status == BillStatus.OPEN

    def test_resubmission_after_bill_closed_returns_original(self, uow, db_session, providers, make_bill):
        bill = make_bill()
        service = PaymentService(uow, providers)
        first, _ = service.create_payment(bill.id, PaymentMethod.CASH, TOTAL, idempotency_key="pay-full")

        again, created = service.create_payment(bill.id, PaymentMethod.CASH, TOTAL, idempotency_key="pay-full")

        assert created is False
        assert again.id == first.id
        assert again.status == PaymentStatus.SUCCEEDED
        assert refreshed(db_session, bill).paid_cents == TOTAL

    def test_key_is_scoped_to_the_bill(self, uow, providers, make_bill):
        service = PaymentService(uow, providers)

        first, _ = service.create_payment(make_bill().id, PaymentMethod.UPI, 100, idempotency_key="shared")
        second, created = service.create_payment(make_bill().id, PaymentMethod.UPI, 100, idempotency_key="shared")

        assert created is True
        assert second.id != first.id

    def test_blank_key_is_rejected(self, uow, providers, make_bill):
        bill = make_bill()

        with pytest.raises(ValidationError):
            PaymentService(uow, providers).create_payment(bill.id, PaymentMethod.UPI, 100, idempotency_key="  ")

    def test_concurrent_insert_returns_winner(self, uow, db_session, providers, make_bill):
        """The loser of a race on the unique key gets the winner back."""
        bill = make_bill()
        winner = Payment(
            bill_id=bill.id,
            method=PaymentMethod.UPI,
            amount_cents=1000,
            status=PaymentStatus.PENDING,
            idempotency_key="race-key",
        )
        db_session.add(winner)
        db_session.commit()

        original = PaymentService.find_by_idempotency_key
        calls = []

        def miss_first_lookup(self, bill_id, idempotency_key):
            calls.append(idempotency_key)
            if len(calls) == 1:
                return None
            return original(self, bill_id, idempotency_key)

        with patch.object(PaymentService, "find_by_idempotency_key", miss_first_lookup):
            payment, created = PaymentService(uow, providers).create_payment(
                bill.id, PaymentMethod.UPI, 1000, idempotency_key="race-key"
            )

        assert created is False
        assert payment.id == winner.id
        assert len(calls) == 2
        assert count_payments(db_session, bill.id) == 1

    def test_race_without_readable_winner_is_conflict(self, uow, db_session, providers, make_bill):
        bill = make_bill()
        db_session.add(
            Payment(
                bill_id=bill.id,
                method=PaymentMethod.UPI,
                amount_cents=1000,
                status=PaymentStatus.PENDING,
                idempotency_key="race-key",
            )
        )
        db_session.commit()

        with patch.object(PaymentService, "find_by_idempotency_key", lambda self, bill_id, key: None):
            with pytest.raises(ConflictError):
                PaymentService(uow, providers).create_payment(
                    bill.id, PaymentMethod.UPI, 1000, idempotency_key="race-key"
                )

        assert count_payments(db_session, bill.id) == 1


class TestVerifyPayment:
    def test_full_payment_closes_bill(self, uow, db_session, providers, make_bill):
        bill = make_bill()
        payment, _ = PaymentService(uow, providers).create_payment(bill.id, PaymentMethod.UPI, TOTAL)

        result = PaymentReconciler(uow, providers).verify_payment(
            payment.id, {"status": "SUCCESS", "amount": TOTAL}
        )

        bill = refreshed(db_session, bill)
        assert result.success is True
        assert result.status == PaymentStatus.SUCCEEDED
        assert result.amount_cents == TOTAL
        assert bill.status == BillStatus.CLOSED
        assert bill.balance_cents == 0
        assert bill.closed_at is not None

    def test_partial_payments_accumulate(self, uow, db_session, providers, make_bill):
        bill = make_bill()
        payments = PaymentService(uow, providers)
        reconciler = PaymentReconciler(uow, providers)
        first, _ = payments.create_payment(bill.id, PaymentMethod.UPI, 20000)
        second, _ = payments.create_payment(bill.id, PaymentMethod.CARD, TOTAL - 20000)

        reconciler.verify_payment(first.id, {"status": "SUCCESS", "amount": 20000})
        bill = refreshed(db_session, bill)
        assert bill.status == BillStatus.OPEN
        assert bill.paid_cents == 20000
        assert bill.balance_cents == TOTAL - 20000

        reconciler.verify_payment(second.id, {"status": "SUCCESS", "amount": TOTAL - 20000})
        bill = refreshed(db_session, bill)
        assert bill.status == BillStatus.CLOSED
        assert bill.paid_cents == TOTAL

    def test_reverify_does_not_double_count(self, uow, db_session, providers, make_bill):
        bill = make_bill()
        payment, _ = PaymentService(uow, providers).create_payment(bill.id, PaymentMethod.UPI, 10000)
        reconciler = PaymentReconciler(uow, providers)

        reconciler.verify_payment(payment.id, {"status": "SUCCESS", "amount": 10000})
        reconciler.verify_payment(payment.id, {"status": "SUCCESS", "amount": 10000})

        assert refreshed(db_session, bill).paid_cents == 10000

    def test_succeeded_payment_is_not_downgraded(self, uow, db_session, providers, make_bill):
        bill = make_bill()
        payment, _ = PaymentService(uow, providers).create_payment(bill.id, PaymentMethod.UPI, 10000)
        reconciler = PaymentReconciler(uow, providers)
        reconciler.verify_payment(payment.id, {"status": "SUCCESS", "amount": 10000})

        result = reconciler.verify_payment(payment.id, {"status": "FAILED"})

        assert result.status == PaymentStatus.SUCCEEDED
        assert refreshed(db_session, bill).paid_cents == 10000

    def test_failed_payment_leaves_bill_untouched(self, uow, db_session, providers, make_bill):
        bill = make_bill()
        payment, _ = PaymentService(uow, providers).create_payment(bill.id, PaymentMethod.UPI, TOTAL)

        result = PaymentReconciler(uow, providers).verify_payment(payment.id, {"status": "FAILED"})

        assert result.success is False
        assert refreshed(db_session, payment).failed_at is not None
        bill = refreshed(db_session, bill)
        assert bill.status == BillStatus.OPEN
        assert bill.paid_cents == 0

    def test_amount_mismatch_is_rejected(self, uow, db_session, providers, make_bill):
        bill = make_bill()
        payment, _ = PaymentService(uow, providers).create_payment(bill.id, PaymentMethod.UPI, TOTAL)

        with pytest.raises(GatewayError) as exc_info:
            PaymentReconciler(uow, providers).verify_payment(
                payment.id, {"status": "SUCCESS", "amount": 100}
            )

        assert exc_info.value.status_code == 502
        assert refreshed(db_session, payment).status == PaymentStatus.PENDING
        assert refreshed(db_session, bill).paid_cents == 0

    def test_unknown_gateway_status(self, uow, providers, make_bill):
        bill = make_bill()
        payment, _ = PaymentService(uow, providers).create_payment(bill.id, PaymentMethod.UPI, TOTAL)

        with pytest.raises(GatewayError):
            PaymentReconciler(uow, providers).verify_payment(payment.id, {"status": "MAYBE"})

    def test_overpayment_is_rejected(self, uow, db_session, providers, make_bill):
        bill = make_bill()
        payments = PaymentService(uow, providers)
        first, _ = payments.create_payment(bill.id, PaymentMethod.UPI, TOTAL)
        second, _ = payments.create_payment(bill.id, PaymentMethod.CARD, TOTAL)
        reconciler = PaymentReconciler(uow, providers)
        reconciler.verify_payment(first.id, {"status": "SUCCESS", "amount": TOTAL})

        with pytest.raises(PaymentAmountError):
            reconciler.verify_payment(second.id, {"status": "SUCCESS", "amount": TOTAL})

        bill = refreshed(db_session, bill)
        assert bill.paid_cents == TOTAL
        assert bill.balance_cents == 0
        assert refreshed(db_session, second).status == PaymentStatus.PENDING

    def test_competing_payments_cannot_both_settle(self, uow, db_session, providers, make_bill):
        bill = make_bill()
        payments = PaymentService(uow, providers)
        first, _ = payments.create_payment(bill.id, PaymentMethod.UPI, 20000)
        second, _ = payments.create_payment(bill.id, PaymentMethod.CARD, 20000)
        reconciler = PaymentReconciler(uow, providers)

        reconciler.apply_success(first.id)
        with pytest.raises(PaymentAmountError):
            reconciler.apply_success(second.id)
        again = reconciler.apply_success(first.id)

        bill = refreshed(db_session, bill)
        assert again.success is True
        assert bill.paid_cents == 20000
        assert bill.balance_cents == TOTAL - 20000
        assert bill.status == BillStatus.OPEN
        assert refreshed(db_session, second).status == PaymentStatus.PENDING


# =============================================================================
# Cashfree
# =============================================================================


class TestCashfreeReconciliation:
    def test_create_opens_gateway_order(self, uow, providers, cashfree, cashfree_calls, make_bill):
        bill = make_bill()

        payment, _ = PaymentService(uow, providers).create_payment(
            bill.id, PaymentMethod.UPI, TOTAL, provider_name=PaymentGateway.CASHFREE
        )

        sent = json.loads(cashfree_calls[0].content)
        assert sent["order_amount"] == 318.6
        assert cashfree_calls[0].headers["x-client-id"] == "app"
        assert payment.gateway_payment_id == f"order_{payment.id}"
        assert "session_abc" in payment.payment_link

    def test_verify_fetches_order_status(
        self, uow, db_session, providers, cashfree, cashfree_orders, make_bill
    ):
        bill = make_bill()
        payment, _ = PaymentService(uow, providers).create_payment(
            bill.id, PaymentMethod.UPI, TOTAL, provider_name=PaymentGateway.CASHFREE
        )
        cashfree_orders[payment.gateway_payment_id] = {
            "order_id": payment.gateway_payment_id,
            "order_status": "PAID",
            "order_amount": 318.60,
        }

        result = PaymentReconciler(uow, providers).verify_payment(payment.id)

        assert result.status == PaymentStatus.SUCCEEDED
        assert refreshed(db_session, bill).status == BillStatus.CLOSED

    def test_response_for_another_order_is_rejected(self, uow, providers, cashfree, make_bill):
        bill = make_bill()
        payment, _ = PaymentService(uow, providers).create_payment(
            bill.id, PaymentMethod.UPI, TOTAL, provider_name=PaymentGateway.CASHFREE
        )

        with pytest.raises(GatewayError):
            PaymentReconciler(uow, providers).verify_payment(
                payment.id,
                {"order_id": "order_someone_else", "order_status": "PAID", "order_amount": 318.60},
            )

    def test_gateway_outage_is_unavailable(self, uow, providers, make_bill):
        def down(request):
            return httpx.Response(503)

        providers.register(
            CashfreeProvider(
                app_id="app",
                secret_key="secret",
                client=httpx.Client(transport=httpx.MockTransport(down)),
                breaker=CircuitBreaker(CircuitBreakerConfig(name="cashfree-down")),
            )
        )
        bill = make_bill()

        with pytest.raises(GatewayError) as exc_info:
            PaymentService(uow, providers).create_payment(
                bill.id, PaymentMethod.UPI, TOTAL, provider_name=PaymentGateway.CASHFREE
            )
        assert exc_info.value.status_code == 503
