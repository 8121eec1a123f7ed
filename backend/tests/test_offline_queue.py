"""
Tests for OfflineQueue: staging, ordered replay, retries and the sync lock.
"""

import asyncio

import httpx
import pytest
from sqlalchemy import func, select

from offline_sync import (
    ActionExecutor,
    ActionStatus,
    ActionType,
    HttpActionExecutor,
    MemoryQueueStore,
    NetworkMonitor,
    OfflineQueue,
    PermanentExecutionError,
    QueueError,
    QueuedAction,
    RetryConfig,
    TransientExecutionError,
)
from rest_api.main import app
from rest_api.models import Order, Payment
from shared.config.constants import BillStatus
from shared.infrastructure.db import get_db


class FakeClock:
    def __init__(self):
        self.now = 1_000_000.0

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class ScriptedExecutor(ActionExecutor):
    """Plays back outcomes in order; exceptions are raised, dicts returned."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = []

    async def execute(self, action):
        self.calls.append(action)
        outcome = self.outcomes.pop(0) if self.outcomes else {"ok": True}
        if callable(outcome):
            outcome = outcome(action)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def monitor():
    return NetworkMonitor(initial_online=False)


@pytest.fixture
def make_queue(monitor, clock):
    def _make(executor, store=None, max_retries=3):
        return OfflineQueue(
            monitor,
            store or MemoryQueueStore(),
            executor,
            max_retries=max_retries,
            retry_config=RetryConfig(initial_delay=1.0, max_delay=60.0, jitter_factor=0.0),
            clock=clock,
        )

    return _make


def order_payload(**extra):
    payload = {"restaurantId": "rest-1", "items": [{"menuItemId": "dosa", "quantity": 1}]}
    payload.update(extra)
    return payload


class TestEnqueue:
    @pytest.mark.asyncio
    async def test_offline_enqueue_stays_pending(self, make_queue):
        executor = ScriptedExecutor()
        queue = make_queue(executor)

        action = await queue.enqueue(ActionType.CREATE_ORDER, order_payload())

        assert action.status == ActionStatus.PENDING
        assert queue.get_queue_status().as_dict() == {"total": 1, "pending": 1, "syncing": 0, "failed": 0}
        assert executor.calls == []

    @pytest.mark.asyncio
    async def test_create_order_gets_idempotency_key(self, make_queue):
        queue = make_queue(ScriptedExecutor())
        payload = order_payload()

        action = await queue.enqueue(ActionType.CREATE_ORDER, payload)

        assert action.payload["idempotencyKey"]
        assert "idempotencyKey" not in payload

    @pytest.mark.asyncio
    async def test_create_payment_gets_idempotency_key(self, make_queue):
        queue = make_queue(ScriptedExecutor())

        action = await queue.enqueue(ActionType.CREATE_PAYMENT, {"billId": "b-1", "method": "CASH", "amount": 100})

        assert action.payload["idempotencyKey"]

    @pytest.mark.asyncio
    async def test_existing_idempotency_key_is_kept(self, make_queue):
        queue = make_queue(ScriptedExecutor())

        action = await queue.enqueue(ActionType.CREATE_ORDER, order_payload(idempotencyKey="mine"))

        assert action.payload["idempotencyKey"] == "mine"

    @pytest.mark.asyncio
    async def test_unknown_action_type(self, make_queue):
        queue = make_queue(ScriptedExecutor())

        with pytest.raises(QueueError):
            await queue.enqueue("DELETE_EVERYTHING", {})

    @pytest.mark.asyncio
    async def test_enqueue_while_online_syncs(self, monitor, make_queue):
        monitor.set_online(True)
        executor = ScriptedExecutor()
        queue = make_queue(executor)

        await queue.enqueue(ActionType.GENERATE_BILL, {"orderId": "o-1"})
        await queue.wait_for_flush()

        assert len(executor.calls) == 1
        assert queue.get_queue_status().total == 0


class TestFlush:
    @pytest.mark.asyncio
    async def test_reconnect_replays_in_creation_order(self, monitor, make_queue):
        executor = ScriptedExecutor()
        queue = make_queue(executor)
        queued = [
            await queue.enqueue(ActionType.CREATE_ORDER, order_payload()),
            await queue.enqueue(ActionType.UPDATE_ORDER_STATUS, {"orderId": "o-1", "status": "SERVED"}),
            await queue.enqueue(ActionType.GENERATE_BILL, {"orderId": "o-1"}),
        ]

        monitor.set_online(True)
        await queue.wait_for_flush()

        assert [a.id for a in executor.calls] == [a.id for a in queued]
        assert queue.list_actions() == []

    @pytest.mark.asyncio
    async def test_flush_while_offline_is_skipped(self, make_queue):
        executor = ScriptedExecutor()
        queue = make_queue(executor)
        await queue.enqueue(ActionType.GENERATE_BILL, {"orderId": "o-1"})

        result = await queue.flush()

        assert result.skipped is True
        assert executor.calls == []

    @pytest.mark.asyncio
    async def test_transient_failures_back_off_then_fail(self, monitor, make_queue, clock):
        executor = ScriptedExecutor(*[TransientExecutionError("502 bad gateway", 502)] * 3)
        queue = make_queue(executor, max_retries=3)
        await queue.enqueue(ActionType.VERIFY_PAYMENT, {"paymentId": "p-1"})
        monitor.set_online(True)
        await queue.wait_for_flush()

        (action,) = queue.list_actions()
        assert action.status == ActionStatus.PENDING
        assert action.retries == 1
        assert action.next_attempt_at == clock.now + 1.0

        # Not due yet
        result = await queue.flush()
        assert result.deferred == 1
        assert len(executor.calls) == 1

        clock.advance(1.0)
        await queue.flush()
        clock.advance(2.0)
        result = await queue.flush()

        (action,) = queue.list_actions()
        assert result.failed == 1
        assert action.status == ActionStatus.FAILED
        assert action.retries == 3
        assert action.last_error == "502 bad gateway"
        assert len(executor.calls) == 3
        assert queue.get_queue_status().failed == 1

    @pytest.mark.asyncio
    async def test_backoff_holds_later_actions(self, monitor, make_queue):
        executor = ScriptedExecutor(TransientExecutionError("timeout"))
        queue = make_queue(executor)
        await queue.enqueue(ActionType.UPDATE_ORDER_STATUS, {"orderId": "o-1", "status": "SERVED"})
        await queue.enqueue(ActionType.GENERATE_BILL, {"orderId": "o-1"})

        monitor.set_online(True)
        await queue.wait_for_flush()

        assert [a.action_type for a in executor.calls] == [ActionType.UPDATE_ORDER_STATUS]
        assert queue.get_queue_status().pending == 2

    @pytest.mark.asyncio
    async def test_server_rejection_fails_immediately(self, monitor, make_queue):
        executor = ScriptedExecutor(PermanentExecutionError("Bill is already closed", 400))
        queue = make_queue(executor)
        rejected = await queue.enqueue(ActionType.CREATE_PAYMENT, {"billId": "b-1", "method": "CASH", "amount": 100})
        await queue.enqueue(ActionType.VERIFY_PAYMENT, {"paymentId": "p-1"})

        monitor.set_online(True)
        await queue.wait_for_flush()

        (action,) = queue.list_actions()
        assert action.id == rejected.id
        assert action.status == ActionStatus.FAILED
        assert action.retries == 0
        assert len(executor.calls) == 2

    @pytest.mark.asyncio
    async def test_network_drop_reverts_without_using_a_retry(self, monitor, make_queue):
        def drop(action):
            monitor.set_online(False)
            return TransientExecutionError("connection reset")

        executor = ScriptedExecutor(drop)
        queue = make_queue(executor)
        await queue.enqueue(ActionType.CREATE_ORDER, order_payload())
        await queue.enqueue(ActionType.GENERATE_BILL, {"orderId": "o-1"})

        monitor.set_online(True)
        await queue.wait_for_flush()

        actions = queue.list_actions()
        assert [a.status for a in actions] == [ActionStatus.PENDING, ActionStatus.PENDING]
        assert actions[0].retries == 0
        assert actions[0].next_attempt_at is None
        assert len(executor.calls) == 1

        monitor.set_online(True)
        await queue.wait_for_flush()

        assert queue.list_actions() == []
        assert executor.calls[0].payload == executor.calls[1].payload

    @pytest.mark.asyncio
    async def test_only_one_flush_runs_at_a_time(self, monitor, make_queue):
        release = asyncio.Event()
        entered = asyncio.Event()

        class SlowExecutor(ActionExecutor):
            calls = 0

            async def execute(self, action):
                SlowExecutor.calls += 1
                entered.set()
                await release.wait()
                return {}

        queue = make_queue(SlowExecutor())
        await queue.enqueue(ActionType.GENERATE_BILL, {"orderId": "o-1"})
        monitor.set_online(True)
        await entered.wait()

        second = await queue.flush()
        release.set()
        await queue.wait_for_flush()

        assert second.skipped is True
        assert SlowExecutor.calls == 1
        assert queue.list_actions() == []

    @pytest.mark.asyncio
    async def test_action_queued_during_running_flush_is_not_left_behind(self, monitor, make_queue, clock):
        release = asyncio.Event()
        entered = asyncio.Event()
        seen = []

        class GatedExecutor(ActionExecutor):
            async def execute(self, action):
                seen.append(action.payload["orderId"])
                entered.set()
                await release.wait()
                return {}

        monitor.set_online(True)
        store = MemoryQueueStore()
        store.add(QueuedAction(action_type=ActionType.GENERATE_BILL, payload={"orderId": "o-1"}, created_at=clock()))
        queue = make_queue(GatedExecutor(), store=store)

        # A periodic flush is mid-cycle when the next action arrives
        running = asyncio.create_task(queue.flush())
        await entered.wait()
        clock.advance(1)
        await queue.enqueue(ActionType.GENERATE_BILL, {"orderId": "o-2"})
        await queue.wait_for_flush()
        release.set()
        result = await running

        assert seen == ["o-1", "o-2"]
        assert result.synced == 2
        assert queue.list_actions() == []

    @pytest.mark.asyncio
    async def test_retry_failed(self, monitor, make_queue):
        executor = ScriptedExecutor(PermanentExecutionError("gateway rejected", 400), {"ok": True})
        queue = make_queue(executor)
        monitor.set_online(True)
        await queue.enqueue(ActionType.VERIFY_PAYMENT, {"paymentId": "p-1"})
        await queue.wait_for_flush()
        assert queue.get_queue_status().failed == 1

        count = await queue.retry_failed()

        assert count == 1
        assert queue.list_actions() == []

    @pytest.mark.asyncio
    async def test_sync_listener_receives_response(self, monitor, make_queue):
        executor = ScriptedExecutor({"order": {"id": "o-42"}})
        queue = make_queue(executor)
        synced = []
        queue.on_synced(lambda action, response: synced.append((action.action_type, response)))

        monitor.set_online(True)
        await queue.enqueue(ActionType.CREATE_ORDER, order_payload())
        await queue.wait_for_flush()

        assert synced == [(ActionType.CREATE_ORDER, {"order": {"id": "o-42"}})]

    def test_interrupted_sync_is_recovered(self, monitor):
        store = MemoryQueueStore()
        store.add(QueuedAction(action_type=ActionType.GENERATE_BILL, payload={"orderId": "o-1"}, status=ActionStatus.SYNCING))

        queue = OfflineQueue(monitor, store, ScriptedExecutor())

        assert queue.get_queue_status().pending == 1

    @pytest.mark.asyncio
    async def test_periodic_timer_flushes(self, monitor):
        monitor.set_online(True)
        store = MemoryQueueStore()
        executor = ScriptedExecutor()
        queue = OfflineQueue(monitor, store, executor, flush_interval=0.01)

        queue.start()
        store.add(QueuedAction(action_type=ActionType.GENERATE_BILL, payload={"orderId": "o-1"}))
        for _ in range(200):
            if not store.list_actions():
                break
            await asyncio.sleep(0.01)
        await queue.close()

        assert store.list_actions() == []
        assert len(executor.calls) == 1

    @pytest.mark.asyncio
    async def test_closed_queue_ignores_reconnect(self, monitor, make_queue):
        executor = ScriptedExecutor()
        queue = make_queue(executor)
        await queue.enqueue(ActionType.GENERATE_BILL, {"orderId": "o-1"})

        await queue.close()
        monitor.set_online(True)
        await asyncio.sleep(0)

        assert executor.calls == []


# =============================================================================
# End to end against the REST API
# =============================================================================


class DropFirstResponse(httpx.AsyncBaseTransport):
    """The first request reaches the server but its response is lost."""

    def __init__(self, inner):
        self.inner = inner
        self.dropped = False

    async def handle_async_request(self, request):
        response = await self.inner.handle_async_request(request)
        if not self.dropped:
            self.dropped = True
            await response.aclose()
            raise httpx.ReadError("connection reset by peer", request=request)
        return response


@pytest.fixture
def api_db(db_session):
    app.dependency_overrides[get_db] = lambda: db_session
    yield db_session
    app.dependency_overrides.clear()


class TestReplayAgainstApi:
    @pytest.mark.asyncio
    async def test_lost_ack_replay_does_not_duplicate_order(
        self, api_db, seed_table, seed_menu, monitor, make_queue, clock
    ):
        client = httpx.AsyncClient(
            transport=DropFirstResponse(httpx.ASGITransport(app=app)),
            base_url="http://testserver",
        )
        queue = make_queue(HttpActionExecutor(client))
        synced = []
        queue.on_synced(lambda action, response: synced.append(response))

        await queue.enqueue(
            ActionType.CREATE_ORDER,
            order_payload(tableId="table-1", items=[{"menuItemId": "dosa", "quantity": 2}]),
        )
        monitor.set_online(True)
        await queue.wait_for_flush()

        (action,) = queue.list_actions()
        assert action.retries == 1
        assert api_db.scalar(select(func.count()).select_from(Order)) == 1

        clock.advance(60)
        await queue.flush()

        assert queue.list_actions() == []
        assert api_db.scalar(select(func.count()).select_from(Order)) == 1
        order = api_db.scalar(select(Order))
        assert synced[0]["order"]["id"] == order.id
        assert order.idempotency_key == action.payload["idempotencyKey"]
        await client.aclose()

    @pytest.mark.asyncio
    async def test_rejected_bill_generation_is_failed(
        self, api_db, seed_table, seed_menu, monitor, make_queue
    ):
        client = httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://testserver")
        queue = make_queue(HttpActionExecutor(client))
        monitor.set_online(True)

        await queue.enqueue(ActionType.CREATE_ORDER, order_payload(tableId="table-1"))
        await queue.wait_for_flush()
        order = api_db.scalar(select(Order))
        await queue.enqueue(ActionType.GENERATE_BILL, {"orderId": order.id})
        await queue.wait_for_flush()

        (action,) = queue.list_actions()
        assert action.status == ActionStatus.FAILED
        assert action.last_error == "Only SERVED orders can generate a bill"
        await client.aclose()

    @pytest.mark.asyncio
    async def test_lost_ack_payment_replay_credits_bill_once(self, api_db, make_bill, monitor, make_queue, clock):
        bill = make_bill()
        half = bill.total_cents // 2
        client = httpx.AsyncClient(
            transport=DropFirstResponse(httpx.ASGITransport(app=app)),
            base_url="http://testserver",
        )
        queue = make_queue(HttpActionExecutor(client))

        await queue.enqueue(ActionType.CREATE_PAYMENT, {"billId": bill.id, "method": "CASH", "amount": half})
        monitor.set_online(True)
        await queue.wait_for_flush()

        (action,) = queue.list_actions()
        assert action.retries == 1

        clock.advance(60)
        await queue.flush()

        assert queue.list_actions() == []
        api_db.refresh(bill)
        payments = api_db.scalars(select(Payment).where(Payment.bill_id == bill.id)).all()
        assert len(payments) == 1
        assert payments[0].idempotency_key == action.payload["idempotencyKey"]
        assert bill.paid_cents == half
        assert bill.status == BillStatus.OPEN
        await client.aclose()
