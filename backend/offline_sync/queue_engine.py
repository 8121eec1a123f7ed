"""
Offline Queue.

Staging area for mutations made while the API is unreachable. Actions are
persisted in a QueueStore and replayed in creation order once the
NetworkMonitor reports the device online. The server stays the source of
truth: an action it rejects is marked FAILED and left for the user.

Usage:
    monitor = NetworkMonitor(base_url)
    queue = OfflineQueue(monitor, SqliteQueueStore(path), HttpActionExecutor(client))
    queue.start()
    await queue.enqueue(ActionType.CREATE_ORDER, {...})
"""

from __future__ import annotations

import asyncio
import copy
import itertools
import time
import uuid
from dataclasses import asdict, dataclass
from typing import Any, Callable

from shared.config.logging import get_logger
from shared.config.settings import settings
from .actions import ActionStatus, ActionType, QueuedAction
from .errors import PermanentExecutionError, QueueError, TransientExecutionError
from .executor import ActionExecutor
from .network_monitor import NetworkMonitor
from .retry import RetryConfig, calculate_delay_with_jitter, should_retry
from .store import QueueStore

logger = get_logger(__name__)

SyncListener = Callable[[QueuedAction, dict[str, Any]], None]


@dataclass(frozen=True)
class QueueStatus:
    total: int
    pending: int
    syncing: int
    failed: int

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


@dataclass
class FlushResult:
    synced: int = 0
    failed: int = 0
    deferred: int = 0
    skipped: bool = False

    def add(self, other: "FlushResult") -> None:
        self.synced += other.synced
        self.failed += other.failed
        self.deferred = other.deferred


class OfflineQueue:
    def __init__(
        self,
        monitor: NetworkMonitor,
        store: QueueStore,
        executor: ActionExecutor,
        max_retries: int | None = None,
        flush_interval: float | None = None,
        retry_config: RetryConfig | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self._monitor = monitor
        self._store = store
        self._executor = executor
        self._max_retries = settings.offline_queue_max_retries if max_retries is None else max_retries
        self._flush_interval = (
            settings.offline_queue_flush_interval if flush_interval is None else flush_interval
        )
        self._retry_config = retry_config or RetryConfig()
        self._clock = clock

        self._lock = asyncio.Lock()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._flush_task: asyncio.Task | None = None
        self._flush_again = False
        self._rerun_requested = False
        self._timer_task: asyncio.Task | None = None
        self._listeners: dict[int, SyncListener] = {}
        self._listener_ids = itertools.count(1)

        # A crash mid-flush leaves actions SYNCING; nobody is replaying them now
        recovered = self._store.reset_status(ActionStatus.SYNCING, ActionStatus.PENDING)
        if recovered:
            logger.warning("Recovered interrupted actions", count=recovered)

        self._unsubscribe = monitor.on_status_change(self._on_status_change)

    # =========================================================================
    # Public API
    # =========================================================================

    async def enqueue(self, action_type: str, payload: dict[str, Any]) -> QueuedAction:
        """
        Persist an action and try to sync it right away when online.

        Raises:
            QueueError: unknown action type, bad payload, or store failure
        """
        if action_type not in ActionType.ALL:
            raise QueueError(f"Unknown action type '{action_type}'")
        if not isinstance(payload, dict):
            raise QueueError("Action payload must be a mapping")

        self._loop = asyncio.get_running_loop()
        payload = copy.deepcopy(payload)
        if action_type in ActionType.IDEMPOTENT and not payload.get("idempotencyKey"):
            payload["idempotencyKey"] = uuid.uuid4().hex

        action = QueuedAction(action_type=action_type, payload=payload, created_at=self._clock())
        self._store.add(action)
        logger.info("Action queued", action_id=action.id, action_type=action_type)

        if self._monitor.is_online():
            self.schedule_flush()
        return action

    def get_queue_status(self) -> QueueStatus:
        counts = {ActionStatus.PENDING: 0, ActionStatus.SYNCING: 0, ActionStatus.FAILED: 0}
        actions = self._store.list_actions()
        for action in actions:
            if action.status in counts:
                counts[action.status] += 1
        return QueueStatus(
            total=len(actions),
            pending=counts[ActionStatus.PENDING],
            syncing=counts[ActionStatus.SYNCING],
            failed=counts[ActionStatus.FAILED],
        )

    def list_actions(self) -> list[QueuedAction]:
        return self._store.list_actions()

    def on_synced(self, listener: SyncListener) -> Callable[[], None]:
        """Called with (action, server response) after each confirmed replay."""
        token = next(self._listener_ids)
        self._listeners[token] = listener

        def unsubscribe() -> None:
            self._listeners.pop(token, None)

        return unsubscribe

    async def retry_failed(self) -> int:
        """Give FAILED actions a fresh retry budget and flush. Returns the count."""
        count = 0
        for action in self._store.list_actions():
            if action.status == ActionStatus.FAILED:
                action.status = ActionStatus.PENDING
                action.retries = 0
                action.next_attempt_at = None
                self._store.save(action)
                count += 1
        if count:
            logger.info("Failed actions requeued", count=count)
            await self.flush()
        return count

    def discard(self, action_id: str) -> None:
        """Drop an action, typically a FAILED one the user gave up on."""
        self._store.remove(action_id)

    # =========================================================================
    # Flushing
    # =========================================================================

    async def flush(self) -> FlushResult:
        """
        Replay due actions in creation order.

        Returns immediately with skipped=True when a cycle is already running
        or the device is offline. A flush skipped because of a running cycle
        makes that cycle go round once more before it releases the lock, so
        actions enqueued meanwhile are not left for the next timer tick.
        """
        if self._lock.locked():
            self._rerun_requested = True
            return FlushResult(skipped=True)
        async with self._lock:
            result = await self._flush_cycle()
            while self._rerun_requested and not result.skipped:
                self._rerun_requested = False
                again = await self._flush_cycle()
                if again.skipped:
                    break
                result.add(again)
            self._rerun_requested = False
            return result

    async def _flush_cycle(self) -> FlushResult:
        result = FlushResult()
        if not self._monitor.is_online():
            result.skipped = True
            return result

        for action in self._store.list_actions():
            if action.status != ActionStatus.PENDING:
                continue
            if not self._monitor.is_online():
                break
            if not action.is_due(self._clock()):
                # Later actions may depend on this one; keep the order
                result.deferred += 1
                break
            if not await self._replay(action, result):
                break

        if result.synced or result.failed:
            logger.info(
                "Flush completed",
                synced=result.synced,
                failed=result.failed,
                deferred=result.deferred,
            )
        return result

    async def _replay(self, action: QueuedAction, result: FlushResult) -> bool:
        """Attempt one action. Returns False when the cycle must stop."""
        action.status = ActionStatus.SYNCING
        action.last_attempt_at = self._clock()
        self._store.save(action)

        try:
            response = await self._executor.execute(action)
        except PermanentExecutionError as e:
            self._mark_failed(action, str(e), status_code=e.status_code)
            result.failed += 1
            return True
        except TransientExecutionError as e:
            return self._handle_transient(action, str(e), result)
        except Exception as e:
            logger.exception("Unexpected error replaying action", action_id=action.id)
            return self._handle_transient(action, f"{type(e).__name__}: {e}", result)

        self._store.remove(action.id)
        result.synced += 1
        logger.info("Action synced", action_id=action.id, action_type=action.action_type)
        self._notify_synced(action, response)
        return True

    def _handle_transient(self, action: QueuedAction, error: str, result: FlushResult) -> bool:
        action.last_error = error

        if not self._monitor.is_online():
            action.status = ActionStatus.PENDING
            self._store.save(action)
            logger.info("Network dropped during flush", action_id=action.id)
            return False

        action.retries += 1
        if not should_retry(action.retries, self._max_retries):
            self._mark_failed(action, error)
            result.failed += 1
            return True

        action.status = ActionStatus.PENDING
        action.next_attempt_at = self._clock() + calculate_delay_with_jitter(action.retries, self._retry_config)
        self._store.save(action)
        result.deferred += 1
        logger.warning(
            "Action sync failed, will retry",
            action_id=action.id,
            action_type=action.action_type,
            retries=action.retries,
            error=error,
        )
        return False

    def _mark_failed(self, action: QueuedAction, error: str, status_code: int | None = None) -> None:
        action.status = ActionStatus.FAILED
        action.last_error = error
        action.next_attempt_at = None
        self._store.save(action)
        logger.error(
            "Action sync failed permanently",
            action_id=action.id,
            action_type=action.action_type,
            retries=action.retries,
            status_code=status_code,
            error=error,
        )

    def _notify_synced(self, action: QueuedAction, response: dict[str, Any]) -> None:
        action.status = ActionStatus.SYNCED
        for listener in list(self._listeners.values()):
            try:
                listener(action, response)
            except Exception:
                logger.exception("Sync listener failed", action_id=action.id)

    # =========================================================================
    # Scheduling
    # =========================================================================

    def schedule_flush(self) -> asyncio.Task:
        """Start a flush in the background; if one is running it flushes again after."""
        if self._flush_task is None or self._flush_task.done():
            self._flush_task = asyncio.create_task(self._background_flush())
        else:
            self._flush_again = True
        return self._flush_task

    async def _background_flush(self) -> None:
        while True:
            self._flush_again = False
            await self.flush()
            if not self._flush_again:
                return

    async def wait_for_flush(self) -> None:
        """Wait for the background flush started by enqueue or reconnect."""
        task = self._flush_task
        if task is not None:
            await task

    def _on_status_change(self, online: bool) -> None:
        if not online:
            return
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            # Notified from outside the event loop thread
            if self._loop is not None and not self._loop.is_closed():
                self._loop.call_soon_threadsafe(self.schedule_flush)
            return
        self.schedule_flush()

    async def _timer_loop(self) -> None:
        while True:
            await asyncio.sleep(self._flush_interval)
            try:
                await self.flush()
            except QueueError:
                logger.exception("Periodic flush failed")

    def start(self) -> None:
        """Start the periodic flush timer on the running loop."""
        self._loop = asyncio.get_running_loop()
        if self._timer_task is None or self._timer_task.done():
            self._timer_task = asyncio.create_task(self._timer_loop())
        if self._monitor.is_online():
            self.schedule_flush()

    async def stop(self) -> None:
        """Stop the timer. An in-flight flush is allowed to finish."""
        timer, self._timer_task = self._timer_task, None
        if timer is not None:
            timer.cancel()
            try:
                await timer
            except asyncio.CancelledError:
                pass
        await self.wait_for_flush()

    async def close(self) -> None:
        await self.stop()
        self._unsubscribe()
        self._store.close()
