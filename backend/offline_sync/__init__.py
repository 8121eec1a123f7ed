"""
Offline sync runtime.

Client-side engine that keeps working while the device is disconnected:
NetworkMonitor tracks reachability of the API and OfflineQueue stages
mutations locally, replaying them over HTTP when connectivity returns.
"""

from .actions import ActionStatus, ActionType, QueuedAction
from .errors import (
    ExecutionError,
    OfflineSyncError,
    PermanentExecutionError,
    QueueError,
    TransientExecutionError,
)
from .executor import ActionExecutor, HttpActionExecutor, build_request
from .network_monitor import NetworkMonitor
from .queue_engine import FlushResult, OfflineQueue, QueueStatus
from .retry import RetryConfig, calculate_delay_with_jitter
from .store import MemoryQueueStore, QueueStore, SqliteQueueStore

__all__ = [
    "ActionStatus",
    "ActionType",
    "QueuedAction",
    "OfflineSyncError",
    "QueueError",
    "ExecutionError",
    "TransientExecutionError",
    "PermanentExecutionError",
    "ActionExecutor",
    "HttpActionExecutor",
    "build_request",
    "NetworkMonitor",
    "OfflineQueue",
    "QueueStatus",
    "FlushResult",
    "RetryConfig",
    "calculate_delay_with_jitter",
    "MemoryQueueStore",
    "QueueStore",
    "SqliteQueueStore",
]
