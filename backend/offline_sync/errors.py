"""
Errors raised by the offline sync runtime.

Transient execution failures are handled inside the queue and never reach
callers of flush(); QueueError means the local store itself is broken.
"""


class OfflineSyncError(Exception):
    """Base class for offline sync errors."""


class QueueError(OfflineSyncError):
    """The local queue store could not be read or written."""


class ExecutionError(OfflineSyncError):
    """Replaying an action against the API failed."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class TransientExecutionError(ExecutionError):
    """Timeouts, transport errors, 5xx, 408 and 429: worth retrying."""


class PermanentExecutionError(ExecutionError):
    """The server rejected the action; retrying cannot change the answer."""
