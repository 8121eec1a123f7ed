"""
Queued action model.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Final


class ActionType:
    CREATE_ORDER: Final[str] = "CREATE_ORDER"
    UPDATE_ORDER_STATUS: Final[str] = "UPDATE_ORDER_STATUS"
    GENERATE_BILL: Final[str] = "GENERATE_BILL"
    CREATE_PAYMENT: Final[str] = "CREATE_PAYMENT"
    VERIFY_PAYMENT: Final[str] = "VERIFY_PAYMENT"

    ALL: Final[frozenset[str]] = frozenset({
        CREATE_ORDER,
        UPDATE_ORDER_STATUS,
        GENERATE_BILL,
        CREATE_PAYMENT,
        VERIFY_PAYMENT,
    })

    # Creations the server deduplicates by the payload's idempotencyKey
    IDEMPOTENT: Final[frozenset[str]] = frozenset({CREATE_ORDER, CREATE_PAYMENT})


class ActionStatus:
    """
    PENDING -> SYNCING -> SYNCED (removed from the store)
                       -> PENDING (transient failure or network drop)
                       -> FAILED  (retries exhausted or rejected by the server)
    """

    PENDING: Final[str] = "PENDING"
    SYNCING: Final[str] = "SYNCING"
    FAILED: Final[str] = "FAILED"
    SYNCED: Final[str] = "SYNCED"


def new_action_id() -> str:
    return f"q_{uuid.uuid4().hex}"


@dataclass
class QueuedAction:
    action_type: str
    payload: dict[str, Any]
    id: str = field(default_factory=new_action_id)
    created_at: float = field(default_factory=time.time)
    retries: int = 0
    status: str = ActionStatus.PENDING
    last_error: str | None = None
    last_attempt_at: float | None = None
    next_attempt_at: float | None = None

    def is_due(self, now: float) -> bool:
        return self.next_attempt_at is None or self.next_attempt_at <= now
