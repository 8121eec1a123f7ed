"""
Durable storage for queued actions.

The queue must survive a restart of the device, so the default store is a
local SQLite file. MemoryQueueStore keeps the same contract for tests and
for hosts that do their own persistence.
"""

from __future__ import annotations

import copy
import threading
from abc import ABC, abstractmethod
from typing import Any

from sqlalchemy import JSON, Float, Integer, String, Text, create_engine, delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from shared.config.logging import get_logger
from shared.config.settings import settings
from .actions import ActionStatus, QueuedAction
from .errors import QueueError

logger = get_logger(__name__)


class QueueStore(ABC):
    """Ordered collection of queued actions, oldest first."""

    @abstractmethod
    def add(self, action: QueuedAction) -> None:
        ...

    @abstractmethod
    def list_actions(self) -> list[QueuedAction]:
        ...

    @abstractmethod
    def get(self, action_id: str) -> QueuedAction | None:
        ...

    @abstractmethod
    def save(self, action: QueuedAction) -> None:
        """Persist changes to an existing action."""

    @abstractmethod
    def remove(self, action_id: str) -> None:
        ...

    def reset_status(self, from_status: str, to_status: str) -> int:
        """Move every action in from_status to to_status. Returns the count."""
        count = 0
        for action in self.list_actions():
            if action.status == from_status:
                action.status = to_status
                self.save(action)
                count += 1
        return count

    def close(self) -> None:
        pass


class MemoryQueueStore(QueueStore):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._actions: dict[str, QueuedAction] = {}

    def add(self, action: QueuedAction) -> None:
        with self._lock:
            if action.id in self._actions:
                raise QueueError(f"Action {action.id} already queued")
            self._actions[action.id] = copy.deepcopy(action)

    def list_actions(self) -> list[QueuedAction]:
        with self._lock:
            return [copy.deepcopy(a) for a in self._actions.values()]

    def get(self, action_id: str) -> QueuedAction | None:
        with self._lock:
            action = self._actions.get(action_id)
            return copy.deepcopy(action) if action else None

    def save(self, action: QueuedAction) -> None:
        with self._lock:
            if action.id not in self._actions:
                raise QueueError(f"Action {action.id} is not queued")
            self._actions[action.id] = copy.deepcopy(action)

    def remove(self, action_id: str) -> None:
        with self._lock:
            self._actions.pop(action_id, None)


# =============================================================================
# SQLite store
# =============================================================================


class _QueueBase(DeclarativeBase):
    pass


class QueuedActionRow(_QueueBase):
    __tablename__ = "queued_action"

    # Autoincrement sequence keeps enqueue order stable when timestamps tie
    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    action_type: Mapped[str] = mapped_column(String(32), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    created_at: Mapped[float] = mapped_column(Float, nullable=False)
    retries: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    status: Mapped[str] = mapped_column(String(16), default=ActionStatus.PENDING, nullable=False)
    last_error: Mapped[str | None] = mapped_column(Text)
    last_attempt_at: Mapped[float | None] = mapped_column(Float)
    next_attempt_at: Mapped[float | None] = mapped_column(Float)

    def to_action(self) -> QueuedAction:
        return QueuedAction(
            id=self.id,
            action_type=self.action_type,
            payload=dict(self.payload),
            created_at=self.created_at,
            retries=self.retries,
            status=self.status,
            last_error=self.last_error,
            last_attempt_at=self.last_attempt_at,
            next_attempt_at=self.next_attempt_at,
        )


def _row_values(action: QueuedAction) -> dict[str, Any]:
    return {
        "action_type": action.action_type,
        "payload": action.payload,
        "retries": action.retries,
        "status": action.status,
        "last_error": action.last_error,
        "last_attempt_at": action.last_attempt_at,
        "next_attempt_at": action.next_attempt_at,
    }


class SqliteQueueStore(QueueStore):
    """
    Queue persisted in a local SQLite database.

    Usage:
        store = SqliteQueueStore()  # settings.offline_queue_path
        store = SqliteQueueStore(":memory:")
    """

    def __init__(self, path: str | None = None):
        path = path or settings.offline_queue_path
        self._path = path
        url = "sqlite://" if path == ":memory:" else f"sqlite:///{path}"
        options: dict[str, Any] = {"connect_args": {"check_same_thread": False}}
        if path == ":memory:":
            options["poolclass"] = StaticPool
        try:
            self._engine = create_engine(url, **options)
            _QueueBase.metadata.create_all(self._engine)
        except SQLAlchemyError as e:
            raise QueueError(f"Cannot open offline queue at {path}: {e}") from e
        self._sessions = sessionmaker(bind=self._engine, expire_on_commit=False)

    def _run(self, operation: str, fn):
        try:
            with self._sessions() as db:
                with db.begin():
                    return fn(db)
        except SQLAlchemyError as e:
            logger.error("Offline queue store failure", operation=operation, path=self._path, exc_info=True)
            raise QueueError(f"Offline queue {operation} failed: {e}") from e

    def add(self, action: QueuedAction) -> None:
        def _add(db: Session) -> None:
            db.add(QueuedActionRow(id=action.id, created_at=action.created_at, **_row_values(action)))

        self._run("add", _add)

    def list_actions(self) -> list[QueuedAction]:
        def _list(db: Session) -> list[QueuedAction]:
            rows = db.scalars(select(QueuedActionRow).order_by(QueuedActionRow.created_at, QueuedActionRow.seq))
            return [row.to_action() for row in rows]

        return self._run("list", _list)

    def get(self, action_id: str) -> QueuedAction | None:
        def _get(db: Session) -> QueuedAction | None:
            row = db.scalar(select(QueuedActionRow).where(QueuedActionRow.id == action_id))
            return row.to_action() if row else None

        return self._run("get", _get)

    def save(self, action: QueuedAction) -> None:
        def _save(db: Session) -> None:
            result = db.execute(
                update(QueuedActionRow)
                .where(QueuedActionRow.id == action.id)
                .values(**_row_values(action))
            )
            if result.rowcount == 0:
                raise QueueError(f"Action {action.id} is not queued")

        self._run("save", _save)

    def remove(self, action_id: str) -> None:
        self._run("remove", lambda db: db.execute(delete(QueuedActionRow).where(QueuedActionRow.id == action_id)))

    def reset_status(self, from_status: str, to_status: str) -> int:
        def _reset(db: Session) -> int:
            result = db.execute(
                update(QueuedActionRow)
                .where(QueuedActionRow.status == from_status)
                .values(status=to_status)
            )
            return result.rowcount

        return self._run("reset", _reset)

    def close(self) -> None:
        self._engine.dispose()
