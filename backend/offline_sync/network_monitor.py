"""
Network Monitor.

Tracks whether the device can reach the API and tells subscribers when that
changes. The browser-style online flag is only a hint, so connectivity is
confirmed against the health endpoint.
"""

from __future__ import annotations

import asyncio
import itertools
import threading
from typing import Callable

import httpx

from shared.config.logging import get_logger
from shared.config.settings import settings

logger = get_logger(__name__)

StatusListener = Callable[[bool], None]

HEALTH_PATH = "/api/health"


class NetworkMonitor:
    """
    Online/offline state with change notifications.

    Listeners are called synchronously, once per actual transition, outside
    the internal lock. A listener that raises is logged and does not stop the
    remaining listeners.

    Usage:
        monitor = NetworkMonitor("http://localhost:8000")
        unsubscribe = monitor.on_status_change(lambda online: ...)
        await monitor.check_health()
        unsubscribe()
    """

    def __init__(
        self,
        base_url: str | None = None,
        initial_online: bool = True,
        health_timeout: float | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self._base_url = (base_url or "").rstrip("/")
        self._health_timeout = settings.network_health_timeout if health_timeout is None else health_timeout
        self._client = client
        self._owns_client = client is None

        self._lock = threading.Lock()
        self._online = initial_online
        self._listeners: dict[int, StatusListener] = {}
        self._ids = itertools.count(1)
        self._health_task: asyncio.Task | None = None
        self._closed = False

    def is_online(self) -> bool:
        with self._lock:
            return self._online

    def on_status_change(self, listener: StatusListener) -> Callable[[], None]:
        """
        Subscribe to status changes.

        Returns an unsubscribe function that is safe to call more than once.
        """
        with self._lock:
            token = next(self._ids)
            self._listeners[token] = listener

        def unsubscribe() -> None:
            with self._lock:
                self._listeners.pop(token, None)

        return unsubscribe

    def set_online(self, online: bool) -> bool:
        """
        Record the current status. Returns True when it changed.
        """
        with self._lock:
            if self._closed or self._online == online:
                return False
            self._online = online
            listeners = list(self._listeners.values())

        logger.info("Network status changed", online=online, listeners=len(listeners))
        for listener in listeners:
            try:
                listener(online)
            except Exception:
                logger.exception("Network status listener failed", online=online)
        return True

    # =========================================================================
    # Health checks
    # =========================================================================

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._health_timeout)
        return self._client

    async def check_health(self) -> bool:
        """
        Check reachability against the health endpoint and update the status.

        Any transport error, timeout or non-2xx answer counts as offline.
        """
        if not self._base_url:
            return self.is_online()

        try:
            response = await self._get_client().get(
                f"{self._base_url}{HEALTH_PATH}",
                timeout=self._health_timeout,
            )
            reachable = response.is_success
        except httpx.HTTPError as e:
            logger.debug("Health check failed", error=str(e))
            reachable = False

        self.set_online(reachable)
        return reachable

    async def _health_loop(self, interval: float) -> None:
        while True:
            await self.check_health()
            await asyncio.sleep(interval)

    def start_health_checks(self, interval: float = 10.0) -> asyncio.Task:
        """Check periodically on the running event loop until stop_health_checks()."""
        if self._health_task is None or self._health_task.done():
            self._health_task = asyncio.create_task(self._health_loop(interval))
        return self._health_task

    async def stop_health_checks(self) -> None:
        task, self._health_task = self._health_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def close(self) -> None:
        """Stop health checks, drop listeners and release the HTTP client."""
        await self.stop_health_checks()
        with self._lock:
            self._closed = True
            self._listeners.clear()
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None
