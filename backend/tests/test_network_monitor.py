"""
Tests for NetworkMonitor: transition notifications, unsubscribe and health checks.
"""

import asyncio

import httpx
import pytest

from offline_sync import NetworkMonitor
from rest_api.main import app


class TestNotifications:
    def test_offline_then_online_notifies_twice(self):
        monitor = NetworkMonitor()
        events = []
        monitor.on_status_change(events.append)

        monitor.set_online(False)
        monitor.set_online(True)

        assert events == [False, True]

    def test_repeated_status_is_not_renotified(self):
        monitor = NetworkMonitor()
        events = []
        monitor.on_status_change(events.append)

        assert monitor.set_online(True) is False
        monitor.set_online(False)
        monitor.set_online(False)
        monitor.set_online(True)
        monitor.set_online(True)

        assert events == [False, True]
        assert monitor.is_online() is True

    def test_unsubscribe_stops_notifications(self):
        monitor = NetworkMonitor()
        events = []
        unsubscribe = monitor.on_status_change(events.append)

        monitor.set_online(False)
        unsubscribe()
        monitor.set_online(True)

        assert events == [False]

    def test_unsubscribe_is_idempotent(self):
        monitor = NetworkMonitor()
        unsubscribe = monitor.on_status_change(lambda online: None)

        unsubscribe()
        unsubscribe()

    @pytest.mark.asyncio
    async def test_unsubscribe_after_close(self):
        monitor = NetworkMonitor()
        unsubscribe = monitor.on_status_change(lambda online: None)

        await monitor.close()

        unsubscribe()
        assert monitor.set_online(False) is False

    def test_same_callback_subscribed_twice(self):
        monitor = NetworkMonitor()
        events = []
        first = monitor.on_status_change(events.append)
        monitor.on_status_change(events.append)

        first()
        monitor.set_online(False)

        assert events == [False]

    def test_failing_listener_does_not_block_others(self):
        monitor = NetworkMonitor()
        events = []

        def broken(online):
            raise RuntimeError("listener bug")

        monitor.on_status_change(broken)
        monitor.on_status_change(events.append)

        monitor.set_online(False)

        assert events == [False]

    def test_listener_may_unsubscribe_itself(self):
        monitor = NetworkMonitor()
        events = []
        unsubscribe = None

        def once(online):
            events.append(online)
            unsubscribe()

        unsubscribe = monitor.on_status_change(once)
        monitor.set_online(False)
        monitor.set_online(True)

        assert events == [False]


def monitor_with(handler, initial_online=True):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return NetworkMonitor("http://api.test", initial_online=initial_online, client=client), client


class TestHealthCheck:
    @pytest.mark.asyncio
    async def test_healthy_endpoint_goes_online(self):
        seen = []

        def handler(request):
            seen.append(request.url.path)
            return httpx.Response(200, json={"status": "healthy"})

        monitor, client = monitor_with(handler, initial_online=False)
        events = []
        monitor.on_status_change(events.append)

        assert await monitor.check_health() is True
        assert events == [True]
        assert seen == ["/api/health"]
        await client.aclose()

    @pytest.mark.asyncio
    async def test_server_error_goes_offline(self):
        monitor, client = monitor_with(lambda request: httpx.Response(503))

        assert await monitor.check_health() is False
        assert monitor.is_online() is False
        await client.aclose()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [httpx.ConnectError, httpx.ReadTimeout])
    async def test_transport_failure_goes_offline(self, error):
        def handler(request):
            raise error("unreachable", request=request)

        monitor, client = monitor_with(handler)

        assert await monitor.check_health() is False
        assert monitor.is_online() is False
        await client.aclose()

    @pytest.mark.asyncio
    async def test_health_check_against_rest_api(self):
        client = httpx.AsyncClient(transport=httpx.ASGITransport(app=app))
        monitor = NetworkMonitor("http://testserver", initial_online=False, client=client)

        assert await monitor.check_health() is True
        await client.aclose()

    @pytest.mark.asyncio
    async def test_periodic_health_checks(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200)

        monitor, client = monitor_with(handler, initial_online=False)
        monitor.start_health_checks(interval=0.01)
        for _ in range(200):
            if len(calls) >= 2:
                break
            await asyncio.sleep(0.01)
        await monitor.stop_health_checks()

        assert len(calls) >= 2
        assert monitor.is_online() is True
        await client.aclose()

    @pytest.mark.asyncio
    async def test_without_base_url_keeps_status(self):
        monitor = NetworkMonitor(initial_online=False)

        assert await monitor.check_health() is False
