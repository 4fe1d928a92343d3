"""
Tests for graceful shutdown coordination.
"""

import asyncio

import pytest
from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.responses import PlainTextResponse
from starlette.routing import Route
from starlette.testclient import TestClient

from sfbridge_mcp.errors import ShutdownInProgress
from sfbridge_mcp.shutdown import ShutdownCoordinator, ShutdownMiddleware, ShutdownState


class TestTrack:
    """Tests for in-flight tracking."""

    @pytest.mark.asyncio
    async def test_counts_inflight_operations(self):
        coordinator = ShutdownCoordinator()

        async with coordinator.track():
            assert coordinator.inflight == 1
            async with coordinator.track():
                assert coordinator.inflight == 2

        assert coordinator.inflight == 0

    @pytest.mark.asyncio
    async def test_rejects_new_work_once_draining(self):
        coordinator = ShutdownCoordinator(timeout=1)
        task = coordinator.shutdown("test")

        assert coordinator.state is ShutdownState.DRAINING
        with pytest.raises(ShutdownInProgress):
            async with coordinator.track():
                pass

        await task


class TestShutdown:
    """Tests for the drain and cleanup sequence."""

    @pytest.mark.asyncio
    async def test_waits_for_inflight_then_runs_hooks_in_order(self):
        coordinator = ShutdownCoordinator(timeout=5)
        order = []
        release = asyncio.Event()

        async def operation():
            async with coordinator.track():
                await release.wait()
                order.append("operation")

        async def first_hook():
            order.append("first")

        async def second_hook():
            order.append("second")

        coordinator.add_cleanup_hook("first", first_hook)
        coordinator.add_cleanup_hook("second", second_hook)

        op = asyncio.create_task(operation())
        await asyncio.sleep(0)
        task = coordinator.shutdown("test")
        await asyncio.sleep(0.01)
        assert order == []

        release.set()
        result = await task
        await op

        assert order == ["operation", "first", "second"]
        assert result.forced is False
        assert result.pending == 0
        assert coordinator.state is ShutdownState.STOPPED

    @pytest.mark.asyncio
    async def test_timeout_forces_stop(self):
        stopped = []
        coordinator = ShutdownCoordinator(timeout=0.05, on_stopped=stopped.append)
        hung = asyncio.Event()

        async def operation():
            async with coordinator.track():
                await hung.wait()

        op = asyncio.create_task(operation())
        await asyncio.sleep(0)

        result = await coordinator.shutdown("test")

        assert result.forced is True
        assert result.pending == 1
        assert stopped == [True]
        op.cancel()
        await asyncio.gather(op, return_exceptions=True)

    @pytest.mark.asyncio
    async def test_failing_hook_does_not_stop_the_rest(self):
        coordinator = ShutdownCoordinator(timeout=1)
        ran = []

        async def broken():
            raise RuntimeError("boom")

        async def cleanup():
            ran.append("cleanup")

        coordinator.add_cleanup_hook("broken", broken)
        coordinator.add_cleanup_hook("cleanup", cleanup)

        result = await coordinator.shutdown("test")

        assert ran == ["cleanup"]
        assert result.failed_hooks == ["broken"]
        assert coordinator.state is ShutdownState.STOPPED

    @pytest.mark.asyncio
    async def test_repeat_shutdown_returns_same_task(self):
        calls = []
        coordinator = ShutdownCoordinator(timeout=1, on_stopped=calls.append)

        first = coordinator.shutdown("SIGTERM")
        second = coordinator.shutdown("SIGINT")
        await first

        assert first is second
        assert calls == [False]


class TestShutdownMiddleware:
    """Tests for rejecting HTTP requests while draining."""

    def test_requests_rejected_with_503_after_shutdown(self):
        coordinator = ShutdownCoordinator(timeout=1)

        async def hello(request):
            return PlainTextResponse(f"inflight={coordinator.inflight}")

        async def stop(request):
            # Drain completes once this request has been answered
            coordinator.shutdown("test")
            return PlainTextResponse("stopping")

        app = Starlette(
            routes=[Route("/hello", hello), Route("/stop", stop)],
            middleware=[Middleware(ShutdownMiddleware, coordinator=coordinator)],
        )

        with TestClient(app) as client:
            assert client.get("/hello").text == "inflight=1"

            client.get("/stop")
            response = client.get("/hello")

        assert response.status_code == 503
        assert response.json()["code"] == "ShutdownInProgress"
