"""
Graceful shutdown coordination.

Lifecycle: running -> draining -> stopped (never backwards).

On a termination signal the coordinator:
1. Flips to draining; new operations are rejected with ShutdownInProgress
2. Waits for in-flight operations to finish, bounded by a timeout
3. Runs cleanup hooks in registration order (failures are logged, not fatal)
4. Flips to stopped and calls on_stopped(forced), where forced means the
   drain timed out with operations still outstanding

A second shutdown request returns the task started by the first.
"""

import asyncio
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import AsyncGenerator, Awaitable, Callable, List, Optional, Tuple

from loguru import logger
from starlette.responses import JSONResponse
from starlette.types import ASGIApp, Receive, Scope, Send

from sfbridge_mcp.errors import ShutdownInProgress

CleanupHook = Callable[[], Awaitable[None]]


class ShutdownState(str, Enum):
    RUNNING = "running"
    DRAINING = "draining"
    STOPPED = "stopped"


@dataclass
class ShutdownResult:
    """Outcome of a shutdown run."""

    reason: str
    forced: bool
    pending: int
    duration: float
    failed_hooks: List[str] = field(default_factory=list)


class ShutdownCoordinator:
    """Tracks in-flight operations and drains them on termination."""

    def __init__(
        self,
        timeout: float = 30.0,
        on_stopped: Optional[Callable[[bool], None]] = None,
    ):
        """
        Initialize the coordinator.

        Args:
            timeout: Seconds to wait for in-flight operations to finish
            on_stopped: Called once with forced=True/False after hooks ran
        """
        self.timeout = timeout
        self.on_stopped = on_stopped
        self._state = ShutdownState.RUNNING
        self._inflight = 0
        self._idle = asyncio.Event()
        self._idle.set()
        self._hooks: List[Tuple[str, CleanupHook]] = []
        self._task: Optional[asyncio.Task] = None

    @property
    def state(self) -> ShutdownState:
        return self._state

    @property
    def inflight(self) -> int:
        return self._inflight

    def is_running(self) -> bool:
        return self._state is ShutdownState.RUNNING

    def add_cleanup_hook(self, name: str, hook: CleanupHook) -> None:
        """Register a coroutine function to run after the drain."""
        self._hooks.append((name, hook))

    @asynccontextmanager
    async def track(self) -> AsyncGenerator[None, None]:
        """
        Count an operation as in flight for the duration of the block.

        Raises:
            ShutdownInProgress: The coordinator is draining or stopped
        """
        if self._state is not ShutdownState.RUNNING:
            raise ShutdownInProgress("Server is shutting down, please try again later")

        self._inflight += 1
        self._idle.clear()
        try:
            yield
        finally:
            self._inflight -= 1
            if self._inflight == 0:
                self._idle.set()

    def shutdown(self, reason: str = "signal") -> "asyncio.Task[ShutdownResult]":
        """
        Start shutting down, or return the shutdown already under way.

        Must be called from within the running event loop.
        """
        if self._task is not None:
            logger.info(f"Shutdown already {self._state.value}, ignoring {reason}")
            return self._task

        self._state = ShutdownState.DRAINING
        logger.info(f"Starting graceful shutdown ({reason}), {self._inflight} operations in flight")
        self._task = asyncio.get_running_loop().create_task(self._run(reason))
        return self._task

    async def _run(self, reason: str) -> ShutdownResult:
        started = time.monotonic()

        forced = False
        try:
            await asyncio.wait_for(self._idle.wait(), timeout=self.timeout)
            logger.info("All in-flight operations completed")
        except asyncio.TimeoutError:
            forced = True
            logger.warning(
                f"Shutdown timeout ({self.timeout}s) reached with {self._inflight} operations still pending"
            )

        pending = self._inflight
        failed = await self._run_hooks()

        self._state = ShutdownState.STOPPED
        result = ShutdownResult(
            reason=reason,
            forced=forced,
            pending=pending,
            duration=time.monotonic() - started,
            failed_hooks=failed,
        )
        logger.info(
            f"Shutdown complete in {result.duration:.2f}s "
            f"(forced={forced}, failed_hooks={len(failed)})"
        )

        if self.on_stopped is not None:
            self.on_stopped(forced)
        return result

    async def _run_hooks(self) -> List[str]:
        logger.info(f"Running {len(self._hooks)} cleanup hooks")
        failed: List[str] = []

        for name, hook in self._hooks:
            start = time.monotonic()
            try:
                await hook()
                logger.info(f"Cleanup hook '{name}' completed in {time.monotonic() - start:.3f}s")
            except Exception as e:
                failed.append(name)
                logger.opt(exception=e).error(f"Cleanup hook '{name}' failed: {e}")

        return failed


class ShutdownMiddleware:
    """
    ASGI middleware that counts HTTP requests as in-flight operations.

    Requests arriving while draining are answered 503 without reaching the
    app. A request counts until its response has been fully sent, so
    streamed responses hold off the drain too.
    """

    def __init__(self, app: ASGIApp, coordinator: ShutdownCoordinator):
        self.app = app
        self.coordinator = coordinator

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        if not self.coordinator.is_running():
            error = ShutdownInProgress("Server is shutting down, please try again later")
            logger.info(f"Rejected {scope['method']} {scope['path']}: shutting down")
            response = JSONResponse(error.to_dict(), status_code=error.status_code)
            await response(scope, receive, send)
            return

        async with self.coordinator.track():
            await self.app(scope, receive, send)
