"""
Service container wiring the OAuth core together.

Built once at process start and handed to every request handler via
``app.state.services`` (and to MCP tools by closure), so tests can build
their own container with stubbed HTTP transports.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import timedelta
from typing import List, Optional

import httpx
from loguru import logger

from sfbridge_mcp.auth.state import OAuthStateManager
from sfbridge_mcp.auth.token_exchange import TokenExchangeClient
from sfbridge_mcp.config import Settings
from sfbridge_mcp.connection import ConnectionFactory
from sfbridge_mcp.registry import ConnectionRegistry
from sfbridge_mcp.shutdown import ShutdownCoordinator
from sfbridge_mcp.utils.periodic import run_periodically


@dataclass
class Services:
    """Long-lived collaborators shared by all requests."""

    settings: Settings
    states: OAuthStateManager
    idp: TokenExchangeClient
    registry: ConnectionRegistry
    factory: ConnectionFactory
    shutdown: ShutdownCoordinator
    _background: List[asyncio.Task] = field(default_factory=list, repr=False)

    @property
    def max_idle(self) -> timedelta:
        return timedelta(seconds=self.settings.max_idle_seconds)

    def start_background_tasks(self) -> None:
        """Start the state and registry sweeps on the running loop."""
        if self._background:
            return
        loop = asyncio.get_running_loop()
        self._background = [
            loop.create_task(
                run_periodically(
                    "oauth-state-sweep",
                    self.settings.state_sweep_interval_seconds,
                    self.states.sweep,
                )
            ),
            loop.create_task(
                run_periodically(
                    "registry-idle-sweep",
                    self.settings.registry_sweep_interval_seconds,
                    lambda: self.registry.sweep_expired(self.max_idle),
                )
            ),
        ]

    async def stop_background_tasks(self) -> None:
        for task in self._background:
            task.cancel()
        await asyncio.gather(*self._background, return_exceptions=True)
        self._background = []


def build_services(
    settings: Settings,
    *,
    idp_http_client: Optional[httpx.AsyncClient] = None,
    api_transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Services:
    """
    Construct the service container and register shutdown cleanup.

    Args:
        settings: Application settings
        idp_http_client: Optional client for IdP calls (tests inject a mock)
        api_transport: Optional transport for downstream API calls
    """
    states = OAuthStateManager(ttl=timedelta(seconds=settings.state_ttl_seconds))
    idp = TokenExchangeClient.from_settings(settings, http_client=idp_http_client)
    registry = ConnectionRegistry()
    factory = ConnectionFactory(
        registry,
        idp,
        token_writer=registry.update_tokens,
        refresh_threshold=timedelta(seconds=settings.refresh_threshold_seconds),
        api_version=settings.api_version,
        timeout=settings.http_timeout_seconds,
        transport=api_transport,
    )
    coordinator = ShutdownCoordinator(timeout=settings.shutdown_timeout_seconds)

    services = Services(
        settings=settings,
        states=states,
        idp=idp,
        registry=registry,
        factory=factory,
        shutdown=coordinator,
    )

    async def final_sweep() -> None:
        removed = await registry.sweep_expired(services.max_idle)
        logger.info(f"Final cleanup: removed {removed} idle connections")

    coordinator.add_cleanup_hook("background-tasks", services.stop_background_tasks)
    coordinator.add_cleanup_hook("registry-sweep", final_sweep)
    coordinator.add_cleanup_hook("registry-close", registry.close)
    coordinator.add_cleanup_hook("idp-client-close", idp.aclose)

    logger.debug("Services built")
    return services
