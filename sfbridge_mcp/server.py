"""
SFBridge server: OAuth routes plus the FastMCP streamable HTTP app.

Run with ``sfbridge-mcp`` or ``python -m sfbridge_mcp.server``.
"""

import asyncio
import sys
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import uvicorn
from loguru import logger
from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.sessions import SessionMiddleware
from starlette.routing import Mount

from sfbridge_mcp.config import Settings, settings
from sfbridge_mcp.errors import SFBridgeError
from sfbridge_mcp.mcp_instance import create_mcp
from sfbridge_mcp.routes import auth_routes, sfbridge_error_handler
from sfbridge_mcp.services import Services, build_services
from sfbridge_mcp.shutdown import ShutdownMiddleware, ShutdownState


def configure_logging(level: str) -> None:
    logger.remove()  # Remove default handler
    logger.add(
        sys.stderr,
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>",
        level=level,
        colorize=True,
    )


def create_app(services: Services, include_mcp: bool = True) -> Starlette:
    """
    Build the ASGI app around a service container.

    Args:
        services: Shared collaborators, stored on app.state.services
        include_mcp: Mount the FastMCP app at /mcp (tests of the auth flow skip it)
    """
    app_settings = services.settings
    routes = list(auth_routes)

    mcp_app = None
    if include_mcp:
        mcp_app = create_mcp(services).http_app(path="/mcp")
        routes.append(Mount("/", app=mcp_app))

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        services.start_background_tasks()
        if mcp_app is not None:
            async with mcp_app.lifespan(app):
                yield
        else:
            yield
        # No-op when a signal already drove the shutdown
        await services.shutdown.shutdown("lifespan exit")

    app = Starlette(
        routes=routes,
        middleware=[
            Middleware(ShutdownMiddleware, coordinator=services.shutdown),
            Middleware(
                SessionMiddleware,
                secret_key=app_settings.session_secret,
                session_cookie=app_settings.session_cookie_name,
                max_age=app_settings.session_max_age_seconds,
                https_only=app_settings.https_only_cookies,
            ),
        ],
        exception_handlers={SFBridgeError: sfbridge_error_handler},
        lifespan=lifespan,
    )
    app.state.services = services
    return app


class GracefulServer(uvicorn.Server):
    """
    uvicorn server whose exit signals go through the ShutdownCoordinator.

    The first SIGINT/SIGTERM starts the drain; uvicorn is told to exit once the
    coordinator reports stopped. A second signal while draining is ignored; a
    third forces exit. After the coordinator has stopped, signals go to
    uvicorn's own handling.
    """

    def __init__(self, config: uvicorn.Config, services: Services):
        super().__init__(config)
        self.services = services
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._signals_while_draining = 0
        services.shutdown.on_stopped = self._on_stopped

    async def serve(self, sockets=None) -> None:
        self._loop = asyncio.get_running_loop()
        await super().serve(sockets=sockets)

    def handle_exit(self, sig: int, frame) -> None:
        state = self.services.shutdown.state
        if self._loop is None or state is ShutdownState.STOPPED:
            super().handle_exit(sig, frame)
            return

        if state is ShutdownState.DRAINING:
            self._signals_while_draining += 1
            if self._signals_while_draining == 1:
                logger.warning(f"Received signal {sig} while draining, ignoring (send again to force exit)")
                return
            logger.warning(f"Received signal {sig} again while draining, forcing exit")
            self.should_exit = True
            self.force_exit = True
            return

        logger.info(f"Received signal {sig}, initiating graceful shutdown")
        self._loop.call_soon_threadsafe(self.services.shutdown.shutdown, f"signal {sig}")

    def _on_stopped(self, forced: bool) -> None:
        self.should_exit = True
        if forced:
            self.force_exit = True


def main(app_settings: Settings = settings) -> None:
    configure_logging(app_settings.log_level)
    app_settings.validate_oauth_config()

    logger.info("🚀 SFBridge MCP Server")
    logger.info(f"✓ Identity provider: {app_settings.login_url}")
    logger.info(f"✓ OAuth callback: {app_settings.redirect_uri}")
    logger.info(f"✓ Graceful shutdown timeout: {app_settings.shutdown_timeout_seconds}s")

    services = build_services(app_settings)
    app = create_app(services)

    config = uvicorn.Config(
        app,
        host=app_settings.host,
        port=app_settings.port,
        log_level=app_settings.log_level.lower(),
        access_log=app_settings.uvicorn_access_log,
        timeout_graceful_shutdown=int(app_settings.shutdown_timeout_seconds),
    )
    server = GracefulServer(config, services)

    logger.info(f"🌐 Starting Uvicorn on {app_settings.host}:{app_settings.port} (MCP path=/mcp)")
    asyncio.run(server.serve())


if __name__ == "__main__":
    main()
