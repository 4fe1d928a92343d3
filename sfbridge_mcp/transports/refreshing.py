"""
Custom httpx transport that authenticates requests with a user's access token.

The RefreshingBearerTransport wraps httpx.AsyncHTTPTransport and:
- injects the current bearer token on every outbound request
- on a 401 from the API, refreshes the token once, lets the caller persist
  it, and replays the request with the new token
"""

from typing import Awaitable, Callable, Optional

import httpx
from loguru import logger

# Called with the rejected access token; returns the token to retry with
Refresher = Callable[[str], Awaitable[str]]


class RefreshingBearerTransport(httpx.AsyncBaseTransport):
    """
    Transport that adds Authorization: Bearer and recovers from expired tokens.

    The refresher is awaited before the retried request is sent, so any
    write-back it performs has committed before the original call returns.
    """

    def __init__(
        self,
        access_token: str,
        refresher: Refresher,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize transport.

        Args:
            access_token: Token to start with
            refresher: Coroutine producing a fresh token; may raise to abort
            transport: Underlying transport (defaults to AsyncHTTPTransport)
        """
        self.access_token = access_token
        self._refresher = refresher
        self._transport = transport or httpx.AsyncHTTPTransport()
        self.refreshed = False

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        """
        Send the request, refreshing and replaying once on 401.

        Args:
            request: The HTTP request to process

        Returns:
            HTTP response from the API
        """
        # Buffer the body so the request can be replayed
        await request.aread()

        request.headers["Authorization"] = f"Bearer {self.access_token}"
        response = await self._transport.handle_async_request(request)

        if response.status_code != 401 or self.refreshed:
            logger.debug(f"{request.method} {request.url.path} -> {response.status_code}")
            return response

        await response.aclose()
        logger.info(f"{request.method} {request.url.path} -> 401, refreshing access token")

        rejected = self.access_token
        self.access_token = await self._refresher(rejected)
        self.refreshed = True

        request.headers["Authorization"] = f"Bearer {self.access_token}"
        response = await self._transport.handle_async_request(request)
        logger.debug(f"{request.method} {request.url.path} (retried) -> {response.status_code}")
        return response

    async def aclose(self) -> None:
        """Close the underlying transport."""
        await self._transport.aclose()
