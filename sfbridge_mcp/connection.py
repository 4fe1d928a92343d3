"""
Per-user API connections built from stored credentials.

A ConnectionHandle is an httpx.AsyncClient bound to one user's instance URL
and access token. It lives for a single logical operation:

    async with factory.for_session(session_id) as conn:
        records = await conn.query("SELECT Id FROM Account LIMIT 5")

Token refresh flow:
1. Before building, refresh proactively if the token expires soon
2. On a 401 from the API, the transport refreshes once and replays
3. Every refresh is written back through the injected token writer
   (ConnectionRegistry.update_tokens) before the triggering call returns
4. A revoked grant removes the stored record and raises SessionExpired
"""

from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, AsyncGenerator, Awaitable, Callable, Dict, Optional

import httpx
from loguru import logger

from sfbridge_mcp.auth.state import utcnow
from sfbridge_mcp.auth.token_exchange import RefreshedToken, TokenExchangeClient
from sfbridge_mcp.errors import NoActiveConnection, RefreshFailed, SessionExpired
from sfbridge_mcp.registry import ConnectionRegistry, CredentialRecord, TokenUpdate
from sfbridge_mcp.transports.refreshing import RefreshingBearerTransport

# Narrow write capability handed to the factory instead of the whole registry.
# Called as writer(user_id, update, connection_id); returns False when the
# record is gone or belongs to a newer login.
TokenWriter = Callable[[str, TokenUpdate, Optional[str]], Awaitable[bool]]


class ConnectionHandle:
    """Short-lived authenticated client for one user's API instance."""

    def __init__(
        self,
        record: CredentialRecord,
        client: httpx.AsyncClient,
        transport: RefreshingBearerTransport,
        api_version: str,
    ):
        self.user_id = record.user_id
        self.connection_id = record.connection_id
        self.api_base_url = record.api_base_url
        self.tenant_id = record.tenant_id
        self.api_version = api_version
        self._client = client
        self._transport = transport

    @property
    def access_token(self) -> str:
        """Token currently in use (changes after a transparent refresh)."""
        return self._transport.access_token

    @property
    def refreshed(self) -> bool:
        return self._transport.refreshed

    async def get(self, path: str, params: Optional[Dict[str, Any]] = None) -> httpx.Response:
        """
        Make GET request to the API.

        Raises:
            httpx.HTTPStatusError: If request fails
            SessionExpired: If the grant was revoked during a refresh
        """
        logger.debug(f"GET {path} params={params}")
        response = await self._client.get(path, params=params)
        response.raise_for_status()
        return response

    async def post(self, path: str, json: Optional[Dict[str, Any]] = None) -> httpx.Response:
        """Make POST request to the API."""
        logger.debug(f"POST {path}")
        response = await self._client.post(path, json=json)
        response.raise_for_status()
        return response

    async def patch(self, path: str, json: Optional[Dict[str, Any]] = None) -> httpx.Response:
        """Make PATCH request to the API."""
        logger.debug(f"PATCH {path}")
        response = await self._client.patch(path, json=json)
        response.raise_for_status()
        return response

    async def delete(self, path: str) -> httpx.Response:
        """Make DELETE request to the API."""
        logger.debug(f"DELETE {path}")
        response = await self._client.delete(path)
        response.raise_for_status()
        return response

    async def query(self, soql: str) -> Dict[str, Any]:
        """Run a query through the REST query endpoint."""
        response = await self.get(f"/services/data/{self.api_version}/query", params={"q": soql})
        return response.json()

    async def identity(self) -> Dict[str, Any]:
        """Fetch the user's identity document (also a cheap liveness check)."""
        response = await self.get("/services/oauth2/userinfo")
        return response.json()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "ConnectionHandle":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()


class ConnectionFactory:
    """
    Builds ConnectionHandles from registry records.

    Refreshed tokens flow back through token_writer, which defaults to the
    registry's update_tokens.
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        idp: TokenExchangeClient,
        token_writer: Optional[TokenWriter] = None,
        *,
        refresh_threshold: timedelta = timedelta(minutes=30),
        api_version: str = "v59.0",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize the factory.

        Args:
            registry: Credential lookup
            idp: Client used to refresh access tokens
            token_writer: Where refreshed tokens are persisted
            refresh_threshold: Refresh before building if expiry is this close
            api_version: REST API version used by handle helpers
            timeout: Per-request timeout for API calls
            transport: Underlying httpx transport (tests inject MockTransport)
            clock: Time source, overridable for tests
        """
        self._registry = registry
        self._idp = idp
        self._write_tokens = token_writer or registry.update_tokens
        self._refresh_threshold = refresh_threshold
        self._api_version = api_version
        self._timeout = httpx.Timeout(timeout)
        self._transport = transport
        self._clock = clock

    async def build_for_user(self, user_id: str) -> ConnectionHandle:
        """
        Build a handle for a user's stored credential.

        Raises:
            NoActiveConnection: The user has no stored credential
            SessionExpired: A proactive refresh found the grant revoked
            RefreshFailed: A proactive refresh failed for another reason
        """
        record = await self._registry.get_by_user_id(user_id)
        if record is None:
            raise NoActiveConnection(f"No active connection for user: {user_id}")

        # Mutable view of the tokens this handle works with
        current = {"access_token": record.access_token, "refresh_token": record.refresh_token}

        async def refresher(rejected_token: str) -> str:
            refreshed = await self._refresh(record, current["refresh_token"])
            current["access_token"] = refreshed.access_token
            if refreshed.refresh_token:
                current["refresh_token"] = refreshed.refresh_token
            return refreshed.access_token

        if self._needs_refresh(record):
            logger.info(f"Access token for user={user_id} expires soon, refreshing before use")
            await refresher(record.access_token)

        transport = RefreshingBearerTransport(
            access_token=current["access_token"],
            refresher=refresher,
            transport=self._transport,
        )
        client = httpx.AsyncClient(
            transport=transport,
            base_url=record.api_base_url,
            timeout=self._timeout,
        )
        return ConnectionHandle(record, client, transport, self._api_version)

    async def build_for_session(self, session_id: str) -> ConnectionHandle:
        """
        Resolve a browser session to its user and build a handle.

        Raises:
            NoActiveConnection: The session is unknown or superseded
        """
        record = await self._registry.get_by_session_id(session_id)
        if record is None:
            raise NoActiveConnection("No active connection for this session")
        return await self.build_for_user(record.user_id)

    @asynccontextmanager
    async def for_user(self, user_id: str) -> AsyncGenerator[ConnectionHandle, None]:
        """Build a handle for a user and close it when the block exits."""
        handle = await self.build_for_user(user_id)
        async with handle:
            yield handle

    @asynccontextmanager
    async def for_session(self, session_id: str) -> AsyncGenerator[ConnectionHandle, None]:
        """Build a handle for a session and close it when the block exits."""
        handle = await self.build_for_session(session_id)
        async with handle:
            yield handle

    def _needs_refresh(self, record: CredentialRecord) -> bool:
        if record.expires_at is None:
            return False
        return self._clock() >= record.expires_at - self._refresh_threshold

    async def _refresh(self, record: CredentialRecord, refresh_token: str) -> RefreshedToken:
        """Refresh through the IdP and persist the result."""
        try:
            refreshed = await self._idp.refresh_access_token(refresh_token, record.api_base_url)
        except RefreshFailed as e:
            if e.revoked:
                logger.warning(f"Refresh grant revoked for user={record.user_id}, dropping connection")
                await self._registry.remove_credential(record.user_id, connection_id=record.connection_id)
                raise SessionExpired(
                    "Session expired. Please re-authenticate to reconnect your account."
                ) from e
            logger.error(f"Token refresh failed for user={record.user_id}: {e}")
            raise

        written = await self._write_tokens(
            record.user_id,
            TokenUpdate(
                access_token=refreshed.access_token,
                refresh_token=refreshed.refresh_token,
                expires_at=refreshed.expires_at,
            ),
            record.connection_id,
        )
        if not written:
            logger.warning(
                f"Refreshed token for user={record.user_id} not stored: connection "
                f"{record.connection_id} was removed or superseded meanwhile"
            )
        else:
            logger.info(f"✓ Refreshed access token persisted for user={record.user_id}")
        return refreshed
