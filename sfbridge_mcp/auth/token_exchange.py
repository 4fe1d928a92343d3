"""
Identity provider client for the authorization code flow.

Talks to the IdP's OAuth endpoints:
1. Authorize URL construction (browser redirect, no network call)
2. Code-for-token exchange - POST /services/oauth2/token (authorization_code)
3. Access token refresh - POST /services/oauth2/token (refresh_token)
4. Identity lookup - GET /services/oauth2/userinfo (bearer)
5. Revocation - POST /services/oauth2/revoke

Every call carries an explicit timeout. Transport failures (connection
reset, timeouts) are retried once after a short backoff; any HTTP response,
including an error response, is final.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional, Type
from urllib.parse import urlencode

import httpx
from loguru import logger
from pydantic import BaseModel, ValidationError

from sfbridge_mcp.auth.state import utcnow
from sfbridge_mcp.errors import (
    IdentityLookupFailed,
    RefreshFailed,
    SFBridgeError,
    TokenExchangeFailed,
)

AUTHORIZE_PATH = "/services/oauth2/authorize"
TOKEN_PATH = "/services/oauth2/token"
USERINFO_PATH = "/services/oauth2/userinfo"
REVOKE_PATH = "/services/oauth2/revoke"


# Results handed to callers


class TokenSet(BaseModel):
    """Tokens obtained from a successful code exchange."""

    access_token: str
    refresh_token: str
    api_base_url: str
    issued_at: datetime
    identity_url: Optional[str] = None


class RefreshedToken(BaseModel):
    """A new access token (and rotated refresh token, if the IdP issued one)."""

    access_token: str
    expires_at: datetime
    refresh_token: Optional[str] = None


class Identity(BaseModel):
    """Minimal identity labels for a credential record."""

    external_user_id: str
    tenant_id: str
    username: Optional[str] = None
    email: Optional[str] = None


# Raw IdP response shapes


class _CodeExchangeResponse(BaseModel):
    access_token: str
    refresh_token: str
    instance_url: str
    issued_at: Optional[str] = None
    id: Optional[str] = None
    token_type: Optional[str] = None


class _RefreshResponse(BaseModel):
    access_token: str
    refresh_token: Optional[str] = None
    issued_at: Optional[str] = None
    expires_in: Optional[int] = None


class _UserInfoResponse(BaseModel):
    user_id: str
    organization_id: str
    preferred_username: Optional[str] = None
    email: Optional[str] = None


class TokenExchangeClient:
    """
    OAuth client for the identity provider's token and identity endpoints.

    Owns an httpx.AsyncClient unless one is injected (tests inject a client
    backed by httpx.MockTransport).
    """

    def __init__(
        self,
        *,
        client_id: str,
        client_secret: str,
        login_url: str,
        redirect_uri: str,
        scope: str = "full refresh_token",
        timeout: float = 30.0,
        retry_backoff: float = 0.5,
        access_token_lifetime: timedelta = timedelta(hours=2),
        http_client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize the client.

        Args:
            client_id: Connected app consumer key
            client_secret: Connected app consumer secret
            login_url: IdP login host (e.g., https://login.salesforce.com)
            redirect_uri: Callback URL registered with the IdP
            scope: Space-separated scopes requested at authorize time
            timeout: Per-request timeout in seconds
            retry_backoff: Delay before the single retry on transport failure
            access_token_lifetime: Assumed lifetime when expires_in is absent
            http_client: Optional pre-built client (ownership stays with caller)
            clock: Time source, overridable for tests
        """
        self.client_id = client_id
        self.client_secret = client_secret
        self.login_url = login_url.rstrip("/")
        self.redirect_uri = redirect_uri
        self.scope = scope
        self._timeout = httpx.Timeout(timeout)
        self._retry_backoff = retry_backoff
        self._access_token_lifetime = access_token_lifetime
        self._clock = clock

        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=self._timeout)

        logger.debug(f"TokenExchangeClient initialized: login_url={self.login_url}, timeout={timeout}s")

    @classmethod
    def from_settings(cls, settings, http_client: Optional[httpx.AsyncClient] = None) -> "TokenExchangeClient":
        return cls(
            client_id=settings.client_id,
            client_secret=settings.client_secret,
            login_url=settings.login_url,
            redirect_uri=settings.redirect_uri,
            scope=settings.oauth_scope,
            timeout=settings.http_timeout_seconds,
            retry_backoff=settings.retry_backoff_seconds,
            access_token_lifetime=timedelta(seconds=settings.access_token_lifetime_seconds),
            http_client=http_client,
        )

    def authorization_url(self, state_token: str) -> str:
        """Build the IdP authorize URL the browser is redirected to."""
        params = {
            "response_type": "code",
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "scope": self.scope,
            "state": state_token,
            "prompt": "login consent",
        }
        return f"{self.login_url}{AUTHORIZE_PATH}?{urlencode(params)}"

    async def exchange_code_for_tokens(self, code: str) -> TokenSet:
        """
        Exchange an authorization code for access and refresh tokens.

        Args:
            code: Authorization code from the callback

        Returns:
            TokenSet with tokens and the API base URL they are valid against

        Raises:
            TokenExchangeFailed: Network failure after retry (transient), error
                status, non-JSON body, or missing fields
        """
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "redirect_uri": self.redirect_uri,
        }

        try:
            response = await self._send("POST", f"{self.login_url}{TOKEN_PATH}", data=data)
        except httpx.TransportError as e:
            raise TokenExchangeFailed(f"Token endpoint unreachable: {e}", transient=True) from e

        if response.status_code != 200:
            error, description = _oauth_error(response)
            logger.error(f"Token exchange failed: HTTP {response.status_code} {error}")
            raise TokenExchangeFailed(
                f"Token exchange failed: {response.status_code} {error or ''} {description or ''}".strip(),
                transient=response.status_code >= 500,
            )

        payload = _parse(response, _CodeExchangeResponse, TokenExchangeFailed, "Token exchange")
        logger.debug(f"✓ Authorization code exchanged (instance={payload.instance_url})")

        return TokenSet(
            access_token=payload.access_token,
            refresh_token=payload.refresh_token,
            api_base_url=payload.instance_url.rstrip("/"),
            issued_at=_parse_issued_at(payload.issued_at) or self._clock(),
            identity_url=payload.id,
        )

    async def refresh_access_token(self, refresh_token: str, api_base_url: str) -> RefreshedToken:
        """
        Obtain a new access token from a refresh token.

        Args:
            refresh_token: Stored refresh token
            api_base_url: Instance the credential is bound to

        Returns:
            RefreshedToken with the new access token and its expiry

        Raises:
            RefreshFailed: revoked=True when the IdP reports invalid_grant,
                transient=True when the network failed twice
        """
        data = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
        }

        try:
            response = await self._send("POST", f"{api_base_url.rstrip('/')}{TOKEN_PATH}", data=data)
        except httpx.TransportError as e:
            raise RefreshFailed(f"Token endpoint unreachable: {e}", transient=True) from e

        if response.status_code != 200:
            error, description = _oauth_error(response)
            revoked = error == "invalid_grant"
            logger.warning(
                f"Token refresh failed: HTTP {response.status_code} {error} "
                f"({'grant revoked' if revoked else 'not revoked'})"
            )
            raise RefreshFailed(
                f"Token refresh failed: {response.status_code} {error or ''} {description or ''}".strip(),
                revoked=revoked,
            )

        payload = _parse(response, _RefreshResponse, RefreshFailed, "Token refresh")

        if payload.expires_in is not None:
            expires_at = self._clock() + timedelta(seconds=payload.expires_in)
        else:
            issued_at = _parse_issued_at(payload.issued_at) or self._clock()
            expires_at = issued_at + self._access_token_lifetime

        logger.debug(f"✓ Access token refreshed (expires at {expires_at.isoformat()})")
        return RefreshedToken(
            access_token=payload.access_token,
            expires_at=expires_at,
            refresh_token=payload.refresh_token,
        )

    async def get_identity(self, access_token: str, api_base_url: str) -> Identity:
        """
        Fetch identity labels for a freshly issued access token.

        Used for display and audit only, never for authorization.

        Raises:
            IdentityLookupFailed: Network failure, error status, non-JSON body,
                or missing user/organization ids
        """
        try:
            response = await self._send(
                "GET",
                f"{api_base_url.rstrip('/')}{USERINFO_PATH}",
                headers={"Authorization": f"Bearer {access_token}", "Accept": "application/json"},
            )
        except httpx.TransportError as e:
            raise IdentityLookupFailed(f"Identity endpoint unreachable: {e}") from e

        if response.status_code != 200:
            raise IdentityLookupFailed(
                f"Identity lookup failed with status {response.status_code}"
            )

        payload = _parse(response, _UserInfoResponse, IdentityLookupFailed, "Identity lookup")
        return Identity(
            external_user_id=payload.user_id,
            tenant_id=payload.organization_id,
            username=payload.preferred_username,
            email=payload.email,
        )

    async def revoke_token(self, token: str, api_base_url: str) -> None:
        """
        Revoke a token at the IdP.

        Raises:
            httpx.HTTPError: Network failure or non-2xx response
        """
        response = await self._send(
            "POST",
            f"{api_base_url.rstrip('/')}{REVOKE_PATH}",
            data={"token": token},
        )
        response.raise_for_status()

    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """
        Send a request, retrying once on transport failure.

        HTTP error statuses are returned, not raised, and never retried.
        """
        max_attempts = 2

        for attempt in range(1, max_attempts + 1):
            try:
                return await self._client.request(method, url, timeout=self._timeout, **kwargs)
            except httpx.TransportError as e:
                if attempt == max_attempts:
                    logger.error(f"{method} {url} failed after {max_attempts} attempts: {e!r}")
                    raise
                logger.warning(f"{method} {url} transport error ({e!r}), retrying in {self._retry_backoff}s")
                await asyncio.sleep(self._retry_backoff)

        raise AssertionError("unreachable")

    async def aclose(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._owns_client:
            await self._client.aclose()
        logger.debug("TokenExchangeClient closed")


def _oauth_error(response: httpx.Response) -> tuple[Optional[str], Optional[str]]:
    """Extract (error, error_description) from an OAuth error body, if any."""
    try:
        body = response.json()
    except ValueError:
        return None, None
    if not isinstance(body, dict):
        return None, None
    return body.get("error"), body.get("error_description")


def _parse(
    response: httpx.Response,
    model: Type[BaseModel],
    error_cls: Type[SFBridgeError],
    operation: str,
):
    """Decode and validate a JSON body, mapping each failure to error_cls."""
    try:
        body: Dict[str, Any] = response.json()
    except ValueError as e:
        raise error_cls(f"{operation} returned a non-JSON body") from e

    if not isinstance(body, dict):
        raise error_cls(f"{operation} returned an unexpected JSON document")

    try:
        return model.model_validate(body)
    except ValidationError as e:
        missing = ", ".join(str(err["loc"][0]) for err in e.errors() if err.get("loc"))
        raise error_cls(f"{operation} response missing or invalid fields: {missing}") from e


def _parse_issued_at(value: Optional[str]) -> Optional[datetime]:
    """Parse the IdP's issued_at (milliseconds since epoch, as a string)."""
    if not value:
        return None
    try:
        return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        logger.warning(f"Ignoring unparseable issued_at={value!r}")
        return None
