"""
Tests for the identity provider client.

The IdP is simulated with httpx.MockTransport so the real request encoding,
retry and response parsing paths run.
"""

from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlsplit

import httpx
import pytest

from sfbridge_mcp.auth.token_exchange import TokenExchangeClient
from sfbridge_mcp.errors import (
    IdentityLookupFailed,
    RefreshFailed,
    TokenExchangeFailed,
)

LOGIN_URL = "https://login.example.com"
INSTANCE_URL = "https://org.example.com"
FIXED_NOW = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


def make_client(handler) -> TokenExchangeClient:
    """Build a TokenExchangeClient whose HTTP calls go to handler."""
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return TokenExchangeClient(
        client_id="cid",
        client_secret="secret",
        login_url=LOGIN_URL,
        redirect_uri="http://localhost:8001/auth/callback",
        retry_backoff=0,
        http_client=http_client,
        clock=lambda: FIXED_NOW,
    )


def form(request: httpx.Request) -> dict:
    return {k: v[0] for k, v in parse_qs(request.content.decode()).items()}


class TestAuthorizationUrl:
    """Tests for authorization_url."""

    def test_contains_client_redirect_and_state(self):
        client = make_client(lambda request: httpx.Response(500))

        url = client.authorization_url("state-abc")
        parts = urlsplit(url)
        params = {k: v[0] for k, v in parse_qs(parts.query).items()}

        assert f"{parts.scheme}://{parts.netloc}{parts.path}" == f"{LOGIN_URL}/services/oauth2/authorize"
        assert params["response_type"] == "code"
        assert params["client_id"] == "cid"
        assert params["redirect_uri"] == "http://localhost:8001/auth/callback"
        assert params["state"] == "state-abc"


class TestExchangeCodeForTokens:
    """Tests for exchange_code_for_tokens."""

    @pytest.mark.asyncio
    async def test_success(self):
        """A 200 with tokens yields a TokenSet bound to the instance URL."""
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["form"] = form(request)
            return httpx.Response(
                200,
                json={
                    "access_token": "AT1",
                    "refresh_token": "RT1",
                    "instance_url": INSTANCE_URL + "/",
                    "issued_at": "1735732800000",
                },
            )

        client = make_client(handler)
        tokens = await client.exchange_code_for_tokens("code-1")

        assert seen["url"] == f"{LOGIN_URL}/services/oauth2/token"
        assert seen["form"]["grant_type"] == "authorization_code"
        assert seen["form"]["code"] == "code-1"
        assert seen["form"]["client_secret"] == "secret"
        assert tokens.access_token == "AT1"
        assert tokens.refresh_token == "RT1"
        assert tokens.api_base_url == INSTANCE_URL
        assert tokens.issued_at == datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_missing_issued_at_uses_clock(self):
        client = make_client(
            lambda request: httpx.Response(
                200, json={"access_token": "AT1", "refresh_token": "RT1", "instance_url": INSTANCE_URL}
            )
        )

        tokens = await client.exchange_code_for_tokens("code-1")

        assert tokens.issued_at == FIXED_NOW

    @pytest.mark.asyncio
    async def test_error_status_is_not_transient(self):
        client = make_client(
            lambda request: httpx.Response(
                400, json={"error": "invalid_grant", "error_description": "expired authorization code"}
            )
        )

        with pytest.raises(TokenExchangeFailed) as exc_info:
            await client.exchange_code_for_tokens("code-1")

        assert exc_info.value.transient is False
        assert exc_info.value.status_code == 400
        assert "invalid_grant" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_missing_refresh_token_fails(self):
        client = make_client(
            lambda request: httpx.Response(200, json={"access_token": "AT1", "instance_url": INSTANCE_URL})
        )

        with pytest.raises(TokenExchangeFailed) as exc_info:
            await client.exchange_code_for_tokens("code-1")

        assert "refresh_token" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_non_json_body_fails(self):
        client = make_client(lambda request: httpx.Response(200, text="<html>oops</html>"))

        with pytest.raises(TokenExchangeFailed):
            await client.exchange_code_for_tokens("code-1")

    @pytest.mark.asyncio
    async def test_transport_error_retried_once(self):
        """A single connection failure is retried and the retry succeeds."""
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            if len(calls) == 1:
                raise httpx.ConnectError("connection reset", request=request)
            return httpx.Response(
                200, json={"access_token": "AT1", "refresh_token": "RT1", "instance_url": INSTANCE_URL}
            )

        client = make_client(handler)
        tokens = await client.exchange_code_for_tokens("code-1")

        assert len(calls) == 2
        assert tokens.access_token == "AT1"

    @pytest.mark.asyncio
    async def test_transport_error_twice_is_transient(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            raise httpx.ConnectTimeout("timed out", request=request)

        client = make_client(handler)

        with pytest.raises(TokenExchangeFailed) as exc_info:
            await client.exchange_code_for_tokens("code-1")

        assert len(calls) == 2
        assert exc_info.value.transient is True
        assert exc_info.value.status_code == 502

    @pytest.mark.asyncio
    async def test_error_status_is_not_retried(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(503, text="unavailable")

        client = make_client(handler)

        with pytest.raises(TokenExchangeFailed) as exc_info:
            await client.exchange_code_for_tokens("code-1")

        assert len(calls) == 1
        assert exc_info.value.transient is True


class TestRefreshAccessToken:
    """Tests for refresh_access_token."""

    @pytest.mark.asyncio
    async def test_refresh_goes_to_instance_and_computes_expiry(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["form"] = form(request)
            return httpx.Response(200, json={"access_token": "AT2", "issued_at": "1735732800000"})

        client = make_client(handler)
        refreshed = await client.refresh_access_token("RT1", INSTANCE_URL)

        assert seen["url"] == f"{INSTANCE_URL}/services/oauth2/token"
        assert seen["form"]["grant_type"] == "refresh_token"
        assert seen["form"]["refresh_token"] == "RT1"
        assert refreshed.access_token == "AT2"
        assert refreshed.refresh_token is None
        assert refreshed.expires_at == datetime(2025, 1, 1, 14, 0, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_expires_in_takes_precedence(self):
        client = make_client(
            lambda request: httpx.Response(
                200, json={"access_token": "AT2", "refresh_token": "RT2", "expires_in": 600}
            )
        )

        refreshed = await client.refresh_access_token("RT1", INSTANCE_URL)

        assert refreshed.refresh_token == "RT2"
        assert refreshed.expires_at == FIXED_NOW + timedelta(seconds=600)

    @pytest.mark.asyncio
    async def test_invalid_grant_is_revoked(self):
        client = make_client(
            lambda request: httpx.Response(
                400, json={"error": "invalid_grant", "error_description": "expired access/refresh token"}
            )
        )

        with pytest.raises(RefreshFailed) as exc_info:
            await client.refresh_access_token("RT1", INSTANCE_URL)

        assert exc_info.value.revoked is True
        assert exc_info.value.status_code == 401

    @pytest.mark.asyncio
    async def test_other_errors_are_not_revoked(self):
        client = make_client(lambda request: httpx.Response(500, text="boom"))

        with pytest.raises(RefreshFailed) as exc_info:
            await client.refresh_access_token("RT1", INSTANCE_URL)

        assert exc_info.value.revoked is False

    @pytest.mark.asyncio
    async def test_network_failure_is_transient(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        client = make_client(handler)

        with pytest.raises(RefreshFailed) as exc_info:
            await client.refresh_access_token("RT1", INSTANCE_URL)

        assert exc_info.value.transient is True
        assert exc_info.value.revoked is False


class TestGetIdentity:
    """Tests for get_identity."""

    @pytest.mark.asyncio
    async def test_returns_user_and_org_ids(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["auth"] = request.headers["Authorization"]
            seen["url"] = str(request.url)
            return httpx.Response(
                200,
                json={"user_id": "005xx", "organization_id": "00Dxx", "email": "a@example.com"},
            )

        client = make_client(handler)
        identity = await client.get_identity("AT1", INSTANCE_URL)

        assert seen["auth"] == "Bearer AT1"
        assert seen["url"] == f"{INSTANCE_URL}/services/oauth2/userinfo"
        assert identity.external_user_id == "005xx"
        assert identity.tenant_id == "00Dxx"
        assert identity.email == "a@example.com"

    @pytest.mark.asyncio
    async def test_missing_org_id_fails(self):
        client = make_client(lambda request: httpx.Response(200, json={"user_id": "005xx"}))

        with pytest.raises(IdentityLookupFailed):
            await client.get_identity("AT1", INSTANCE_URL)

    @pytest.mark.asyncio
    async def test_error_status_fails(self):
        client = make_client(lambda request: httpx.Response(403, json=[{"errorCode": "FORBIDDEN"}]))

        with pytest.raises(IdentityLookupFailed):
            await client.get_identity("AT1", INSTANCE_URL)


class TestRevokeToken:
    """Tests for revoke_token."""

    @pytest.mark.asyncio
    async def test_posts_token_to_revoke_endpoint(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["form"] = form(request)
            return httpx.Response(200)

        client = make_client(handler)
        await client.revoke_token("RT1", INSTANCE_URL)

        assert seen["url"] == f"{INSTANCE_URL}/services/oauth2/revoke"
        assert seen["form"] == {"token": "RT1"}

    @pytest.mark.asyncio
    async def test_error_status_raises(self):
        client = make_client(lambda request: httpx.Response(400, json={"error": "unsupported_token_type"}))

        with pytest.raises(httpx.HTTPStatusError):
            await client.revoke_token("RT1", INSTANCE_URL)
