"""
Tests for the query_records MCP tool helpers.
"""

from unittest.mock import MagicMock, patch

import httpx
import pytest

from sfbridge_mcp.auth.token_exchange import TokenExchangeClient
from sfbridge_mcp.connection import ConnectionFactory
from sfbridge_mcp.errors import NoActiveConnection
from sfbridge_mcp.registry import ConnectionRegistry, Credential
from sfbridge_mcp.tools.records import current_session_id, run_query


def make_factory(registry: ConnectionRegistry, api_handler) -> ConnectionFactory:
    idp = TokenExchangeClient(
        client_id="cid",
        client_secret="secret",
        login_url="https://login.example.com",
        redirect_uri="http://localhost:8001/auth/callback",
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(500))),
    )
    return ConnectionFactory(registry, idp, transport=httpx.MockTransport(api_handler))


class TestRunQuery:
    """Tests for run_query."""

    @pytest.mark.asyncio
    async def test_returns_parsed_result(self):
        registry = ConnectionRegistry()
        await registry.store_credential(
            "user-1",
            "sid-1",
            Credential(access_token="AT1", refresh_token="RT1", api_base_url="https://org.example.com"),
        )

        def api(request: httpx.Request) -> httpx.Response:
            assert request.url.params["q"] == "SELECT Id, Name FROM Account"
            return httpx.Response(
                200,
                json={
                    "totalSize": 1,
                    "done": True,
                    "records": [{"Id": "001xx", "Name": "Acme"}],
                },
            )

        result = await run_query(make_factory(registry, api), "sid-1", "SELECT Id, Name FROM Account")

        assert result.total_size == 1
        assert result.done is True
        assert result.records[0]["Name"] == "Acme"

    @pytest.mark.asyncio
    async def test_unknown_session(self):
        factory = make_factory(ConnectionRegistry(), lambda request: httpx.Response(200))

        with pytest.raises(NoActiveConnection):
            await run_query(factory, "sid-unknown", "SELECT Id FROM Account")


class TestCurrentSessionId:
    """Tests for resolving the caller's session from the MCP request."""

    def test_reads_sid_from_session(self):
        request = MagicMock()
        request.scope = {"session": {"sid": "sid-1"}}
        request.session = {"sid": "sid-1"}

        with patch("sfbridge_mcp.tools.records.get_http_request", return_value=request):
            assert current_session_id() == "sid-1"

    def test_missing_session_raises(self):
        request = MagicMock()
        request.scope = {}

        with patch("sfbridge_mcp.tools.records.get_http_request", return_value=request):
            with pytest.raises(NoActiveConnection):
                current_session_id()
