"""
MCP tool for querying records on the caller's connected org.

The tool resolves the browser session carried on the MCP HTTP request to a
stored credential, builds a short-lived connection and runs the query. Token
refresh happens transparently inside the connection.
"""

from typing import Annotated, Any, Dict, List

import httpx
from fastmcp import FastMCP
from fastmcp.exceptions import ToolError
from fastmcp.server.dependencies import get_http_request
from loguru import logger
from pydantic import BaseModel, Field

from sfbridge_mcp.connection import ConnectionFactory
from sfbridge_mcp.errors import NoActiveConnection, SFBridgeError
from sfbridge_mcp.services import Services


class QueryResult(BaseModel):
    """Result page from the REST query endpoint."""

    total_size: int = Field(alias="totalSize")
    done: bool
    records: List[Dict[str, Any]]

    model_config = {"populate_by_name": True}


async def run_query(factory: ConnectionFactory, session_id: str, soql: str) -> QueryResult:
    """
    Run a query as the user bound to session_id.

    Raises:
        NoActiveConnection: The session has no stored credential
        SessionExpired: The refresh grant was revoked
        httpx.HTTPStatusError: The API rejected the query
    """
    async with factory.for_session(session_id) as conn:
        logger.info(f"Running query for user={conn.user_id} org={conn.tenant_id}")
        data = await conn.query(soql)
        return QueryResult.model_validate(data)


def current_session_id() -> str:
    """Session id from the signed cookie on the current MCP request."""
    request = get_http_request()
    session_id = request.session.get("sid") if "session" in request.scope else None
    if not session_id:
        raise NoActiveConnection("No browser session on this request; connect via /auth/login first")
    return session_id


def register_record_tools(mcp: FastMCP, services: Services) -> None:
    """Register record tools bound to services."""

    @mcp.tool()
    async def query_records(
        soql: Annotated[
            str,
            Field(
                min_length=1,
                pattern=r"(?i)^\s*select\s",
                description="SOQL SELECT statement, e.g. SELECT Id, Name FROM Account LIMIT 10",
            ),
        ],
    ) -> QueryResult:
        """
        Query records from the connected org.

        Args:
            soql: SOQL SELECT statement

        Returns:
            QueryResult with totalSize, done and the matching records
        """
        try:
            return await run_query(services.factory, current_session_id(), soql)
        except SFBridgeError as e:
            raise ToolError(f"{e.code}: {e.message}") from e
        except httpx.HTTPStatusError as e:
            raise ToolError(
                f"Query failed with HTTP {e.response.status_code}: {e.response.text[:500]}"
            ) from e
