"""
FastMCP instance for SFBridge.

Authentication is not done by FastMCP here: callers connect their account
through the /auth routes first, and tools resolve the caller's session to a
stored credential.
"""

from fastmcp import FastMCP
from loguru import logger

from sfbridge_mcp.services import Services
from sfbridge_mcp.tools.records import register_record_tools


def create_mcp(services: Services) -> FastMCP:
    """Create the MCP server and register its tools."""
    mcp = FastMCP(name="SFBridge")
    register_record_tools(mcp, services)
    logger.info("✓ SFBridge MCP server initialized")
    return mcp
