"""
Authentication module for SFBridge MCP.

OAuth 2.0 authorization-code flow against the identity provider: anti-forgery
state handling and the token endpoint client.
"""

from sfbridge_mcp.auth.state import AuthorizationState, OAuthStateManager
from sfbridge_mcp.auth.token_exchange import (
    Identity,
    RefreshedToken,
    TokenExchangeClient,
    TokenSet,
)

__all__ = [
    "AuthorizationState",
    "OAuthStateManager",
    "Identity",
    "RefreshedToken",
    "TokenExchangeClient",
    "TokenSet",
]
