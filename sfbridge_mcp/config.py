"""
Configuration management for SFBridge MCP service.

Loads settings from environment variables with SFBRIDGE_ prefix.
"""

from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Connected app credentials issued by the identity provider
    client_id: str
    client_secret: str

    # Identity provider login host (authorize + initial token exchange)
    login_url: str = "https://login.salesforce.com"

    # Public callback URL registered with the identity provider
    redirect_uri: str = "http://localhost:8001/auth/callback"

    # Scopes requested during the authorization code flow
    oauth_scope: str = "full refresh_token"

    # Anti-forgery state lifetime and sweep cadence
    state_ttl_seconds: int = 600
    state_sweep_interval_seconds: int = 3600

    # Outbound identity provider calls
    # Every call carries this timeout; transient failures are retried once
    http_timeout_seconds: float = 30.0
    retry_backoff_seconds: float = 0.5

    # Access token lifetime assumed when the token endpoint omits expires_in
    access_token_lifetime_seconds: int = 7200

    # Refresh proactively when the access token expires within this window
    refresh_threshold_seconds: int = 1800

    # Credential registry idle eviction
    max_idle_seconds: int = 86400
    registry_sweep_interval_seconds: int = 3600

    # Graceful shutdown drain budget
    shutdown_timeout_seconds: float = 30.0

    # Browser session cookie
    session_secret: str = "change-me-in-production"
    session_cookie_name: str = "sfbridge_session"
    session_max_age_seconds: int = 86400
    https_only_cookies: bool = False

    # Post-login redirect handling
    default_return_url: str = "/auth/success"
    allowed_return_origins: List[str] = []

    # Whether an IdP-reported error at the callback discards the pending state.
    # Off by default: the state is left to expire on its own.
    invalidate_state_on_idp_error: bool = False

    # Revoke the refresh token at the IdP on logout (best effort)
    revoke_on_logout: bool = True

    # Downstream REST API version used by the connection handle
    api_version: str = "v59.0"

    # Logging
    log_level: str = "INFO"

    # Server configuration
    host: str = "0.0.0.0"
    port: int = 8001

    # Uvicorn access logs (off by default)
    uvicorn_access_log: bool = False

    model_config = SettingsConfigDict(
        env_prefix="SFBRIDGE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    def validate_oauth_config(self) -> None:
        """Validate identity provider configuration at startup."""
        if not self.client_id or not self.client_secret:
            raise ValueError(
                "SFBRIDGE_CLIENT_ID and SFBRIDGE_CLIENT_SECRET are required. "
                "Create a connected app at the identity provider and set both variables."
            )
        if not self.redirect_uri:
            raise ValueError(
                "SFBRIDGE_REDIRECT_URI is required. "
                "Set this to the public /auth/callback URL registered with the identity provider."
            )
        if self.state_ttl_seconds <= 0:
            raise ValueError("SFBRIDGE_STATE_TTL_SECONDS must be positive")


# Global settings instance
settings = Settings()
