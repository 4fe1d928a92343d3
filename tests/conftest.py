"""
Pytest configuration and fixtures for sfbridge_mcp tests.

Sets up required environment variables before any imports.
"""

import os

# Set required environment variables BEFORE any sfbridge_mcp imports
# These are only needed to satisfy pydantic-settings validation
# Config uses SFBRIDGE_ prefix (see config.py model_config)
os.environ.setdefault("SFBRIDGE_CLIENT_ID", "test-client-id")
os.environ.setdefault("SFBRIDGE_CLIENT_SECRET", "test-client-secret")
os.environ.setdefault("SFBRIDGE_LOGIN_URL", "https://login.example.com")
