"""
HTTP endpoints for the browser OAuth flow.

- GET  /auth/login     start a login, redirect to the IdP
- GET  /auth/callback  finish a login, store the credential
- GET  /auth/status    connection status for the current browser session
- POST /auth/logout    drop the credential and the session
- GET  /auth/success   default post-login landing location
- GET  /health         liveness (503 while shutting down)

Handlers only sequence calls into the core services; errors raised as
SFBridgeError are rendered by sfbridge_error_handler.
"""

import secrets
from datetime import datetime, timedelta, timezone
from typing import Dict, List
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import httpx
from loguru import logger
from starlette.requests import Request
from starlette.responses import JSONResponse, RedirectResponse
from starlette.routing import Route

from sfbridge_mcp.errors import (
    IdpError,
    InvalidOrExpiredState,
    InvalidReturnUrl,
    MissingParameter,
    SFBridgeError,
)
from sfbridge_mcp.registry import Credential
from sfbridge_mcp.services import Services


def get_services(request: Request) -> Services:
    return request.app.state.services


def ensure_session_id(request: Request) -> str:
    """Return the browser session id, creating one on first visit."""
    session_id = request.session.get("sid")
    if not session_id:
        session_id = secrets.token_urlsafe(32)
        request.session["sid"] = session_id
    return session_id


def is_safe_return_url(url: str, allowed_origins: List[str]) -> bool:
    """Allow same-site paths and URLs on an explicitly allowed origin."""
    parts = urlsplit(url)
    if not parts.scheme and not parts.netloc:
        # Reject scheme-relative tricks like "//evil.example" and "/\evil"
        return url.startswith("/") and not url.startswith("//") and "\\" not in url
    origin = f"{parts.scheme}://{parts.netloc}"
    return origin in {o.rstrip("/") for o in allowed_origins}


def append_query(url: str, params: Dict[str, str]) -> str:
    """Append params to url, keeping any query it already has."""
    parts = urlsplit(url)
    query = parse_qsl(parts.query, keep_blank_values=True) + list(params.items())
    return urlunsplit(parts._replace(query=urlencode(query)))


async def login(request: Request) -> RedirectResponse:
    services = get_services(request)
    settings = services.settings

    user_id = request.query_params.get("user_id")
    if not user_id:
        raise MissingParameter("user_id is required")

    return_url = request.query_params.get("return_url") or None
    if return_url and not is_safe_return_url(return_url, settings.allowed_return_origins):
        raise InvalidReturnUrl(f"return_url is not on an allowed origin: {return_url}")

    state = services.states.generate_state(user_id, ensure_session_id(request), return_url)
    logger.info(f"Starting OAuth login for user={user_id}")
    return RedirectResponse(services.idp.authorization_url(state), status_code=302)


async def callback(request: Request) -> RedirectResponse:
    services = get_services(request)
    settings = services.settings
    params = request.query_params

    error = params.get("error")
    state_token = params.get("state")
    code = params.get("code")

    if error:
        description = params.get("error_description")
        logger.warning(f"IdP returned error at callback: {error} ({description})")
        if state_token and settings.invalidate_state_on_idp_error:
            services.states.discard(state_token)
        raise IdpError(f"OAuth error: {error}" + (f" - {description}" if description else ""))

    if not code or not state_token:
        raise MissingParameter("Missing authorization code or state")

    pending = services.states.consume_state(state_token)

    # The callback must come from the browser session that started the flow
    if request.session.get("sid") != pending.session_id:
        logger.warning(f"OAuth callback for user={pending.user_id} arrived in a different session")
        raise InvalidOrExpiredState("State does not belong to this session")

    tokens = await services.idp.exchange_code_for_tokens(code)
    identity = await services.idp.get_identity(tokens.access_token, tokens.api_base_url)

    connection_id = await services.registry.store_credential(
        pending.user_id,
        pending.session_id,
        Credential(
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            api_base_url=tokens.api_base_url,
            expires_at=tokens.issued_at + timedelta(seconds=settings.access_token_lifetime_seconds),
            external_user_id=identity.external_user_id,
            tenant_id=identity.tenant_id,
        ),
    )
    request.session["user_id"] = pending.user_id

    logger.success(
        f"✓ User {pending.user_id} connected (org={identity.tenant_id}, connection={connection_id})"
    )

    target = append_query(
        pending.return_url or settings.default_return_url,
        {"connected": "true", "org_id": identity.tenant_id, "connection_id": connection_id},
    )
    return RedirectResponse(target, status_code=302)


async def status(request: Request) -> JSONResponse:
    services = get_services(request)

    session_id = request.session.get("sid")
    record = await services.registry.get_by_session_id(session_id) if session_id else None
    if record is None:
        return JSONResponse({"connected": False})

    return JSONResponse(
        {
            "connected": services.registry.has_active(record.user_id),
            "userId": record.user_id,
            "tenantId": record.tenant_id,
            "apiBaseUrl": record.api_base_url,
            "lastUsed": record.last_used_at.isoformat(),
        }
    )


async def logout(request: Request) -> JSONResponse:
    services = get_services(request)

    session_id = request.session.get("sid")
    record = await services.registry.get_by_session_id(session_id) if session_id else None

    if record is not None:
        if services.settings.revoke_on_logout:
            try:
                await services.idp.revoke_token(record.refresh_token, record.api_base_url)
            except httpx.HTTPError as e:
                logger.warning(f"Token revocation failed for user={record.user_id}: {e}")
        await services.registry.remove_credential(record.user_id, connection_id=record.connection_id)
        logger.info(f"User {record.user_id} logged out")

    request.session.clear()
    return JSONResponse({"success": True, "message": "Logged out successfully"})


async def success(request: Request) -> JSONResponse:
    params = request.query_params
    return JSONResponse(
        {
            "connected": params.get("connected") == "true",
            "orgId": params.get("org_id"),
            "connectionId": params.get("connection_id"),
        }
    )


async def health(request: Request) -> JSONResponse:
    services = get_services(request)
    timestamp = datetime.now(timezone.utc).isoformat()

    if not services.shutdown.is_running():
        return JSONResponse(
            {"status": "shutting_down", "message": "Server is shutting down", "timestamp": timestamp},
            status_code=503,
        )

    return JSONResponse(
        {
            "status": "ok",
            "timestamp": timestamp,
            "pendingStates": services.states.pending_count,
            "activeConnections": len(services.registry),
            "inflight": services.shutdown.inflight,
        }
    )


async def sfbridge_error_handler(request: Request, exc: SFBridgeError) -> JSONResponse:
    logger.warning(f"{request.method} {request.url.path} -> {exc.status_code} {exc.code}: {exc.message}")
    return JSONResponse(exc.to_dict(), status_code=exc.status_code)


auth_routes = [
    Route("/auth/login", login, methods=["GET"]),
    Route("/auth/callback", callback, methods=["GET"]),
    Route("/auth/status", status, methods=["GET"]),
    Route("/auth/logout", logout, methods=["POST"]),
    Route("/auth/success", success, methods=["GET"]),
    Route("/health", health, methods=["GET"]),
]
