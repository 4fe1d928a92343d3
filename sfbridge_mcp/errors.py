"""
Error taxonomy for the OAuth flow and credential lifecycle.

Every error carries a stable ``code`` and the HTTP status the routing layer
answers with. The Starlette exception handler in ``routes`` renders them as
``{"code": ..., "message": ...}``.
"""

from typing import Dict


class SFBridgeError(Exception):
    """Base class for errors surfaced to HTTP callers."""

    code: str = "InternalError"
    status_code: int = 500

    def __init__(self, message: str = ""):
        # Fall back to the class docstring as a human-readable default
        self.message = message or (self.__doc__ or self.code).strip()
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, str]:
        return {"code": self.code, "message": self.message}


class InvalidOrExpiredState(SFBridgeError):
    """State parameter is unknown, already used, or expired."""

    code = "InvalidOrExpiredState"
    status_code = 400


class TokenExchangeFailed(SFBridgeError):
    """Authorization code could not be exchanged for tokens."""

    code = "TokenExchangeFailed"
    status_code = 400

    def __init__(self, message: str = "", *, transient: bool = False):
        super().__init__(message)
        self.transient = transient
        if transient:
            self.status_code = 502


class IdentityLookupFailed(SFBridgeError):
    """Identity endpoint did not return a usable user description."""

    code = "IdentityLookupFailed"
    status_code = 502


class RefreshFailed(SFBridgeError):
    """Access token refresh failed."""

    code = "RefreshFailed"
    status_code = 502

    def __init__(self, message: str = "", *, revoked: bool = False, transient: bool = False):
        super().__init__(message)
        self.revoked = revoked
        self.transient = transient
        if revoked:
            self.status_code = 401


class NoActiveConnection(SFBridgeError):
    """No stored credential for this user or session."""

    code = "NoActiveConnection"
    status_code = 401


class SessionExpired(SFBridgeError):
    """Stored grant was revoked or expired. Restart the OAuth flow."""

    code = "SessionExpired"
    status_code = 401


class ShutdownInProgress(SFBridgeError):
    """Server is shutting down, please try again later."""

    code = "ShutdownInProgress"
    status_code = 503


class MissingParameter(SFBridgeError):
    """A required request parameter is missing."""

    code = "MissingParameter"
    status_code = 400


class InvalidReturnUrl(SFBridgeError):
    """return_url is not on an allowed origin."""

    code = "InvalidReturnUrl"
    status_code = 400


class IdpError(SFBridgeError):
    """Identity provider reported an error at the callback."""

    code = "IdpError"
    status_code = 400
