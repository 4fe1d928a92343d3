"""
Anti-forgery state storage for the authorization code flow.

Each login attempt gets an unguessable, single-use state token bound to the
user, the browser session and an optional return location. The callback
consumes it exactly once; abandoned flows are removed by a periodic sweep.

Note: This is per-process storage. Multi-instance deployments need sticky
sessions or a shared store.
"""

import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional

from loguru import logger

from sfbridge_mcp.errors import InvalidOrExpiredState


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class AuthorizationState:
    """A pending authorization request awaiting its callback."""

    state_token: str
    user_id: str
    session_id: str
    return_url: Optional[str]
    created_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


@dataclass
class OAuthStateManager:
    """
    Issues and single-use-consumes anti-forgery state tokens.

    All operations are synchronous dict mutations, so within one event loop
    they cannot interleave: a pop either wins or finds nothing.
    """

    ttl: timedelta = timedelta(minutes=10)
    clock: Callable[[], datetime] = utcnow
    _states: Dict[str, AuthorizationState] = field(default_factory=dict, repr=False)

    def generate_state(
        self,
        user_id: str,
        session_id: str,
        return_url: Optional[str] = None,
    ) -> str:
        """
        Create and store a new state token.

        Args:
            user_id: Application user starting the login
            session_id: Browser session the callback must belong to
            return_url: Where to send the user after a successful callback

        Returns:
            Opaque URL-safe state token
        """
        token = secrets.token_urlsafe(32)
        now = self.clock()
        self._states[token] = AuthorizationState(
            state_token=token,
            user_id=user_id,
            session_id=session_id,
            return_url=return_url,
            created_at=now,
            expires_at=now + self.ttl,
        )
        logger.debug(f"Issued OAuth state for user={user_id} (expires in {self.ttl.total_seconds():.0f}s)")
        return token

    def consume_state(self, state_token: str) -> AuthorizationState:
        """
        Remove a state token and return its payload.

        The entry is removed before the expiry check, so a token is dead after
        its first consumption attempt whether or not that attempt succeeded.

        Raises:
            InvalidOrExpiredState: Unknown, already consumed, or past its TTL
        """
        state = self._states.pop(state_token, None)
        if state is None:
            logger.warning("Rejected unknown or already consumed OAuth state")
            raise InvalidOrExpiredState("Invalid or expired state parameter")

        if state.is_expired(self.clock()):
            logger.warning(f"Rejected expired OAuth state for user={state.user_id}")
            raise InvalidOrExpiredState("Invalid or expired state parameter")

        return state

    def discard(self, state_token: str) -> bool:
        """Drop a state token without consuming it."""
        return self._states.pop(state_token, None) is not None

    def sweep(self) -> int:
        """
        Remove states past their TTL that were never consumed.

        Returns:
            Number of states removed
        """
        now = self.clock()
        expired = [token for token, state in self._states.items() if state.is_expired(now)]

        for token in expired:
            del self._states[token]

        if expired:
            logger.info(f"Swept {len(expired)} abandoned OAuth states")
        return len(expired)

    @property
    def pending_count(self) -> int:
        """Return the current number of outstanding states."""
        return len(self._states)
