"""
In-memory credential registry.

Maps each user to their single active credential record and each browser
session to the user it belongs to. Records are immutable snapshots: every
write swaps in a fresh record, so readers never observe a half-applied
update.

Reads and writes for one user run under that user's asyncio.Lock. Unrelated
users never contend with each other.

Note: This is per-process storage and is lost on restart. A durable backend
can subclass ConnectionRegistry and keep the same async interface.
"""

import asyncio
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from loguru import logger

from sfbridge_mcp.auth.state import utcnow


@dataclass(frozen=True)
class Credential:
    """Tokens and endpoint produced by a successful OAuth callback."""

    access_token: str
    refresh_token: str
    api_base_url: str
    expires_at: Optional[datetime] = None
    external_user_id: Optional[str] = None
    tenant_id: Optional[str] = None


@dataclass(frozen=True)
class CredentialRecord:
    """The stored credential for one user."""

    connection_id: str
    user_id: str
    session_id: str
    access_token: str
    refresh_token: str
    api_base_url: str
    created_at: datetime
    last_used_at: datetime
    expires_at: Optional[datetime] = None
    external_user_id: Optional[str] = None
    tenant_id: Optional[str] = None


@dataclass(frozen=True)
class TokenUpdate:
    """Partial update for a stored record. None means leave unchanged."""

    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    api_base_url: Optional[str] = None

    def changes(self) -> Dict[str, object]:
        return {name: value for name, value in self.__dict__.items() if value is not None}


class ConnectionRegistry:
    """Process-wide store of per-user credentials and session bindings."""

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self._clock = clock
        self._records: Dict[str, CredentialRecord] = {}  # user_id -> record
        self._sessions: Dict[str, str] = {}  # session_id -> user_id
        self._locks: Dict[str, asyncio.Lock] = {}

    # Locks exist only for users with a record; lookups for unknown users
    # return before taking one
    def _lock(self, user_id: str) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = self._locks[user_id] = asyncio.Lock()
        return lock

    def _drop_lock(self, user_id: str) -> None:
        lock = self._locks.get(user_id)
        if lock is not None and not lock.locked() and user_id not in self._records:
            del self._locks[user_id]

    async def store_credential(self, user_id: str, session_id: str, credential: Credential) -> str:
        """
        Store a user's credential, superseding any previous one.

        The previous record's session binding is dropped: only the newest
        session of a user resolves.

        Args:
            user_id: Application user id
            session_id: Browser session the credential was obtained in
            credential: Tokens and labels from the callback

        Returns:
            Opaque connection id for display and audit (not a lookup key)
        """
        if not credential.access_token or not credential.refresh_token:
            raise ValueError("credential must carry both access_token and refresh_token")

        async with self._lock(user_id):
            now = self._clock()
            record = CredentialRecord(
                connection_id=uuid.uuid4().hex,
                user_id=user_id,
                session_id=session_id,
                access_token=credential.access_token,
                refresh_token=credential.refresh_token,
                api_base_url=credential.api_base_url,
                created_at=now,
                last_used_at=now,
                expires_at=credential.expires_at,
                external_user_id=credential.external_user_id,
                tenant_id=credential.tenant_id,
            )

            previous = self._records.get(user_id)
            if previous is not None and previous.session_id != session_id:
                if self._sessions.get(previous.session_id) == user_id:
                    del self._sessions[previous.session_id]
                logger.info(f"Superseding connection {previous.connection_id} for user={user_id}")

            self._records[user_id] = record
            self._sessions[session_id] = user_id

        logger.info(f"Stored connection {record.connection_id} for user={user_id}")
        return record.connection_id

    async def get_by_user_id(self, user_id: str) -> Optional[CredentialRecord]:
        """Return the user's record (bumping last_used_at), or None."""
        if user_id not in self._records:
            return None

        async with self._lock(user_id):
            record = self._records.get(user_id)
            if record is not None:
                record = replace(record, last_used_at=self._clock())
                self._records[user_id] = record

        if record is None:
            # Removed while we waited for the lock
            self._drop_lock(user_id)
        return record

    async def get_by_session_id(self, session_id: str) -> Optional[CredentialRecord]:
        """Resolve a session to its user's record (bumping last_used_at), or None."""
        user_id = self._sessions.get(session_id)
        if user_id is None or user_id not in self._records:
            return None

        async with self._lock(user_id):
            record = self._records.get(user_id)
            # The binding may have been superseded while we waited for the lock
            if record is not None and record.session_id == session_id:
                found = replace(record, last_used_at=self._clock())
                self._records[user_id] = found
                return found

        self._drop_lock(user_id)
        return None

    def user_for_session(self, session_id: str) -> Optional[str]:
        """Return the user a session is bound to, without touching the record."""
        return self._sessions.get(session_id)

    async def update_tokens(
        self,
        user_id: str,
        update: TokenUpdate,
        connection_id: Optional[str] = None,
    ) -> bool:
        """
        Merge the fields present in update into the user's record.

        Fields left as None are preserved. Concurrent updates for the same
        user apply in lock order: the last writer wins.

        Args:
            user_id: User whose record is updated
            update: Fields to change
            connection_id: If given, only update the record when it is still
                this connection (tokens from a superseded grant are dropped)

        Returns:
            False if the user has no record or it belongs to another connection
            (nothing is created)

        Raises:
            ValueError: update would blank out a token
        """
        changes = update.changes()
        for name in ("access_token", "refresh_token", "api_base_url"):
            if name in changes and not changes[name]:
                raise ValueError(f"{name} cannot be empty")

        if user_id not in self._records:
            return False

        async with self._lock(user_id):
            record = self._records.get(user_id)
            if record is not None and connection_id is not None and record.connection_id != connection_id:
                logger.warning(
                    f"Dropped token update for user={user_id}: connection {connection_id} "
                    f"was superseded by {record.connection_id}"
                )
                return False
            if record is not None:
                self._records[user_id] = replace(record, last_used_at=self._clock(), **changes)

        if record is None:
            self._drop_lock(user_id)
            return False

        logger.debug(f"Updated {sorted(changes)} for user={user_id}")
        return True

    async def remove_credential(self, user_id: str, connection_id: Optional[str] = None) -> bool:
        """
        Remove the user's record and its session binding.

        Args:
            user_id: User to log out
            connection_id: If given, only remove the record when it is still
                this connection (a newer login is left alone)
        """
        if user_id not in self._records:
            return False

        async with self._lock(user_id):
            record = self._records.get(user_id)
            if record is None:
                return False
            if connection_id is not None and record.connection_id != connection_id:
                return False
            del self._records[user_id]
            if self._sessions.get(record.session_id) == user_id:
                del self._sessions[record.session_id]

        self._drop_lock(user_id)
        logger.info(f"Removed connection {record.connection_id} for user={user_id}")
        return True

    def has_active(self, user_id: str) -> bool:
        """Constant-time check for a stored record."""
        return user_id in self._records

    async def sweep_expired(self, max_idle: timedelta = timedelta(hours=24)) -> int:
        """
        Remove records unused for longer than max_idle.

        Also drops session bindings whose record is gone or belongs to a
        newer session.

        Returns:
            Number of records removed
        """
        cutoff = self._clock() - max_idle
        candidates = [
            user_id for user_id, record in list(self._records.items())
            if record.last_used_at < cutoff
        ]

        removed = 0
        for user_id in candidates:
            async with self._lock(user_id):
                record = self._records.get(user_id)
                # Re-check: the record may have been used or replaced meanwhile
                if record is None or record.last_used_at >= cutoff:
                    continue
                del self._records[user_id]
                if self._sessions.get(record.session_id) == user_id:
                    del self._sessions[record.session_id]
                removed += 1
            self._drop_lock(user_id)

        orphaned = [
            session_id for session_id, user_id in list(self._sessions.items())
            if self._records.get(user_id) is None
            or self._records[user_id].session_id != session_id
        ]
        for session_id in orphaned:
            self._sessions.pop(session_id, None)

        if removed or orphaned:
            logger.info(f"Swept {removed} idle connections and {len(orphaned)} orphaned sessions")
        return removed

    def active_connections(self) -> List[CredentialRecord]:
        """Snapshot of all stored records (for health and debugging)."""
        return list(self._records.values())

    def __len__(self) -> int:
        return len(self._records)

    async def close(self) -> None:
        """Drop all records and bindings."""
        count = len(self._records)
        self._records.clear()
        self._sessions.clear()
        self._locks.clear()
        logger.info(f"ConnectionRegistry closed ({count} in-memory connections discarded)")
