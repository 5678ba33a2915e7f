"""Registry of live sessions, one per browsing context.

Pattern: Explicit Session Authority
------------------------------------
The mapping ``context -> session`` is owned by a single ``SessionRegistry``
object handed to whoever needs it, instead of a module-level dict.  A session
id is derived from the context id and the creation time in milliseconds
(``session-7-1700000000000``).  Stamps are strictly increasing within a
registry, so an id is never issued twice even when the clock does not move.
"""

from __future__ import annotations

import dataclasses
import datetime
import logging
import time
from collections.abc import Callable

from tab_isolation.environment import ContextId
from tab_isolation.store.credentials import CredentialStore
from tab_isolation.store.kv import StorageError

logger = logging.getLogger(__name__)


class AllocationError(Exception):
    """Raised when a session cannot be created (its record was not stored)."""


@dataclasses.dataclass(frozen=True)
class Session:
    """Immutable record of a live session.

    Attributes:
        context_id: The browsing context the session is bound to.
        session_id: Unique id, also the key of the credential record.
        created_at: UTC creation time.
    """

    context_id: ContextId
    session_id: str
    created_at: datetime.datetime

    def __str__(self) -> str:
        return f"Session(context={self.context_id}, id={self.session_id})"


class SessionRegistry:
    """Maps context ids to sessions and allocates their credential records."""

    def __init__(
        self,
        store: CredentialStore,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._clock = clock
        self._sessions: dict[ContextId, Session] = {}
        self._last_stamp = 0

    def _next_stamp(self) -> int:
        stamp = max(int(self._clock() * 1000), self._last_stamp + 1)
        self._last_stamp = stamp
        return stamp

    async def create(self, context_id: ContextId) -> str:
        """Allocate a session for *context_id* and return its id.

        The mapping is only recorded once the empty credential record has been
        written.  Raises ``AllocationError`` otherwise.
        """
        stamp = self._next_stamp()
        session_id = f"session-{context_id}-{stamp}"
        try:
            await self._store.initialize(session_id)
        except StorageError as exc:
            raise AllocationError(
                f"Could not allocate session for context {context_id}: {exc}"
            ) from exc

        self._sessions[context_id] = Session(
            context_id=context_id,
            session_id=session_id,
            created_at=datetime.datetime.fromtimestamp(stamp / 1000, datetime.UTC),
        )
        logger.info("Session %s created for context %s", session_id, context_id)
        return session_id

    def lookup(self, context_id: ContextId) -> str | None:
        session = self._sessions.get(context_id)
        return session.session_id if session else None

    def remove(self, context_id: ContextId) -> str | None:
        """Forget *context_id* and return its former session id, if any."""
        session = self._sessions.pop(context_id, None)
        return session.session_id if session else None

    def active(self) -> dict[ContextId, Session]:
        """Snapshot of live sessions keyed by context id."""
        return dict(self._sessions)
