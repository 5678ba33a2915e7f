"""Capture of newly-set cookies into the foreground tab's session.

Known limitation: attribution is "whichever context is foreground when the
event is delivered", not "the context whose request set the cookie".  A
cookie set by a background tab, or delivered just after a tab switch, lands
in the wrong session.  This matches how the browser reports cookie changes
(no originating tab) and is kept as-is.
"""

from __future__ import annotations

import dataclasses
import logging

from tab_isolation.environment import ContextResolver
from tab_isolation.policy.exclusion import ExclusionPolicy
from tab_isolation.session.registry import SessionRegistry
from tab_isolation.store.credentials import CredentialEntry, CredentialStore
from tab_isolation.store.kv import StorageError

logger = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class CredentialChange:
    """A cookie change reported by the browser's global observer."""

    entry: CredentialEntry
    removed: bool = False


class CredentialInterceptor:
    """Filters credential changes and appends them to the right store."""

    def __init__(
        self,
        registry: SessionRegistry,
        store: CredentialStore,
        resolver: ContextResolver,
        exclusions: ExclusionPolicy,
    ) -> None:
        self._registry = registry
        self._store = store
        self._resolver = resolver
        self._exclusions = exclusions

    async def handle(self, change: CredentialChange) -> str | None:
        """Process one change.  Returns the session id it was stored under."""
        if change.removed:
            return None

        entry = change.entry
        if self._exclusions.matches_domain(entry.domain):
            logger.info("Ignoring cookie %s for excluded domain %s", entry.name, entry.domain)
            return None

        if not entry.is_wire_safe():
            logger.warning(
                "Ignoring cookie %s for %s: not representable in the Cookie rule",
                entry.name,
                entry.domain,
            )
            return None

        context_id = await self._resolver.current_foreground_context()
        if context_id is None:
            return None

        session_id = self._registry.lookup(context_id)
        if session_id is None:
            return None

        try:
            stored = await self._store.append(session_id, entry)
        except StorageError as exc:
            logger.error(
                "Failed to store cookie %s for context %s (session %s): %s",
                entry.name,
                context_id,
                session_id,
                exc,
            )
            return None
        if not stored:
            logger.info("Session %s closed before cookie %s was stored", session_id, entry.name)
            return None

        logger.debug("Stored cookie %s;%s for context %s", entry.name, entry.domain, context_id)
        return session_id
