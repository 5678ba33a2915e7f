"""Per-session credential records and their wire form.

Wire form
---------
A store is a sequence of ``name=value;domain`` tokens, each followed by a
single space::

    auth=xyz;example.com theme=dark;.example.com

The same text is persisted under the session id and sent verbatim as the
``Cookie`` header value of the tab's rule.  There is no escaping: entries
whose parts contain whitespace or ``;`` (or ``=`` outside the value) cannot
be represented and are refused at capture time (see
``CredentialEntry.is_wire_safe``).

Duplicates are kept.  Updating a cookie appends a second token with the same
name; both are replayed, in insertion order.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import re
from collections.abc import Iterable

from tab_isolation.environment import KeyValueStorage

logger = logging.getLogger(__name__)

_FORBIDDEN_ANYWHERE = re.compile(r"[\s;]")


@dataclasses.dataclass(frozen=True)
class CredentialEntry:
    """One captured cookie fragment."""

    name: str
    value: str
    domain: str

    def is_wire_safe(self) -> bool:
        """Return True if the entry survives a serialize/deserialize round-trip."""
        if not self.name or not self.domain:
            return False
        if "=" in self.name or "=" in self.domain:
            return False
        return not any(
            _FORBIDDEN_ANYWHERE.search(part) for part in (self.name, self.value, self.domain)
        )

    def to_token(self) -> str:
        return f"{self.name}={self.value};{self.domain}"


def serialize(entries: Iterable[CredentialEntry]) -> str:
    """Render *entries* in wire form.  An empty sequence gives ``""``."""
    return "".join(f"{entry.to_token()} " for entry in entries)


def deserialize(text: str | None) -> list[CredentialEntry]:
    """Parse wire-form *text* back into entries, skipping malformed tokens."""
    entries: list[CredentialEntry] = []
    for token in (text or "").split():
        name_value, sep, domain = token.rpartition(";")
        name, eq, value = name_value.partition("=")
        if not sep or not eq or not name or not domain:
            logger.warning("Skipping malformed credential token (%d chars)", len(token))
            continue
        entries.append(CredentialEntry(name=name, value=value, domain=domain))
    return entries


class CredentialStore:
    """Append-only credential records keyed by session id.

    Only the interceptor appends, only the projector reads, only the
    lifecycle controller seals and deletes.  Appends to the same session are
    serialized in-process so a slow storage round-trip cannot drop a
    concurrent append; writers in other processes are not coordinated.

    Once a session is sealed, appends to it are refused, so a cookie that
    races the close can never re-create the record after it was deleted.
    """

    def __init__(self, storage: KeyValueStorage) -> None:
        self._storage = storage
        self._locks: dict[str, asyncio.Lock] = {}
        self._sealed: set[str] = set()

    def _lock(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = self._locks[session_id] = asyncio.Lock()
        return lock

    async def initialize(self, session_id: str) -> None:
        """Create an empty record for a new session."""
        await self._storage.set(session_id, "")

    async def append(self, session_id: str, entry: CredentialEntry) -> bool:
        """Append *entry*.  Returns False, writing nothing, if the session is sealed."""
        async with self._lock(session_id):
            if session_id in self._sealed:
                return False
            raw = await self._storage.get(session_id)
            if raw is None:
                logger.warning("No credential record for %s; creating one", session_id)
                raw = ""
            await self._storage.set(session_id, raw + serialize([entry]))
            return True

    async def seal(self, session_id: str) -> str | None:
        """Refuse further appends and return the final wire text (None if absent).

        An append already in progress completes first, so its entry is part
        of the returned text.
        """
        async with self._lock(session_id):
            self._sealed.add(session_id)
            return await self._storage.get(session_id)

    async def read_raw(self, session_id: str) -> str | None:
        """Return the persisted wire text, or None if there is no record."""
        return await self._storage.get(session_id)

    async def read_all(self, session_id: str) -> list[CredentialEntry]:
        return deserialize(await self.read_raw(session_id))

    async def delete(self, session_id: str) -> None:
        await self._storage.delete(session_id)
        self._locks.pop(session_id, None)
