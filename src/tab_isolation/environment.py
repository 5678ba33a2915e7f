"""Ports through which the isolation core talks to the browser.

Pattern: Injected Environment
------------------------------
The core never reaches for a global "current tab" or a global cookie API.
Everything it needs from the browser is passed in as one of the protocols
below, so tests can script arbitrary foreground/background sequences and the
MCP hook server can turn side effects into commands for a remote bridge.

All methods are coroutines: a handler may suspend at any of them, which is
where handlers for different contexts interleave.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, Union

if TYPE_CHECKING:
    from tab_isolation.rules.header_rule import HeaderRule

ContextId = Union[int, str]


class RevocationError(Exception):
    """Raised when the browser refuses to remove a credential."""


class ContextResolver(Protocol):
    async def current_foreground_context(self) -> ContextId | None:
        """Return the context that is foreground right now, if any."""
        ...

    async def context_url(self, context_id: ContextId) -> str | None:
        """Return the URL currently loaded in *context_id*, if known."""
        ...


class KeyValueStorage(Protocol):
    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str) -> None: ...

    async def delete(self, key: str) -> None: ...


class CredentialRevoker(Protocol):
    async def revoke_credential(self, url: str, name: str) -> bool:
        """Remove cookie *name* scoped to *url*.  ``False`` means it failed."""
        ...


class RuleEngine(Protocol):
    async def install_header_rule(self, rule: HeaderRule) -> None: ...

    async def remove_header_rule(self, rule_id: ContextId) -> None: ...
