"""Session creation and teardown driven by tab lifecycle events.

Per-session states: Created -> Active (appended to, projected) -> Closing ->
Gone.  ``on_close`` on a context with no live session is a no-op, so a
repeated close never revokes anything twice.

Teardown is best-effort per step: a failed revocation, storage delete or rule
removal is logged and the remaining steps still run.  The store is sealed
before it is read, so a cookie captured while the tab closes is either part
of the revoked record or refused.
"""

from __future__ import annotations

import logging

from tab_isolation.environment import ContextId, CredentialRevoker, RevocationError
from tab_isolation.policy.exclusion import normalize_domain
from tab_isolation.rules.header_rule import HeaderRule, HeaderRuleProjector, RuleEngineError
from tab_isolation.session.registry import SessionRegistry
from tab_isolation.store.credentials import CredentialStore, deserialize
from tab_isolation.store.kv import StorageError

logger = logging.getLogger(__name__)


class SessionLifecycleController:
    """Opens, activates and closes isolated sessions."""

    def __init__(
        self,
        registry: SessionRegistry,
        store: CredentialStore,
        projector: HeaderRuleProjector,
        revoker: CredentialRevoker,
    ) -> None:
        self._registry = registry
        self._store = store
        self._projector = projector
        self._revoker = revoker

    async def on_open(self, context_id: ContextId) -> str:
        """Create a session for *context_id*.  Raises ``AllocationError``.

        A context that already has a live session is being replaced: the old
        session is torn down first.
        """
        if self._registry.lookup(context_id) is not None:
            logger.info("Context %s reopened; closing its previous session", context_id)
            await self.on_close(context_id)
        return await self._registry.create(context_id)

    async def on_activate(self, context_id: ContextId) -> HeaderRule | None:
        session_id = self._registry.lookup(context_id)
        if session_id is None:
            return None
        return await self._projector.project(context_id, session_id)

    async def on_close(self, context_id: ContextId) -> None:
        session_id = self._registry.remove(context_id)
        if session_id is None:
            return
        logger.info("Context %s closed; cleaning up session %s", context_id, session_id)

        await self._clean_store(session_id)

        try:
            await self._projector.retract(context_id)
        except RuleEngineError as exc:
            logger.error("Failed to remove header rule %s: %s", context_id, exc)

    # -- private helpers -----------------------------------------------------

    async def _clean_store(self, session_id: str) -> None:
        try:
            raw = await self._store.seal(session_id)
        except StorageError as exc:
            logger.error("Failed to read store %s: %s", session_id, exc)
            raw = None

        if raw is None:
            logger.error("No credential record found for session %s", session_id)
        else:
            await self._revoke_all(session_id, raw)
        await self._delete_store(session_id)

    async def _revoke_all(self, session_id: str, raw: str) -> None:
        targets: list[tuple[str, str]] = []
        for entry in deserialize(raw):
            target = (normalize_domain(entry.domain), entry.name)
            if target not in targets:
                targets.append(target)

        failed = 0
        for domain, name in targets:
            url = f"https://{domain}"
            try:
                ok = await self._revoker.revoke_credential(url, name)
            except RevocationError as exc:
                logger.error("Failed to revoke cookie %s at %s: %s", name, url, exc)
                failed += 1
                continue
            if not ok:
                logger.warning("Cookie %s at %s was not removed", name, url)
                failed += 1

        logger.info(
            "Revoked %d/%d cookie(s) for session %s",
            len(targets) - failed,
            len(targets),
            session_id,
        )

    async def _delete_store(self, session_id: str) -> None:
        try:
            await self._store.delete(session_id)
        except StorageError as exc:
            logger.error("Failed to delete store %s: %s", session_id, exc)
            return
        logger.debug("Deleted store %s", session_id)
