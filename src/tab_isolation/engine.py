"""Engine factory: wires the isolation components behind one call surface.

Pattern: Factory
-----------------
Building a working engine takes several steps:

  1. Build the exclusion policy from settings.
  2. Choose the key-value backend (in-memory or Vault KV v2).
  3. Build the credential store and session registry on top of it.
  4. Build the interceptor, projector and lifecycle controller around the
     browser ports supplied by the caller.

Callers only provide settings and the browser-facing ports; the engine
exposes ``on_open``, ``on_activate``, ``on_credential_changed`` and
``on_close``.
"""

from __future__ import annotations

import logging
import os
import time
from collections.abc import Callable

from tab_isolation.capture.interceptor import CredentialChange, CredentialInterceptor
from tab_isolation.environment import (
    ContextId,
    ContextResolver,
    CredentialRevoker,
    KeyValueStorage,
    RuleEngine,
)
from tab_isolation.rules.header_rule import HeaderRule, HeaderRuleProjector
from tab_isolation.session.lifecycle import SessionLifecycleController
from tab_isolation.session.registry import Session, SessionRegistry
from tab_isolation.settings import IsolationSettings, SettingsError
from tab_isolation.store.credentials import CredentialEntry, CredentialStore
from tab_isolation.store.kv import InMemoryKeyValueStorage, VaultKeyValueStorage

logger = logging.getLogger(__name__)


def build_storage(settings: IsolationSettings) -> KeyValueStorage:
    """Construct the key-value backend selected in *settings*."""
    storage_cfg = settings.storage
    if storage_cfg.backend == "memory":
        return InMemoryKeyValueStorage()
    if storage_cfg.backend == "vault":
        token = os.environ.get("VAULT_TOKEN")
        if not token:
            raise SettingsError(
                "Vault storage selected but VAULT_TOKEN is not set."
            )
        logger.info(
            "Using Vault KV storage at %s (mount=%s, prefix=%s)",
            storage_cfg.vault.address,
            storage_cfg.vault.mount,
            storage_cfg.vault.path_prefix,
        )
        return VaultKeyValueStorage(
            vault_addr=storage_cfg.vault.address,
            token=token,
            mount=storage_cfg.vault.mount,
            path_prefix=storage_cfg.vault.path_prefix,
        )
    raise SettingsError(f"Unsupported storage backend: {storage_cfg.backend}")


class IsolationEngine:
    """The four entry points the browser side calls into."""

    def __init__(
        self,
        settings: IsolationSettings,
        resolver: ContextResolver,
        revoker: CredentialRevoker,
        rule_engine: RuleEngine,
        storage: KeyValueStorage | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        exclusions = settings.exclusion_policy()
        self.storage = storage if storage is not None else build_storage(settings)
        self.store = CredentialStore(self.storage)
        self.registry = SessionRegistry(self.store, clock=clock)
        self.interceptor = CredentialInterceptor(self.registry, self.store, resolver, exclusions)
        self.projector = HeaderRuleProjector(
            self.store,
            rule_engine,
            resolver,
            exclusions,
            priority=settings.rule_priority,
        )
        self.controller = SessionLifecycleController(
            self.registry, self.store, self.projector, revoker
        )
        logger.info("Isolation engine ready; excluded domains: %s", sorted(exclusions.domains))

    async def on_open(self, context_id: ContextId) -> str:
        return await self.controller.on_open(context_id)

    async def on_activate(self, context_id: ContextId) -> HeaderRule | None:
        return await self.controller.on_activate(context_id)

    async def on_close(self, context_id: ContextId) -> None:
        await self.controller.on_close(context_id)

    async def on_credential_changed(self, entry: CredentialEntry, removed: bool = False) -> str | None:
        return await self.interceptor.handle(CredentialChange(entry=entry, removed=removed))

    def sessions(self) -> dict[ContextId, Session]:
        return self.registry.active()
