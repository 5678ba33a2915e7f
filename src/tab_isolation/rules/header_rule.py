"""Projection of a session's credentials into a per-tab Cookie header rule.

Pattern: Rule Projection
-------------------------
The browser's declarative request rules are the only place a tab's isolated
cookies take effect.  Each isolated tab owns at most one rule, whose id is
the tab id.  The rule overrides the ``Cookie`` header of main-document
requests with the session's serialized store.

The rule is rebuilt when the tab is activated, not on every captured cookie,
so a freshly captured cookie is replayed from the next activation onward.
"""

from __future__ import annotations

import dataclasses
import json
import logging
from typing import Any

from tab_isolation.environment import ContextId, ContextResolver, RuleEngine
from tab_isolation.policy.exclusion import ExclusionPolicy
from tab_isolation.store.credentials import CredentialStore, serialize
from tab_isolation.store.kv import StorageError

logger = logging.getLogger(__name__)


class RuleEngineError(Exception):
    """Raised when the rule engine rejects an install or removal."""


@dataclasses.dataclass(frozen=True)
class HeaderRule:
    """Outbound header override scoped to one context.

    Attributes:
        id:             The context id; one rule per context.
        priority:       Rule priority in the engine.
        value:          Serialized credential store.
        header_name:    Always ``Cookie``.
        operation:      Always ``set``.
        resource_types: Request scope; main-document requests only.
    """

    id: ContextId
    priority: int
    value: str
    header_name: str = "Cookie"
    operation: str = "set"
    resource_types: tuple[str, ...] = ("main_frame",)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "priority": self.priority,
            "action": {
                "type": "modifyHeaders",
                "requestHeaders": [
                    {
                        "header": self.header_name,
                        "operation": self.operation,
                        "value": self.value,
                    }
                ],
            },
            "condition": {
                "urlFilter": "*",
                "resourceTypes": list(self.resource_types),
            },
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> HeaderRule:
        header = data["action"]["requestHeaders"][0]
        return cls(
            id=data["id"],
            priority=data["priority"],
            value=header["value"],
            header_name=header["header"],
            operation=header["operation"],
            resource_types=tuple(data["condition"]["resourceTypes"]),
        )

    @classmethod
    def from_json(cls, raw: str) -> HeaderRule:
        return cls.from_dict(json.loads(raw))


class HeaderRuleProjector:
    """Compiles credential stores into header rules and keeps them installed."""

    def __init__(
        self,
        store: CredentialStore,
        rule_engine: RuleEngine,
        resolver: ContextResolver,
        exclusions: ExclusionPolicy,
        priority: int = 1,
    ) -> None:
        self._store = store
        self._engine = rule_engine
        self._resolver = resolver
        self._exclusions = exclusions
        self._priority = priority

    async def project(self, context_id: ContextId, session_id: str) -> HeaderRule | None:
        """Install (or replace) the rule for *context_id*.

        Returns the installed rule, or None when the tab is on an excluded
        site or a storage / rule-engine call failed.  Failures are logged and
        the tab simply goes without injection until the next activation.
        """
        url = await self._resolver.context_url(context_id)
        if self._exclusions.matches_url(url):
            logger.info("Not projecting cookies for context %s: excluded site", context_id)
            return None

        try:
            entries = await self._store.read_all(session_id)
        except StorageError as exc:
            logger.error("Failed to read store %s for context %s: %s", session_id, context_id, exc)
            return None

        replayed = [e for e in entries if not self._exclusions.matches_domain(e.domain)]
        rule = HeaderRule(id=context_id, priority=self._priority, value=serialize(replayed))
        try:
            await self._engine.remove_header_rule(context_id)
            await self._engine.install_header_rule(rule)
        except RuleEngineError as exc:
            logger.error("Failed to install header rule for context %s: %s", context_id, exc)
            return None

        logger.debug("Projected %d cookie(s) into rule %s", len(replayed), context_id)
        return rule

    async def retract(self, context_id: ContextId) -> None:
        """Remove the rule for *context_id*.  Raises ``RuleEngineError``."""
        await self._engine.remove_header_rule(context_id)
