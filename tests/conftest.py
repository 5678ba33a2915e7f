"""Shared fixtures for tests."""

from __future__ import annotations

import asyncio
import pathlib

import pytest

from tab_isolation.engine import IsolationEngine
from tab_isolation.environment import ContextId, RevocationError
from tab_isolation.rules.header_rule import HeaderRule, RuleEngineError
from tab_isolation.settings import IsolationSettings
from tab_isolation.store.kv import InMemoryKeyValueStorage, StorageReadError, StorageWriteError

REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]
FIXED_NOW = 1_700_000_000.0


class FlakyStorage(InMemoryKeyValueStorage):
    """In-memory storage whose operations can be made to fail."""

    def __init__(self) -> None:
        super().__init__()
        self.fail_get = False
        self.fail_set = False
        self.fail_delete = False

    async def get(self, key: str) -> str | None:
        if self.fail_get:
            raise StorageReadError("read refused")
        return await super().get(key)

    async def set(self, key: str, value: str) -> None:
        if self.fail_set:
            raise StorageWriteError("write refused")
        await super().set(key, value)

    async def delete(self, key: str) -> None:
        if self.fail_delete:
            raise StorageWriteError("delete refused")
        await super().delete(key)


class SlowStorage(FlakyStorage):
    """Yields to the loop between read and write, like a remote store would."""

    async def get(self, key: str) -> str | None:
        value = await super().get(key)
        await asyncio.sleep(0)
        return value

    async def set(self, key: str, value: str) -> None:
        await asyncio.sleep(0)
        await super().set(key, value)


class ScriptedResolver:
    """Foreground tab and URLs set directly by the test."""

    def __init__(self) -> None:
        self.foreground: ContextId | None = None
        self.urls: dict[ContextId, str] = {}

    async def current_foreground_context(self) -> ContextId | None:
        return self.foreground

    async def context_url(self, context_id: ContextId) -> str | None:
        return self.urls.get(context_id)


class RecordingRuleEngine:
    def __init__(self) -> None:
        self.rules: dict[ContextId, HeaderRule] = {}
        self.calls: list[tuple[str, ContextId]] = []
        self.fail = False

    async def install_header_rule(self, rule: HeaderRule) -> None:
        self.calls.append(("install", rule.id))
        if self.fail:
            raise RuleEngineError("engine offline")
        self.rules[rule.id] = rule

    async def remove_header_rule(self, rule_id: ContextId) -> None:
        self.calls.append(("remove", rule_id))
        if self.fail:
            raise RuleEngineError("engine offline")
        self.rules.pop(rule_id, None)

    def removals(self, rule_id: ContextId) -> int:
        return self.calls.count(("remove", rule_id))


class RecordingRevoker:
    def __init__(self) -> None:
        self.calls: list[tuple[str, str]] = []
        self.raising: set[str] = set()
        self.refusing: set[str] = set()

    async def revoke_credential(self, url: str, name: str) -> bool:
        self.calls.append((url, name))
        if name in self.raising:
            raise RevocationError(f"cannot remove {name}")
        return name not in self.refusing


@pytest.fixture
def storage() -> FlakyStorage:
    return FlakyStorage()


@pytest.fixture
def resolver() -> ScriptedResolver:
    return ScriptedResolver()


@pytest.fixture
def rule_engine() -> RecordingRuleEngine:
    return RecordingRuleEngine()


@pytest.fixture
def revoker() -> RecordingRevoker:
    return RecordingRevoker()


@pytest.fixture
def settings() -> IsolationSettings:
    return IsolationSettings(excluded_domains=["github.com"])


@pytest.fixture
def engine(
    settings: IsolationSettings,
    resolver: ScriptedResolver,
    revoker: RecordingRevoker,
    rule_engine: RecordingRuleEngine,
    storage: FlakyStorage,
) -> IsolationEngine:
    return IsolationEngine(
        settings,
        resolver=resolver,
        revoker=revoker,
        rule_engine=rule_engine,
        storage=storage,
        clock=lambda: FIXED_NOW,
    )
