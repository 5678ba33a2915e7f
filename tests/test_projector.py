"""Tests for header rule projection."""

from __future__ import annotations

import logging

import pytest

from tab_isolation.engine import IsolationEngine
from tab_isolation.rules.header_rule import HeaderRule
from tab_isolation.store.credentials import CredentialEntry

from conftest import FlakyStorage, RecordingRuleEngine, ScriptedResolver


class TestHeaderRule:
    def test_declarative_shape(self) -> None:
        rule = HeaderRule(id=7, priority=1, value="auth=xyz;example.com ")
        assert rule.to_dict() == {
            "id": 7,
            "priority": 1,
            "action": {
                "type": "modifyHeaders",
                "requestHeaders": [
                    {"header": "Cookie", "operation": "set", "value": "auth=xyz;example.com "}
                ],
            },
            "condition": {"urlFilter": "*", "resourceTypes": ["main_frame"]},
        }

    def test_round_trip_json(self) -> None:
        rule = HeaderRule(id="tab-3", priority=5, value="a=1;x.com ")
        assert HeaderRule.from_json(rule.to_json()) == rule


class TestProjection:
    @pytest.mark.asyncio
    async def test_rule_carries_serialized_store(
        self,
        engine: IsolationEngine,
        resolver: ScriptedResolver,
        rule_engine: RecordingRuleEngine,
    ) -> None:
        await engine.on_open(7)
        resolver.foreground = 7
        await engine.on_credential_changed(CredentialEntry("auth", "xyz", "example.com"))

        rule = await engine.on_activate(7)

        assert rule is not None
        assert rule_engine.rules[7].value == "auth=xyz;example.com "
        assert rule_engine.rules[7].priority == 1

    @pytest.mark.asyncio
    async def test_replace_is_remove_then_install(
        self, engine: IsolationEngine, rule_engine: RecordingRuleEngine
    ) -> None:
        await engine.on_open(7)
        await engine.on_activate(7)
        await engine.on_activate(7)
        assert rule_engine.calls == [
            ("remove", 7),
            ("install", 7),
            ("remove", 7),
            ("install", 7),
        ]

    @pytest.mark.asyncio
    async def test_header_lags_until_next_activation(
        self,
        engine: IsolationEngine,
        resolver: ScriptedResolver,
        rule_engine: RecordingRuleEngine,
    ) -> None:
        await engine.on_open(7)
        resolver.foreground = 7
        await engine.on_activate(7)
        await engine.on_credential_changed(CredentialEntry("auth", "xyz", "example.com"))
        assert rule_engine.rules[7].value == ""
        await engine.on_activate(7)
        assert rule_engine.rules[7].value == "auth=xyz;example.com "

    @pytest.mark.asyncio
    async def test_unregistered_context_is_ignored(
        self, engine: IsolationEngine, rule_engine: RecordingRuleEngine
    ) -> None:
        assert await engine.on_activate(42) is None
        assert rule_engine.calls == []

    @pytest.mark.asyncio
    async def test_excluded_site_is_skipped(
        self,
        engine: IsolationEngine,
        resolver: ScriptedResolver,
        rule_engine: RecordingRuleEngine,
    ) -> None:
        await engine.on_open(7)
        resolver.urls[7] = "https://github.com/org/repo"
        assert await engine.on_activate(7) is None
        assert rule_engine.calls == []

    @pytest.mark.asyncio
    async def test_excluded_entries_are_never_replayed(
        self,
        engine: IsolationEngine,
        storage: FlakyStorage,
        rule_engine: RecordingRuleEngine,
    ) -> None:
        session_id = await engine.on_open(7)
        # Written behind the interceptor's back, e.g. by an older settings file.
        await storage.set(session_id, "_gh_sess=s;.github.com auth=xyz;example.com ")
        await engine.on_activate(7)
        assert rule_engine.rules[7].value == "auth=xyz;example.com "


class TestProjectionFailures:
    @pytest.mark.asyncio
    async def test_rule_engine_error_is_not_fatal(
        self,
        engine: IsolationEngine,
        rule_engine: RecordingRuleEngine,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        await engine.on_open(7)
        rule_engine.fail = True
        with caplog.at_level(logging.ERROR):
            assert await engine.on_activate(7) is None
        assert "Failed to install header rule for context 7" in caplog.text
        assert engine.registry.lookup(7) is not None

    @pytest.mark.asyncio
    async def test_storage_error_is_not_fatal(
        self,
        engine: IsolationEngine,
        storage: FlakyStorage,
        rule_engine: RecordingRuleEngine,
    ) -> None:
        await engine.on_open(7)
        storage.fail_get = True
        assert await engine.on_activate(7) is None
        assert rule_engine.calls == []
