"""Tests for the session registry."""

from __future__ import annotations

import dataclasses
import datetime

import pytest

from tab_isolation.session.registry import AllocationError, Session, SessionRegistry
from tab_isolation.store.credentials import CredentialStore

from conftest import FIXED_NOW, FlakyStorage


@pytest.fixture
def registry(storage: FlakyStorage) -> SessionRegistry:
    return SessionRegistry(CredentialStore(storage), clock=lambda: FIXED_NOW)


class TestCreate:
    @pytest.mark.asyncio
    async def test_id_derived_from_context_and_time(
        self, registry: SessionRegistry, storage: FlakyStorage
    ) -> None:
        session_id = await registry.create(7)
        assert session_id == "session-7-1700000000000"
        assert await storage.get(session_id) == ""

    @pytest.mark.asyncio
    async def test_ids_never_repeat_when_clock_stalls(self, registry: SessionRegistry) -> None:
        first = await registry.create(7)
        registry.remove(7)
        second = await registry.create(7)
        assert first != second
        assert second == "session-7-1700000000001"

    @pytest.mark.asyncio
    async def test_storage_failure_raises_allocation_error(
        self, registry: SessionRegistry, storage: FlakyStorage
    ) -> None:
        storage.fail_set = True
        with pytest.raises(AllocationError, match="context 7"):
            await registry.create(7)
        assert registry.lookup(7) is None

    @pytest.mark.asyncio
    async def test_session_record(self, registry: SessionRegistry) -> None:
        await registry.create("tab-a")
        session = registry.active()["tab-a"]
        assert session.context_id == "tab-a"
        assert session.created_at == datetime.datetime.fromtimestamp(FIXED_NOW, datetime.UTC)
        assert "tab-a" in str(session)
        with pytest.raises(dataclasses.FrozenInstanceError):
            session.session_id = "stolen"  # type: ignore[misc]


class TestLookupAndRemove:
    @pytest.mark.asyncio
    async def test_lookup(self, registry: SessionRegistry) -> None:
        session_id = await registry.create(3)
        assert registry.lookup(3) == session_id
        assert registry.lookup(4) is None

    @pytest.mark.asyncio
    async def test_remove_is_idempotent(self, registry: SessionRegistry) -> None:
        session_id = await registry.create(3)
        assert registry.remove(3) == session_id
        assert registry.remove(3) is None
        assert registry.lookup(3) is None

    @pytest.mark.asyncio
    async def test_active_is_a_snapshot(self, registry: SessionRegistry) -> None:
        await registry.create(1)
        snapshot = registry.active()
        await registry.create(2)
        assert set(snapshot) == {1}
        assert isinstance(snapshot[1], Session)
