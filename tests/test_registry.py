"""Tests for entity-id to session routing."""

import asyncio

import pytest

from sessions.registry import EntityRegistry


class TestEntityRegistry:
    @pytest.mark.asyncio
    async def test_resolve_registered_entity(self):
        registry = EntityRegistry()
        await registry.register("ch-1", "session-a")

        assert await registry.resolve("ch-1") == "session-a"

    @pytest.mark.asyncio
    async def test_unknown_entity_is_not_found(self):
        registry = EntityRegistry()

        assert await registry.resolve("never-seen") is None

    @pytest.mark.asyncio
    async def test_unregister(self):
        registry = EntityRegistry()
        await registry.register("ch-1", "session-a")

        await registry.unregister("ch-1")
        await registry.unregister("ch-1")

        assert await registry.resolve("ch-1") is None

    @pytest.mark.asyncio
    async def test_release_session_only_drops_its_entities(self):
        registry = EntityRegistry()
        await registry.register("ch-1", "session-a")
        await registry.register("bridge-1", "session-a")
        await registry.register("ch-2", "session-b")

        released = await registry.release_session("session-a")

        assert released == 2
        assert await registry.resolve("ch-1") is None
        assert await registry.resolve("bridge-1") is None
        assert await registry.resolve("ch-2") == "session-b"

    @pytest.mark.asyncio
    async def test_concurrent_registration(self):
        registry = EntityRegistry()

        await asyncio.gather(
            *(registry.register(f"ch-{i}", f"session-{i % 4}") for i in range(200))
        )

        assert await registry.count() == 200
        assert await registry.resolve("ch-13") == "session-1"
