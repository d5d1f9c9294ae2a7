"""Tests for agents/spawner.py and the SpawnLimiter ceiling."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from intentgraph.agents.context import SpawnLimiter
from intentgraph.agents.spawner import SubAgentSpawner
from intentgraph.agents.utils import MockLLMClient
from intentgraph.events.types import EventType
from tests.conftest import make_context, make_delta


def _factory(delegate: AsyncMock) -> MagicMock:
    orchestrator = MagicMock()
    orchestrator.delegate = delegate
    return MagicMock(return_value=orchestrator)


# =========================================================================
# SpawnLimiter
# =========================================================================


class TestSpawnLimiter:
    def test_acquire_until_ceiling(self) -> None:
        limiter = SpawnLimiter(2)
        assert limiter.try_acquire() is True
        assert limiter.try_acquire() is True
        assert limiter.try_acquire() is False
        assert limiter.active == 2

    def test_release_frees_slot(self) -> None:
        limiter = SpawnLimiter(1)
        limiter.try_acquire()
        limiter.release()
        assert limiter.try_acquire() is True

    def test_release_without_acquire_is_ignored(self) -> None:
        limiter = SpawnLimiter(1)
        limiter.release()
        assert limiter.active == 0


# =========================================================================
# SubAgentSpawner
# =========================================================================


class TestSubAgentSpawner:
    async def test_delegates_and_releases(self, sample_graph, event_bus) -> None:
        context = make_context(MockLLMClient(), event_bus=event_bus)
        delegate = AsyncMock(return_value=make_delta(name="sub"))
        factory = _factory(delegate)
        spawner = SubAgentSpawner(context, orchestrator_factory=factory)

        delta = await spawner.spawn(
            "task", "ctx", sample_graph, parent_id="parent", parent_run_id="run_parent"
        )

        assert delta.name == "sub"
        factory.assert_called_once_with(context)
        delegate.assert_awaited_once_with(
            "task", "ctx", sample_graph, overlay=None, parent_id="parent"
        )
        assert context.spawn_limiter.active == 0
        spawned = event_bus.of_type(EventType.AGENT_SPAWNED)[0]
        assert spawned.run_id == "run_parent"
        assert spawned.data["parent_id"] == "parent"

    async def test_rejects_at_ceiling_without_running(self, sample_graph, event_bus) -> None:
        context = make_context(MockLLMClient(), event_bus=event_bus, max_sub_agents=1)
        context.spawn_limiter.try_acquire()
        delegate = AsyncMock()
        spawner = SubAgentSpawner(context, orchestrator_factory=_factory(delegate))

        result = await spawner.spawn("task", None, sample_graph, parent_run_id="run_parent")

        assert result is None
        delegate.assert_not_awaited()
        assert context.spawn_limiter.active == 1
        assert event_bus.types() == [EventType.SUB_AGENT_REJECTED]

    async def test_failure_releases_slot(self, sample_graph) -> None:
        context = make_context(MockLLMClient())
        delegate = AsyncMock(side_effect=RuntimeError("boom"))
        spawner = SubAgentSpawner(context, orchestrator_factory=_factory(delegate))

        with pytest.raises(RuntimeError, match="boom"):
            await spawner.spawn("task", None, sample_graph)

        assert context.spawn_limiter.active == 0

    async def test_concurrent_spawns_respect_ceiling(self, sample_graph) -> None:
        context = make_context(MockLLMClient(), max_sub_agents=2)
        release = asyncio.Event()
        peak = 0

        async def slow_delegate(*args, **kwargs):
            nonlocal peak
            peak = max(peak, context.spawn_limiter.active)
            await release.wait()
            return make_delta(name="sub")

        spawner = SubAgentSpawner(context, orchestrator_factory=_factory(AsyncMock(side_effect=slow_delegate)))

        tasks = [asyncio.create_task(spawner.spawn(f"t{i}", None, sample_graph)) for i in range(4)]
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        release.set()
        results = await asyncio.gather(*tasks)

        assert peak == 2
        assert sum(result is None for result in results) == 2
        assert context.spawn_limiter.active == 0
