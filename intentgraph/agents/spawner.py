"""Delegation of sub-tasks to fresh orchestrators under a shared ceiling."""

from collections.abc import Callable, Mapping
from typing import Any

import structlog

from intentgraph.agents.context import AgentContext
from intentgraph.events.types import AgentEvent, EventType
from intentgraph.graph.model import Delta, Node

logger = structlog.get_logger(__name__)


class SubAgentSpawner:
    """Runs delegated sub-tasks, refusing immediately past the ceiling.

    The slot is taken before delegation and released in a ``finally`` block,
    whatever the sub-agent's outcome. Failures of the sub-agent propagate to
    the caller (the tool dispatcher turns them into ``{"error": ...}``).

    Attributes:
        context: Shared dependencies; its ``spawn_limiter`` is the counter.
        orchestrator_factory: Builds a fresh orchestrator for each sub-task.
    """

    def __init__(
        self,
        context: AgentContext,
        orchestrator_factory: Callable[[AgentContext], Any],
    ) -> None:
        self.context = context
        self.orchestrator_factory = orchestrator_factory

    async def spawn(
        self,
        task: str,
        context: str | None,
        graph: Mapping[str, Node],
        overlay: Delta | None = None,
        parent_id: str | None = None,
        parent_run_id: str | None = None,
    ) -> Delta | None:
        """Delegate ``task``; None when the sub-agent ceiling is reached."""
        limiter = self.context.spawn_limiter
        if not limiter.try_acquire():
            logger.warning(
                "sub_agent_rejected",
                parent_id=parent_id,
                max_active=limiter.max_active,
            )
            await self._publish(
                parent_run_id,
                parent_id,
                EventType.SUB_AGENT_REJECTED,
                {"task": task[:500], "max_active": limiter.max_active},
            )
            return None

        try:
            logger.info("sub_agent_spawned", parent_id=parent_id, active=limiter.active)
            await self._publish(
                parent_run_id,
                parent_id,
                EventType.AGENT_SPAWNED,
                {"parent_id": parent_id, "task": task[:500]},
            )
            orchestrator = self.orchestrator_factory(self.context)
            return await orchestrator.delegate(
                task,
                context,
                graph,
                overlay=overlay,
                parent_id=parent_id,
            )
        finally:
            limiter.release()

    async def _publish(
        self,
        run_id: str | None,
        parent_id: str | None,
        event_type: EventType,
        data: dict[str, Any],
    ) -> None:
        # Filed under the parent run so the caller's stream shows delegation.
        if self.context.event_bus is None or not run_id:
            return
        await self.context.event_bus.publish(
            AgentEvent(type=event_type, run_id=run_id, agent_id=parent_id, data=data)
        )
