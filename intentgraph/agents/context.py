"""Explicit dependency bundle for agent runs.

``AgentContext`` carries the chat client, event bus, metrics collector,
sub-agent limiter and numeric bounds into the orchestrator, tool dispatcher
and spawner, so no component reaches for a hidden global client.
"""

import threading
from dataclasses import dataclass, field

import structlog

from intentgraph.agents.utils import LLMClient
from intentgraph.config import settings
from intentgraph.events.bus import EventBus
from intentgraph.metrics import MetricsCollector

logger = structlog.get_logger(__name__)


class SpawnLimiter:
    """Counter of concurrently active sub-agents with a hard ceiling.

    ``try_acquire`` never blocks or queues: beyond the ceiling it returns
    False immediately. Safe to share across threads and event loops.
    """

    def __init__(self, max_active: int) -> None:
        self.max_active = max_active
        self._active = 0
        self._lock = threading.Lock()

    @property
    def active(self) -> int:
        with self._lock:
            return self._active

    def try_acquire(self) -> bool:
        with self._lock:
            if self._active >= self.max_active:
                return False
            self._active += 1
            return True

    def release(self) -> None:
        with self._lock:
            if self._active == 0:
                logger.warning("spawn_limiter_release_without_acquire")
                return
            self._active -= 1


_spawn_limiter: SpawnLimiter | None = None
_limiter_lock = threading.Lock()


def get_spawn_limiter() -> SpawnLimiter:
    """Process-wide limiter shared by every context built from settings."""
    global _spawn_limiter
    if _spawn_limiter is None:
        with _limiter_lock:
            if _spawn_limiter is None:
                _spawn_limiter = SpawnLimiter(settings.max_sub_agents)
    return _spawn_limiter


def reset_spawn_limiter() -> None:
    global _spawn_limiter
    with _limiter_lock:
        _spawn_limiter = None


@dataclass
class AgentContext:
    """Everything an orchestrator run needs besides the graph itself.

    Attributes:
        llm_client: Chat backend client.
        event_bus: Optional bus for run events.
        metrics_collector: Optional per-run metrics.
        spawn_limiter: Shared ceiling on concurrent sub-agents.
        sandbox_roots: Directories execute_code may read.
        sandbox_timeout_seconds: Budget for one execute_code call.
        max_tool_iterations: Tool-call rounds allowed per run.
        max_tool_result_chars: Tool payloads are truncated beyond this.
        model: Model override; None uses the client's default.
    """

    llm_client: LLMClient
    event_bus: EventBus | None = None
    metrics_collector: MetricsCollector | None = None
    spawn_limiter: SpawnLimiter = field(default_factory=get_spawn_limiter)
    sandbox_roots: list[str] = field(default_factory=lambda: list(settings.sandbox_roots))
    sandbox_timeout_seconds: float = field(default_factory=lambda: settings.sandbox_timeout_seconds)
    max_tool_iterations: int = field(default_factory=lambda: settings.max_tool_iterations)
    max_tool_result_chars: int = field(default_factory=lambda: settings.max_tool_result_chars)
    model: str | None = None

    @classmethod
    def from_settings(
        cls,
        llm_client: LLMClient | None = None,
        event_bus: EventBus | None = None,
        metrics_collector: MetricsCollector | None = None,
    ) -> "AgentContext":
        """Build a context from the global settings.

        The default LLM client shares the given event bus and collector.
        """
        client = llm_client or LLMClient(
            event_bus=event_bus,
            metrics_collector=metrics_collector,
        )
        return cls(
            llm_client=client,
            event_bus=event_bus,
            metrics_collector=metrics_collector,
        )
