"""Event system for agent run observability.

Key Components:
    - EventType: Enum of all event types published during a run
    - AgentEvent: Pydantic model for events flowing through the bus
    - EventBus: Async pub/sub keyed by run id
    - LLMMetrics: Token and latency metrics for individual LLM calls
"""

from intentgraph.events.bus import (
    EventBus,
    get_event_bus,
    reset_event_bus,
)
from intentgraph.events.types import (
    AgentEvent,
    EventType,
    LLMMetrics,
)

__all__ = [
    "EventType",
    "AgentEvent",
    "LLMMetrics",
    "EventBus",
    "get_event_bus",
    "reset_event_bus",
]
