"""Async event bus for agent run observability.

Publishers (orchestrator, tool dispatcher, LLM client) push ``AgentEvent``s
keyed by ``run_id``; any number of subscribers per run receive them through
an ``asyncio.Queue``. Events published before the first subscriber arrives
are buffered and delivered on subscribe.

History of a closed run stays available for replay until
``MAX_CLOSED_RUNS`` newer runs have closed.
"""

import asyncio
import threading
from collections import OrderedDict, defaultdict

import structlog

from intentgraph.events.types import AgentEvent, EventType

logger = structlog.get_logger(__name__)


class EventBus:
    """Async pub/sub event bus keyed by run id.

    Usage:
        >>> bus = EventBus()
        >>> queue = bus.subscribe("run_123")
        >>> await bus.publish(AgentEvent(type=EventType.RUN_STARTED, run_id="run_123"))
        >>> event = await queue.get()
        >>> await bus.close_run("run_123")

    Subscriber bookkeeping is guarded by a ``threading.Lock`` so sub-agents
    running on other loops or threads can share one bus.
    """

    # Maximum number of events retained per run for replay.
    MAX_HISTORY_PER_RUN = 5000

    # Closed runs whose history is kept; older ones are evicted.
    MAX_CLOSED_RUNS = 256

    def __init__(self) -> None:
        self._subscribers: dict[str, list[asyncio.Queue[AgentEvent]]] = defaultdict(list)
        self._event_buffer: dict[str, list[AgentEvent]] = defaultdict(list)
        self._event_history: dict[str, list[AgentEvent]] = defaultdict(list)
        self._closed_runs: OrderedDict[str, None] = OrderedDict()
        self._lock = threading.Lock()
        logger.info("event_bus_initialized")

    def subscribe(self, run_id: str) -> asyncio.Queue[AgentEvent]:
        """Subscribe to a run's events, receiving any buffered ones first.

        The queue of an already closed run gets only the ``RUN_CLOSED``
        sentinel.
        """
        queue: asyncio.Queue[AgentEvent] = asyncio.Queue()

        with self._lock:
            if run_id in self._closed_runs:
                queue.put_nowait(_closed_sentinel(run_id))
                logger.info("subscribed_to_closed_run", run_id=run_id)
                return queue
            self._subscribers[run_id].append(queue)
            subscriber_count = len(self._subscribers[run_id])
            buffered_events = self._event_buffer.pop(run_id, [])

        for event in buffered_events:
            queue.put_nowait(event)

        logger.info(
            "subscriber_added",
            run_id=run_id,
            subscriber_count=subscriber_count,
            buffered_events_delivered=len(buffered_events),
        )
        return queue

    def unsubscribe(self, run_id: str, queue: asyncio.Queue[AgentEvent]) -> None:
        """Remove a subscriber queue. Unknown queues are ignored."""
        with self._lock:
            queues = self._subscribers.get(run_id)
            if not queues or queue not in queues:
                logger.warning("unsubscribe_queue_not_found", run_id=run_id)
                return
            queues.remove(queue)
            if not queues:
                del self._subscribers[run_id]

        logger.info("subscriber_removed", run_id=run_id)

    async def publish(self, event: AgentEvent) -> None:
        """Deliver an event to every subscriber of its run, or buffer it.

        A subscriber whose queue does not accept the event within five
        seconds is skipped for that event.
        """
        with self._lock:
            if event.type == EventType.RUN_STARTED and event.run_id in self._closed_runs:
                # A reused run id starts a fresh history.
                del self._closed_runs[event.run_id]
                self._event_history.pop(event.run_id, None)
            if event.type != EventType.RUN_CLOSED:
                history = self._event_history[event.run_id]
                history.append(event)
                if len(history) > self.MAX_HISTORY_PER_RUN:
                    self._event_history[event.run_id] = history[-self.MAX_HISTORY_PER_RUN:]

            subscribers = list(self._subscribers.get(event.run_id, []))
            if not subscribers and event.run_id in self._closed_runs:
                return
            if not subscribers:
                self._event_buffer[event.run_id].append(event)
                logger.debug(
                    "event_buffered",
                    run_id=event.run_id,
                    event_type=event.type.value,
                    buffer_size=len(self._event_buffer[event.run_id]),
                )
                return

        for queue in subscribers:
            try:
                await asyncio.wait_for(queue.put(event), timeout=5.0)
            except TimeoutError:
                logger.warning(
                    "event_delivery_timeout",
                    run_id=event.run_id,
                    event_type=event.type.value,
                )

        logger.debug(
            "event_published",
            run_id=event.run_id,
            event_type=event.type.value,
            subscriber_count=len(subscribers),
            agent_id=event.agent_id,
        )

    def get_event_history(self, run_id: str) -> list[AgentEvent]:
        """All events published for a run, oldest first."""
        with self._lock:
            return list(self._event_history.get(run_id, []))

    def is_closed(self, run_id: str) -> bool:
        with self._lock:
            return run_id in self._closed_runs

    def history_run_count(self) -> int:
        with self._lock:
            return len(self._event_history)

    async def close_run(self, run_id: str) -> None:
        """Signal every subscriber with a ``RUN_CLOSED`` sentinel and drop them.

        Buffered events are discarded. History is kept until
        ``MAX_CLOSED_RUNS`` later runs have closed.
        """
        with self._lock:
            queues_to_signal = self._subscribers.pop(run_id, [])
            buffer_count = len(self._event_buffer.pop(run_id, []))
            self._closed_runs[run_id] = None
            self._closed_runs.move_to_end(run_id)
            evicted = 0
            while len(self._closed_runs) > self.MAX_CLOSED_RUNS:
                oldest, _ = self._closed_runs.popitem(last=False)
                self._event_history.pop(oldest, None)
                evicted += 1

        for queue in queues_to_signal:
            await queue.put(_closed_sentinel(run_id))

        logger.info(
            "run_closed",
            run_id=run_id,
            subscribers_removed=len(queues_to_signal),
            buffered_events_cleared=buffer_count,
            histories_evicted=evicted,
        )

    def get_subscriber_count(self, run_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(run_id, []))

    def clear_event_history(self, run_id: str) -> None:
        with self._lock:
            self._event_history.pop(run_id, None)
            self._closed_runs.pop(run_id, None)


def _closed_sentinel(run_id: str) -> AgentEvent:
    return AgentEvent(type=EventType.RUN_CLOSED, run_id=run_id, data={"reason": "run_closed"})


# Global event bus instance
_event_bus: EventBus | None = None
_bus_lock = threading.Lock()


def get_event_bus() -> EventBus:
    """Get the process-wide EventBus, creating it on first use."""
    global _event_bus
    if _event_bus is None:
        with _bus_lock:
            if _event_bus is None:
                _event_bus = EventBus()
    return _event_bus


def reset_event_bus() -> None:
    """Drop the process-wide EventBus (used between tests)."""
    global _event_bus
    with _bus_lock:
        _event_bus = None
    logger.info("event_bus_reset")
