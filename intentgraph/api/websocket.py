"""WebSocket handler streaming the events of one agent run.

Clients pick a ``run_id``, open ``/ws/runs/{run_id}`` and then post the
request carrying that id. Connecting late replays the run's history; the
stream ends after the ``RUN_CLOSED`` sentinel.
"""

import asyncio
import contextlib

import structlog
from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status

from intentgraph.api.routes import get_run_event_bus
from intentgraph.events import EventType

logger = structlog.get_logger(__name__)

websocket_router = APIRouter()


@websocket_router.websocket("/ws/runs/{run_id}")
async def run_events_stream(websocket: WebSocket, run_id: str) -> None:
    """Stream a run's events as JSON objects.

    Client -> server messages are limited to ``{"type": "ping"}``, answered
    with ``{"type": "pong"}``.
    """
    await websocket.accept()

    try:
        event_bus = get_run_event_bus()
    except RuntimeError as e:
        logger.error("websocket_no_event_bus", run_id=run_id, error=str(e))
        await websocket.close(code=status.WS_1011_INTERNAL_ERROR, reason=str(e))
        return

    logger.info("websocket_connected", run_id=run_id)

    # Subscribe before reading history so nothing published in between is lost.
    queue = event_bus.subscribe(run_id)

    try:
        last_replay_timestamp = 0.0
        for event in event_bus.get_event_history(run_id):
            await websocket.send_json(event.model_dump(mode="json"))
            last_replay_timestamp = event.timestamp

        async def send_events() -> None:
            while True:
                event = await queue.get()
                if event.type == EventType.RUN_CLOSED:
                    await websocket.send_json(event.model_dump(mode="json"))
                    logger.info("run_closed_sentinel", run_id=run_id)
                    return
                # Buffered events were already replayed from history.
                if event.timestamp <= last_replay_timestamp:
                    continue
                await websocket.send_json(event.model_dump(mode="json"))

        async def receive_commands() -> None:
            while True:
                data = await websocket.receive_json()
                if isinstance(data, dict) and data.get("type") == "ping":
                    await websocket.send_json({"type": "pong", "timestamp": data.get("timestamp")})
                else:
                    logger.warning("unknown_ws_message", run_id=run_id)

        send_task = asyncio.create_task(send_events())
        receive_task = asyncio.create_task(receive_commands())
        done, pending = await asyncio.wait(
            [send_task, receive_task],
            return_when=asyncio.FIRST_COMPLETED,
        )
        for task in pending:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        for task in done:
            # Surfaces a disconnect seen by either side.
            task.result()

        await websocket.close()
    except WebSocketDisconnect:
        logger.info("websocket_disconnected", run_id=run_id)
    except Exception as e:
        logger.error("websocket_error", run_id=run_id, error=str(e))
    finally:
        event_bus.unsubscribe(run_id, queue)
        logger.info("websocket_cleanup_complete", run_id=run_id)
