"""
WebSocket Routes for Real-time Run Streaming.

Streams the engine's events for one thread as they happen.
"""

from typing import Any, Dict, Set
from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
import asyncio
import logging

from durableflow.engine.events import EventType, RunEvent
from durableflow.runtime import Runtime, get_runtime


logger = logging.getLogger(__name__)

router = APIRouter(tags=["WebSocket"])

TERMINAL_EVENTS = {EventType.RUN_COMPLETED, EventType.RUN_FAILED, EventType.RUN_CANCELLED}


class ConnectionManager:
    """Tracks open WebSocket connections per thread."""

    def __init__(self):
        self.active_connections: Dict[str, Set[WebSocket]] = {}

    async def connect(self, websocket: WebSocket, thread_id: str):
        await websocket.accept()
        self.active_connections.setdefault(thread_id, set()).add(websocket)
        logger.info(f"WebSocket connected for thread: {thread_id}")

    def disconnect(self, websocket: WebSocket, thread_id: str):
        if thread_id in self.active_connections:
            self.active_connections[thread_id].discard(websocket)
            if not self.active_connections[thread_id]:
                del self.active_connections[thread_id]
        logger.info(f"WebSocket disconnected for thread: {thread_id}")

    def count(self) -> int:
        return sum(len(sockets) for sockets in self.active_connections.values())


# Global connection manager
manager = ConnectionManager()


@router.websocket("/ws/threads/{thread_id}")
async def websocket_thread(
    websocket: WebSocket,
    thread_id: str,
    runtime: Runtime = Depends(get_runtime),
):
    """
    Stream events of a thread.

    The first message is a snapshot of the thread's latest state
    (``{"type": "snapshot", "state": ...}``, ``state`` is null for a thread
    with no checkpoint yet). Every engine event for the thread follows;
    the socket closes after the run completes, fails or is cancelled.
    """
    queue: "asyncio.Queue[RunEvent]" = asyncio.Queue()
    unsubscribe = runtime.engine.events.subscribe(queue.put_nowait, thread_id=thread_id)

    await manager.connect(websocket, thread_id)
    try:
        state = await runtime.engine.get_state(thread_id)
        snapshot: Dict[str, Any] = {
            "type": "snapshot",
            "thread_id": thread_id,
            "state": state.to_dict() if state else None,
        }
        await websocket.send_json(snapshot)

        if state is not None and state.status.value in ("completed", "failed", "cancelled"):
            await websocket.close()
            return

        while True:
            event = await queue.get()
            await websocket.send_json({"type": "event", **event.to_dict()})
            if event.type in TERMINAL_EVENTS:
                await websocket.close()
                return

    except WebSocketDisconnect:
        logger.info(f"Client disconnected from thread {thread_id}")
    finally:
        unsubscribe()
        manager.disconnect(websocket, thread_id)
