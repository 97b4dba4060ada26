"""
WebSocket endpoint for live task updates.

Clients connected to ``/ws/tasks/{task_id}`` receive change events for the
task row, its sessions, messages and activities.
"""
from fastapi import WebSocket, WebSocketDisconnect, Query, HTTPException
from typing import Dict, List, Optional
import asyncio
import json
import logging
from datetime import datetime, timezone
import uuid

from ..realtime import ChangeEvent, ChangeFeed, Subscription, column_equals
from ..services.auth_service import auth_service
from ..utils.telemetry import update_websocket_connections

logger = logging.getLogger(__name__)

# (table, column holding the task id)
TASK_TABLES = (
    ("tasks", "id"),
    ("task_sessions", "task_id"),
    ("task_messages", "task_id"),
    ("task_activities", "task_id"),
)

MAX_PENDING_EVENTS = 200


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class ConnectionManager:
    """Manages WebSocket connections per task."""

    def __init__(self):
        self.active_connections: Dict[str, Dict[str, WebSocket]] = {}

    @property
    def connection_count(self) -> int:
        return sum(len(clients) for clients in self.active_connections.values())

    async def connect(self, websocket: WebSocket, task_id: str, client_id: str) -> None:
        """Accept and register a new connection."""
        await websocket.accept()
        self.active_connections.setdefault(task_id, {})[client_id] = websocket
        update_websocket_connections(self.connection_count)
        logger.info(f"WebSocket connected: task={task_id}, client={client_id}")

    def disconnect(self, task_id: str, client_id: str) -> None:
        clients = self.active_connections.get(task_id)
        if clients and client_id in clients:
            del clients[client_id]
            logger.info(f"WebSocket client {client_id} disconnected from task {task_id}")

        # Clean up empty tasks
        if task_id in self.active_connections and not self.active_connections[task_id]:
            del self.active_connections[task_id]

        update_websocket_connections(self.connection_count)


# Global connection manager
manager = ConnectionManager()


def subscribe_task(feed: ChangeFeed, task_id: str, queue: asyncio.Queue) -> List[Subscription]:
    """Subscribe to every table of a task, forwarding events into ``queue``."""
    loop = asyncio.get_running_loop()

    def _put(event: ChangeEvent) -> None:
        if queue.full():
            queue.get_nowait()
            logger.warning(f"WebSocket consumer for task {task_id} is lagging, dropped oldest event")
        queue.put_nowait(event)

    def _forward(event: ChangeEvent) -> None:
        loop.call_soon_threadsafe(_put, event)

    return [
        feed.subscribe(table, predicate=column_equals(column, task_id), callback=_forward)
        for table, column in TASK_TABLES
    ]


async def _send_events(websocket: WebSocket, queue: asyncio.Queue) -> None:
    while True:
        event = await queue.get()
        await websocket.send_json({"type": "change", **event.to_dict()})


async def _receive(websocket: WebSocket) -> None:
    while True:
        data = await websocket.receive_text()
        try:
            message = json.loads(data)
        except ValueError:
            await websocket.send_json({"type": "error", "message": "Invalid JSON", "timestamp": _now()})
            continue

        if isinstance(message, dict) and message.get("type") == "ping":
            await websocket.send_json({"type": "pong", "timestamp": _now()})


async def task_updates_endpoint(
    websocket: WebSocket,
    task_id: str,
    token: Optional[str] = Query(None)
):
    """
    Stream change events of one task.

    Args:
        websocket: WebSocket connection
        task_id: Task to watch
        token: Bearer token (browsers cannot set headers on WebSockets)
    """
    if not token:
        await websocket.close(code=4001, reason="Authentication required")
        return

    try:
        user_id = auth_service.verify_token(token).get("sub")
    except HTTPException:
        await websocket.close(code=4001, reason="Invalid token")
        return

    feed: Optional[ChangeFeed] = getattr(websocket.app.state, "change_feed", None)
    if feed is None:
        logger.error("Change feed not initialized")
        await websocket.close(code=1011, reason="Change feed not initialized")
        return

    client_id = str(uuid.uuid4())
    queue: asyncio.Queue = asyncio.Queue(maxsize=MAX_PENDING_EVENTS)
    subscriptions = subscribe_task(feed, task_id, queue)

    await manager.connect(websocket, task_id, client_id)

    sender = None
    receiver = None
    try:
        await websocket.send_json({
            "type": "connected",
            "task_id": task_id,
            "client_id": client_id,
            "user_id": user_id,
            "timestamp": _now()
        })

        sender = asyncio.create_task(_send_events(websocket, queue))
        receiver = asyncio.create_task(_receive(websocket))
        done, _ = await asyncio.wait({sender, receiver}, return_when=asyncio.FIRST_COMPLETED)

        for finished in done:
            error = finished.exception()
            if error is not None and not isinstance(error, WebSocketDisconnect):
                logger.error(f"WebSocket error on task {task_id}: {error}")

    except WebSocketDisconnect:
        logger.debug(f"WebSocket client {client_id} disconnected")

    finally:
        for running in (sender, receiver):
            if running is not None and not running.done():
                running.cancel()
        for subscription in subscriptions:
            feed.unsubscribe(subscription)
        manager.disconnect(task_id, client_id)
