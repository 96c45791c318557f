"""
Realtime Notifier: per-user fan-out of progress events over websockets.

Events are small tagged records serialized once per send:

    {"type": "task_started", "data": {"operationId": "...", "stage": "script"}}

A user with no open connection simply gets nothing; events are neither
queued nor replayed.  A connection whose send fails is dropped.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Optional, Set

from fastapi import WebSocket, WebSocketDisconnect, status

from reelforge.utils import _now_iso

logger = logging.getLogger("reelforge.realtime")

TokenVerifier = Callable[[Optional[str]], Optional[str]]


class EventType(str, Enum):
    TASK_QUEUED = "task_queued"
    TASK_STARTED = "task_started"
    TASK_COMPLETED = "task_completed"
    TASK_ERROR = "task_error"
    SUBSCRIPTION_CONFIRMED = "subscription_confirmed"
    CONNECTION_ACK = "connection_ack"


@dataclass
class RealtimeEvent:
    type: str
    data: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        self.type = EventType(self.type).value

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "data": self.data}

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str, ensure_ascii=False)


class RealtimeNotifier:
    """Registry of live connections keyed by user id.

    A connection is anything with ``async send_text(str)``; FastAPI's
    WebSocket qualifies.
    """

    def __init__(self) -> None:
        self._connections: Dict[str, Set[Any]] = {}

    def register(self, user_id: str, connection: Any) -> None:
        self._connections.setdefault(user_id, set()).add(connection)
        logger.debug("Connection registered for %s (%d open)", user_id, len(self._connections[user_id]))

    def unregister(self, user_id: str, connection: Any) -> None:
        conns = self._connections.get(user_id)
        if not conns:
            return
        conns.discard(connection)
        if not conns:
            del self._connections[user_id]

    def connection_count(self, user_id: Optional[str] = None) -> int:
        if user_id is not None:
            return len(self._connections.get(user_id, ()))
        return sum(len(c) for c in self._connections.values())

    async def send(self, user_id: Optional[str], event: RealtimeEvent) -> int:
        """Deliver *event* to every connection of *user_id*; return how many got it."""
        if not user_id:
            return 0
        conns = list(self._connections.get(user_id, ()))
        if not conns:
            return 0
        message = event.to_json()
        delivered = 0
        for conn in conns:
            try:
                await conn.send_text(message)
                delivered += 1
            except Exception as exc:
                logger.info("Dropping dead connection for %s: %s", user_id, exc)
                self.unregister(user_id, conn)
        return delivered

    async def emit(self, user_id: Optional[str], event_type: EventType, **data: Any) -> int:
        data.setdefault("timestamp", _now_iso())
        return await self.send(user_id, RealtimeEvent(event_type.value, data))

    async def broadcast(self, event: RealtimeEvent) -> int:
        delivered = 0
        for user_id in list(self._connections):
            delivered += await self.send(user_id, event)
        return delivered


async def handle_websocket(websocket: WebSocket, notifier: RealtimeNotifier, verify: TokenVerifier) -> None:
    """Serve one websocket from handshake to disconnect."""
    user_id = verify(websocket.query_params.get("token"))
    if not user_id:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        logger.info("Rejected websocket: invalid or missing token")
        return
    await websocket.accept()
    notifier.register(user_id, websocket)
    logger.info("Websocket connected for %s", user_id)
    try:
        await websocket.send_text(RealtimeEvent(
            EventType.CONNECTION_ACK.value, {"userId": user_id, "timestamp": _now_iso()},
        ).to_json())
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        notifier.unregister(user_id, websocket)
        logger.info("Websocket closed for %s", user_id)
