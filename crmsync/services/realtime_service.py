"""
In-process fan-out of message and thread events to operator WebSockets.

Rooms:
    thread_<main_id>  joined as "thread" or "lead"
    order_<id>
    contact_<id>

A socket in several rooms receives one frame per room; clients de-duplicate by message id.
"""

import asyncio
from typing import Any, Optional

from fastapi import WebSocket

from crmsync.logging_config import get_logger
from crmsync.schemas.realtime import RealtimeFrame

logger = get_logger("realtime_service")

MESSAGE_CREATED = "message_created"
MESSAGE_UPDATED = "message_updated"
THREAD_UPDATED = "thread_updated"
EVENT_TYPES = (MESSAGE_CREATED, MESSAGE_UPDATED, THREAD_UPDATED)

# scope alias -> room prefix
ROOM_SCOPES = {
    "thread": "thread",
    "lead": "thread",
    "order": "order",
    "contact": "contact",
}


class UnknownScopeError(ValueError):
    pass


def room_name(scope: str, key: int) -> str:
    prefix = ROOM_SCOPES.get(scope)
    if prefix is None:
        raise UnknownScopeError(f"Unknown room scope: {scope}")
    return f"{prefix}_{key}"


def wire_event(event: str, scope: str) -> str:
    if event == MESSAGE_CREATED:
        return f"new_{scope}_message"
    if event == THREAD_UPDATED:
        return f"{scope}_updated"
    return event


class RealtimeBroadcaster:
    def __init__(self, send_timeout: float = 5.0):
        self.send_timeout = send_timeout
        # room -> {socket: scope alias the socket joined with}
        self._rooms: dict[str, dict[WebSocket, str]] = {}
        self._memberships: dict[WebSocket, set[str]] = {}
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket) -> None:
        await websocket.accept()
        async with self._lock:
            self._memberships.setdefault(websocket, set())
        logger.info("Realtime client connected", extra={"context": {"connections": len(self._memberships)}})

    async def disconnect(self, websocket: WebSocket) -> None:
        async with self._lock:
            rooms = self._memberships.pop(websocket, set())
            for room in rooms:
                members = self._rooms.get(room)
                if members is None:
                    continue
                members.pop(websocket, None)
                if not members:
                    del self._rooms[room]

    async def join(self, websocket: WebSocket, scope: str, key: int) -> str:
        room = room_name(scope, key)
        async with self._lock:
            self._rooms.setdefault(room, {})[websocket] = scope
            self._memberships.setdefault(websocket, set()).add(room)
        return room

    async def leave(self, websocket: WebSocket, scope: str, key: int) -> str:
        room = room_name(scope, key)
        async with self._lock:
            members = self._rooms.get(room)
            if members is not None:
                members.pop(websocket, None)
                if not members:
                    del self._rooms[room]
            self._memberships.get(websocket, set()).discard(room)
        return room

    def room_size(self, room: str) -> int:
        return len(self._rooms.get(room, {}))

    async def _send(self, websocket: WebSocket, frame: dict) -> bool:
        try:
            await asyncio.wait_for(websocket.send_json(frame), timeout=self.send_timeout)
            return True
        except Exception as e:
            logger.warning("Realtime send failed, dropping socket", extra={"context": {"error": str(e)}})
            return False

    async def publish(
        self,
        event: str,
        payload: Any,
        *,
        thread_key: Optional[int] = None,
        order_id: Optional[int] = None,
        contact_id: Optional[int] = None,
    ) -> int:
        """
        Deliver ``event`` to every socket in the matching rooms.

        Best effort: failing sockets are dropped and never retried. Returns frames sent.
        """
        if event not in EVENT_TYPES:
            raise ValueError(f"Unknown realtime event: {event}")

        rooms = []
        if thread_key is not None:
            rooms.append(room_name("thread", thread_key))
        if order_id is not None:
            rooms.append(room_name("order", order_id))
        if contact_id is not None:
            rooms.append(room_name("contact", contact_id))

        deliveries = []
        async with self._lock:
            for room in rooms:
                for websocket, scope in self._rooms.get(room, {}).items():
                    deliveries.append((websocket, RealtimeFrame(event=wire_event(event, scope), data=payload).to_wire()))

        sent = 0
        failed = set()
        for websocket, frame in deliveries:
            if websocket in failed:
                continue
            if await self._send(websocket, frame):
                sent += 1
            else:
                failed.add(websocket)

        for websocket in failed:
            await self.disconnect(websocket)

        logger.debug(
            "Realtime event published",
            extra={"context": {"event": event, "rooms": rooms, "sent": sent, "dropped": len(failed)}},
        )
        return sent
