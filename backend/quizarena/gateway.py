from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional, Set

from fastapi.encoders import jsonable_encoder

from .events import EventStore
from .utils import LOBBY_ROOM

logger = logging.getLogger(__name__)

SESSION_ROOM_PREFIX = "game:"


class BroadcastGateway:
    """Fan-out over live websocket connections.

    Connections are keyed by user id (a reconnect replaces the previous
    socket). Rooms are plain names: ``lobby`` and ``game:<session id>``.
    Every publication to a session room is also appended to the replay log.
    """

    def __init__(self, event_store: Optional[EventStore] = None):
        self.event_store = event_store
        self.connections: Dict[str, Any] = {}
        self.rooms: Dict[str, Set[str]] = {}

    def connect(self, user_id: str, websocket: Any) -> None:
        self.connections[user_id] = websocket
        self.subscribe(LOBBY_ROOM, user_id)

    def disconnect(self, user_id: str, websocket: Any = None) -> List[str]:
        """Drop a connection and return the rooms it was subscribed to."""

        current = self.connections.get(user_id)
        if websocket is not None and current is not websocket:
            # a newer socket already took over for this user
            return []
        self.connections.pop(user_id, None)
        left = self.rooms_of(user_id)
        for room in left:
            self.unsubscribe(room, user_id)
        return left

    def subscribe(self, room: str, user_id: str) -> None:
        self.rooms.setdefault(room, set()).add(user_id)

    def unsubscribe(self, room: str, user_id: str) -> None:
        members = self.rooms.get(room)
        if not members:
            return
        members.discard(user_id)
        if not members:
            self.rooms.pop(room, None)

    def close_room(self, room: str) -> None:
        self.rooms.pop(room, None)

    def rooms_of(self, user_id: str) -> List[str]:
        return sorted(room for room, members in self.rooms.items() if user_id in members)

    def members(self, room: str) -> Set[str]:
        return set(self.rooms.get(room, ()))

    def is_connected(self, user_id: str) -> bool:
        return user_id in self.connections

    async def send(self, user_id: str, event: str, data: Any = None) -> bool:
        websocket = self.connections.get(user_id)
        if websocket is None:
            return False
        # empty lists are real payloads (availableGames with no open games)
        frame = {"event": event, "data": jsonable_encoder({} if data is None else data)}
        try:
            await websocket.send_json(frame)
        except Exception as exc:
            logger.info("connection_dropped user=%s event=%s error=%s", user_id, event, exc)
            self.disconnect(user_id, websocket)
            return False
        return True

    async def publish(self, room: str, event: str, data: Any = None, exclude: Iterable[str] = ()) -> None:
        payload = jsonable_encoder({} if data is None else data)
        skip = set(exclude)
        for user_id in sorted(self.members(room) - skip):
            await self.send(user_id, event, payload)

        if self.event_store is not None and room.startswith(SESSION_ROOM_PREFIX):
            session_id = room[len(SESSION_ROOM_PREFIX):]
            await self.event_store.append(session_id, event, payload)
