from __future__ import annotations

from typing import Any, List, Optional

from pymongo import ReturnDocument

from .utils import now_ts


class EventStore:
    """Replay log of every frame published to a session room.

    A client that lost its socket can poll ``/api/session/{id}/events`` with
    the last ``seq`` it saw and rebuild what it missed. Sequence numbers come
    from a per-session counter document so they stay gap-free across
    processes sharing one database.
    """

    def __init__(self, database: Any):
        self.counters = database.session_event_counters
        self.frames = database.session_events

    async def _next_seq(self, session_id: str) -> int:
        counter = await self.counters.find_one_and_update(
            {"_id": session_id},
            {"$inc": {"seq": 1}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        if counter is None:
            # some Mongo-compatible servers upsert without returning the document
            counter = await self.counters.find_one({"_id": session_id})
        return int((counter or {}).get("seq", 1))

    async def append(self, session_id: str, event: str, data: Any) -> int:
        seq = await self._next_seq(session_id)
        await self.frames.insert_one(
            {"session_id": session_id, "seq": seq, "at": now_ts(), "event": event, "data": data}
        )
        return seq

    async def list(self, session_id: str, after: Optional[int] = None, limit: int = 200) -> List[dict]:
        query: dict[str, Any] = {"session_id": session_id}
        if after is not None:
            query["seq"] = {"$gt": after}
        cursor = self.frames.find(query).sort("seq", 1).limit(limit)
        return [
            {"seq": doc["seq"], "at": doc.get("at"), "event": doc["event"], "data": doc.get("data") or {}}
            async for doc in cursor
        ]

    async def clear(self, session_id: str) -> None:
        """Forget a session's frames and restart its counter."""

        await self.frames.delete_many({"session_id": session_id})
        await self.counters.delete_one({"_id": session_id})
