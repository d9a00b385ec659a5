from __future__ import annotations

from typing import Any, Optional

from .models import Session


class SessionRepository:
    """Durable copy of sessions, used for post-game history.

    Writes are whole-document upserts keyed by session id; the in-process
    store stays authoritative while a game runs.
    """

    def __init__(self, database: Any):
        self.collection = database.sessions

    async def persist_session(self, session: Session) -> None:
        await self.collection.update_one(
            {"id": session.id},
            {"$set": session.model_dump(mode="json")},
            upsert=True,
        )

    async def load_session(self, session_id: str) -> Optional[Session]:
        doc = await self.collection.find_one({"id": session_id})
        if not doc:
            return None
        doc.pop("_id", None)
        return Session.model_validate(doc)

    async def delete_session(self, session_id: str) -> None:
        await self.collection.delete_one({"id": session_id})
