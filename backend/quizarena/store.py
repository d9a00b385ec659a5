from __future__ import annotations

import asyncio
import logging
from typing import Dict, List, Optional, Set

from .errors import NotFoundError, PersistenceError
from .events import EventStore
from .models import Session
from .persistence import SessionRepository

logger = logging.getLogger(__name__)


class SessionStore:
    """In-process registry of live sessions, backed by a durable repository.

    The registry is the source of truth while a game runs. Every state change
    is written through to the repository; a failed write is logged, the
    session is flagged dirty and gameplay carries on from memory.
    """

    def __init__(self, repository: SessionRepository, event_store: Optional[EventStore] = None):
        self.repository = repository
        self.event_store = event_store
        self._sessions: Dict[str, Session] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._dirty: Set[str] = set()

    def lock(self, session_id: str) -> asyncio.Lock:
        self._locks.setdefault(session_id, asyncio.Lock())
        return self._locks[session_id]

    def get(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    def require(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise NotFoundError("Session not found")
        return session

    def all(self) -> List[Session]:
        return list(self._sessions.values())

    def waiting(self) -> List[Session]:
        return [s for s in self._sessions.values() if s.status == "waiting"]

    @property
    def dirty(self) -> Set[str]:
        return set(self._dirty)

    async def add(self, session: Session) -> bool:
        self._sessions[session.id] = session
        return await self.save(session)

    async def save(self, session: Session) -> bool:
        try:
            await self._persist(session)
        except PersistenceError as exc:
            logger.error("session_persist_failed session=%s error=%s", session.id, exc)
            self._dirty.add(session.id)
            return False

        self._dirty.discard(session.id)
        if self._dirty:
            await self.flush_dirty()
        return True

    async def flush_dirty(self) -> int:
        """Retry sessions whose last write failed. Returns how many are still dirty."""

        for session_id in list(self._dirty):
            session = self._sessions.get(session_id)
            if session is None:
                self._dirty.discard(session_id)
                continue
            try:
                await self._persist(session)
            except PersistenceError as exc:
                logger.warning("session_persist_retry_failed session=%s error=%s", session_id, exc)
                continue
            self._dirty.discard(session_id)
            logger.info("session_persist_reconciled session=%s", session_id)
        return len(self._dirty)

    async def _persist(self, session: Session) -> None:
        try:
            await self.repository.persist_session(session)
        except Exception as exc:
            raise PersistenceError(f"could not persist session {session.id}: {exc}") from exc

    def evict(self, session_id: str) -> Optional[Session]:
        """Forget a session in memory; the durable copy is kept as history."""

        self._locks.pop(session_id, None)
        self._dirty.discard(session_id)
        return self._sessions.pop(session_id, None)

    async def destroy(self, session_id: str) -> None:
        """Drop a session everywhere, including its durable copy and replay log."""

        self.evict(session_id)
        await self.repository.delete_session(session_id)
        if self.event_store is not None:
            await self.event_store.clear(session_id)

    async def load_archived(self, session_id: str) -> Optional[Session]:
        return await self.repository.load_session(session_id)
