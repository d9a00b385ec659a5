from __future__ import annotations

import asyncio
import copy
from functools import lru_cache
from typing import Any, Callable, Dict, List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict
from pymongo import AsyncMongoClient, ReturnDocument


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    ADMIN_KEY: str = "change-me"
    CORS_ORIGINS: str = "http://localhost:5173,http://localhost:8080"
    CORS_ORIGIN_REGEX: Optional[str] = None

    JWT_SECRET: str = "change-me-too"
    JWT_ALGORITHM: str = "HS256"

    # Leave unset to keep everything in process memory.
    MONGODB_URI: Optional[str] = None
    MONGODB_DB: str = "quizarena"

    QUESTION_TIMER_SEC: int = 15
    LIVES_PER_PLAYER: int = 3
    POINTS_PER_CORRECT_ANSWER: int = 100
    BONUS_POINTS_FOR_SPEED: int = 50
    DEFAULT_MAX_PLAYERS: int = 50

    START_DELAY_SEC: float = 3
    ROUND_PAUSE_SEC: float = 5
    MISSED_ANSWER_COSTS_LIFE: bool = False
    FINISHED_SESSION_TTL_SEC: float = 600
    LEADERBOARD_BROADCAST_SIZE: int = 10

    LOG_LEVEL: str = "INFO"


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()


# ---- in-memory stand-in for the Mongo database -------------------------------

Document = Dict[str, Any]

_QUERY_OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "$gt": lambda actual, operand: actual is not None and actual > operand,
    "$in": lambda actual, operand: actual in operand,
}


def _matches(doc: Document, query: Optional[Document]) -> bool:
    for key, expected in (query or {}).items():
        actual = doc.get(key)
        if not isinstance(expected, dict):
            if actual != expected:
                return False
            continue
        for op, operand in expected.items():
            check = _QUERY_OPERATORS.get(op)
            if check is None:
                raise ValueError(f"Unsupported query operator: {op}")
            if not check(actual, operand):
                return False
    return True


def _updated(doc: Document, update: Document) -> Document:
    doc = copy.deepcopy(doc)
    for op, fields in update.items():
        if op == "$set":
            doc.update(copy.deepcopy(fields))
        elif op == "$inc":
            for key, step in fields.items():
                doc[key] = doc.get(key, 0) + step
        else:
            raise ValueError(f"Unsupported update operator: {op}")
    return doc


class InMemoryCursor:
    """Lazy result of ``find``; supports the ``sort``/``limit`` chain and ``async for``."""

    def __init__(self, collection: "InMemoryCollection", query: Optional[Document]):
        self._collection = collection
        self._query = query
        self._order: Optional[tuple] = None
        self._limit: Optional[int] = None
        self._pending: Optional[List[Document]] = None

    def sort(self, key: str, direction: int = 1) -> "InMemoryCursor":
        self._order = (key, direction)
        return self

    def limit(self, limit: int) -> "InMemoryCursor":
        self._limit = limit
        return self

    def __aiter__(self) -> "InMemoryCursor":
        return self

    async def __anext__(self) -> Document:
        if self._pending is None:
            docs = await self._collection._select(self._query)
            if self._order is not None:
                key, direction = self._order
                docs.sort(key=lambda d: d.get(key), reverse=direction < 0)
            self._pending = docs[: self._limit] if self._limit is not None else docs
        if not self._pending:
            raise StopAsyncIteration
        return self._pending.pop(0)


class InMemoryCollection:
    """The slice of the async pymongo collection API the engine uses."""

    def __init__(self):
        self._docs: List[Document] = []
        self._lock = asyncio.Lock()

    def _index_of(self, query: Optional[Document]) -> Optional[int]:
        return next((i for i, doc in enumerate(self._docs) if _matches(doc, query)), None)

    async def _select(self, query: Optional[Document]) -> List[Document]:
        async with self._lock:
            return [copy.deepcopy(doc) for doc in self._docs if _matches(doc, query)]

    def find(self, query: Optional[Document] = None) -> InMemoryCursor:
        return InMemoryCursor(self, query)

    async def find_one(self, query: Optional[Document] = None) -> Optional[Document]:
        async with self._lock:
            idx = self._index_of(query)
            return None if idx is None else copy.deepcopy(self._docs[idx])

    async def count_documents(self, query: Optional[Document] = None) -> int:
        return len(await self._select(query))

    async def insert_one(self, document: Document) -> None:
        async with self._lock:
            self._docs.append(copy.deepcopy(document))

    async def update_one(self, query: Document, update: Document, upsert: bool = False) -> None:
        await self.find_one_and_update(query, update, upsert=upsert)

    async def find_one_and_update(
        self,
        query: Document,
        update: Document,
        *,
        upsert: bool = False,
        return_document: bool = ReturnDocument.BEFORE,
    ) -> Optional[Document]:
        async with self._lock:
            idx = self._index_of(query)
            if idx is None:
                if not upsert:
                    return None
                # a fresh document starts from the equality fields of the query
                seed = {k: v for k, v in query.items() if not isinstance(v, dict)}
                before, after = None, _updated(seed, update)
                self._docs.append(after)
            else:
                before = self._docs[idx]
                after = self._docs[idx] = _updated(before, update)
            chosen = after if return_document == ReturnDocument.AFTER else before
            return copy.deepcopy(chosen)

    async def delete_one(self, query: Document) -> None:
        async with self._lock:
            idx = self._index_of(query)
            if idx is not None:
                del self._docs[idx]

    async def delete_many(self, query: Document) -> None:
        async with self._lock:
            self._docs = [doc for doc in self._docs if not _matches(doc, query)]


class InMemoryDatabase:
    def __init__(self):
        self.sessions = InMemoryCollection()
        self.questions = InMemoryCollection()
        self.session_event_counters = InMemoryCollection()
        self.session_events = InMemoryCollection()


def create_database(config: Settings | None = None) -> Any:
    """Return a Mongo database when ``MONGODB_URI`` is configured, else an in-memory one."""

    config = config or settings
    if not config.MONGODB_URI:
        return InMemoryDatabase()
    client = AsyncMongoClient(config.MONGODB_URI, tz_aware=True)
    return client[config.MONGODB_DB]
