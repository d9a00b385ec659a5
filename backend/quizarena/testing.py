"""Helpers shared by the test modules: fake sockets, sample questions, wiring."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from .auth import AuthUser
from .db import InMemoryDatabase, Settings
from .models import Question, QuestionOption


class FakeWebSocket:
    """Records frames instead of sending them. ``fail=True`` simulates a dead peer."""

    def __init__(self, fail: bool = False):
        self.sent: List[Dict[str, Any]] = []
        self.fail = fail

    async def send_json(self, data: Dict[str, Any]):
        if self.fail:
            raise RuntimeError("socket closed")
        self.sent.append(data)

    def events(self) -> List[str]:
        return [m["event"] for m in self.sent]

    def last(self, event: str) -> Optional[Dict[str, Any]]:
        for m in reversed(self.sent):
            if m["event"] == event:
                return m["data"]
        return None

    def all(self, event: str) -> List[Dict[str, Any]]:
        return [m["data"] for m in self.sent if m["event"] == event]


def make_question(qid: str, correct: int = 0, category: str = "physics", difficulty: str = "medium") -> Question:
    return Question(
        id=qid,
        prompt=f"Question {qid}?",
        options=[QuestionOption(text=f"{qid}-{i}", is_correct=(i == correct)) for i in range(4)],
        explanation=f"Because {qid}-{correct}.",
        category=category,
        difficulty=difficulty,
    )


def make_settings(**overrides: Any) -> Settings:
    # timers far in the future unless a test wants them to fire
    values: Dict[str, Any] = {
        "JWT_SECRET": "test-secret",
        "START_DELAY_SEC": 1000,
        "ROUND_PAUSE_SEC": 1000,
        "FINISHED_SESSION_TTL_SEC": 1000,
        "MONGODB_URI": None,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def make_user(user_id: str, role: str = "player", username: Optional[str] = None) -> AuthUser:
    return AuthUser(user_id=user_id, username=username or user_id.title(), avatar=f"{user_id}.png", role=role)


def make_engine(config: Optional[Settings] = None):
    from .main import Engine

    return Engine(config or make_settings(), database=InMemoryDatabase())
