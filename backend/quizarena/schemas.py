from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .models import Difficulty, GameStats, LeaderboardEntry, Question, Session, SessionCategory


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def dump(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


# ---- client -> server -----------------------------------------------------


class ClientMessage(BaseModel):
    event: str
    data: Any = None


class SettingsOverrideIn(CamelModel):
    question_timer: Optional[int] = None
    lives_per_player: Optional[int] = None
    points_per_correct_answer: Optional[int] = None
    bonus_points_for_speed: Optional[int] = None


class CreateSessionIn(CamelModel):
    name: str = Field(min_length=1, max_length=100)
    category: SessionCategory = "general"
    max_players: Optional[int] = None
    question_ids: Optional[List[str]] = None
    question_count: int = Field(default=10, ge=1, le=100)
    difficulty: Optional[Difficulty] = None
    settings: Optional[SettingsOverrideIn] = None


class SessionRefIn(CamelModel):
    session_id: str


class SubmitAnswerIn(CamelModel):
    session_id: str
    question_id: str
    selected_option_index: int
    response_time_ms: int


class AdminUpsertQuestionsIn(BaseModel):
    questions: List[Question]


# ---- server -> client -----------------------------------------------------


class LobbyGameOut(CamelModel):
    id: str
    name: str
    category: str
    current_players: int
    max_players: int
    status: str
    created_at: datetime


class PlayerOut(CamelModel):
    user_id: str
    username: str
    avatar: Optional[str] = None
    score: int
    lives: int
    is_active: bool
    is_spectator: bool


class SpectatorOut(CamelModel):
    user_id: str
    username: str
    avatar: Optional[str] = None


class LeaderboardEntryOut(CamelModel):
    user_id: str
    username: str
    avatar: Optional[str] = None
    score: int
    lives: int
    position: int
    is_active: bool


class SettingsOut(CamelModel):
    question_timer: int
    lives_per_player: int
    points_per_correct_answer: int
    bonus_points_for_speed: int


class StatsOut(CamelModel):
    total_players: int
    total_spectators: int
    average_score: float
    average_response_time_ms: float
    questions_answered: int


class OptionOut(CamelModel):
    index: int
    text: str


class QuestionOut(CamelModel):
    id: str
    prompt: str
    options: List[OptionOut]
    time_limit_seconds: int


class SessionSnapshotOut(CamelModel):
    id: str
    name: str
    category: str
    status: str
    players: List[PlayerOut]
    spectators: List[SpectatorOut]
    leaderboard: List[LeaderboardEntryOut]
    current_question_index: int
    total_questions: int
    question_deadline_ts: Optional[float] = None
    settings: SettingsOut
    winner: Optional[str] = None


def lobby_game(session: Session) -> Dict[str, Any]:
    return LobbyGameOut(
        id=session.id,
        name=session.name,
        category=session.category,
        current_players=len(session.players),
        max_players=session.max_players,
        status=session.status,
        created_at=session.created_at,
    ).dump()


def leaderboard_view(entries: List[LeaderboardEntry]) -> List[Dict[str, Any]]:
    return [LeaderboardEntryOut(**e.model_dump()).dump() for e in entries]


def stats_view(stats: GameStats) -> Dict[str, Any]:
    return StatsOut(**stats.model_dump()).dump()


def question_view(session: Session) -> Optional[Dict[str, Any]]:
    """The open question as players see it: option texts only, no correctness flags."""

    q = session.current_question
    if q is None:
        return None
    return QuestionOut(
        id=q.id,
        prompt=q.prompt,
        options=[OptionOut(index=i, text=o.text) for i, o in enumerate(q.options)],
        time_limit_seconds=session.settings.question_timer,
    ).dump()


def round_view(session: Session) -> Optional[Dict[str, Any]]:
    """Payload of ``newQuestion``; also handed to late joiners and resyncing clients."""

    q = question_view(session)
    if q is None:
        return None
    return {
        "questionId": q["id"],
        "prompt": q["prompt"],
        "options": q["options"],
        "roundNumber": session.current_question_index + 1,
        "totalRounds": len(session.questions),
        "timeLimitSeconds": q["timeLimitSeconds"],
        "deadlineTs": session.question_deadline_ts,
    }


def session_snapshot(session: Session) -> Dict[str, Any]:
    audience = [SpectatorOut(**s.model_dump()) for s in session.spectators.values()]
    audience += [
        SpectatorOut(user_id=p.user_id, username=p.username, avatar=p.avatar)
        for p in session.players.values()
        if p.is_spectator
    ]
    return SessionSnapshotOut(
        id=session.id,
        name=session.name,
        category=session.category,
        status=session.status,
        players=[PlayerOut(**p.model_dump()) for p in session.players.values()],
        spectators=audience,
        leaderboard=[LeaderboardEntryOut(**e.model_dump()) for e in session.leaderboard],
        current_question_index=session.current_question_index,
        total_questions=len(session.questions),
        question_deadline_ts=session.question_deadline_ts,
        settings=SettingsOut(**session.settings.model_dump()),
        winner=session.winner,
    ).dump()
