from typing import Dict, List, Literal, Optional
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .utils import now_dt

Category = Literal["physics", "chemistry", "biology", "mathematics", "astronomy", "geology", "general"]
SessionCategory = Literal[
    "physics", "chemistry", "biology", "mathematics", "astronomy", "geology", "general", "mixed"
]
Difficulty = Literal["easy", "medium", "hard"]
SessionStatus = Literal["waiting", "playing", "finished"]

OPTIONS_PER_QUESTION = 4
MIN_PLAYERS = 2
MAX_PLAYERS = 100


class QuestionOption(BaseModel):
    model_config = ConfigDict(frozen=True)

    text: str = Field(min_length=1)
    is_correct: bool = False


class Question(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    prompt: str = Field(min_length=1)
    options: List[QuestionOption]
    explanation: str = ""
    category: Category = "general"
    difficulty: Difficulty = "medium"

    @model_validator(mode="after")
    def _exactly_one_correct(self):
        if len(self.options) != OPTIONS_PER_QUESTION:
            raise ValueError(f"a question needs exactly {OPTIONS_PER_QUESTION} options")
        if sum(1 for o in self.options if o.is_correct) != 1:
            raise ValueError("a question needs exactly one correct option")
        return self

    @property
    def correct_index(self) -> int:
        return next(i for i, o in enumerate(self.options) if o.is_correct)


class GameSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    question_timer: int = Field(default=15, gt=0, le=300)  # seconds
    lives_per_player: int = Field(default=3, ge=1, le=10)
    points_per_correct_answer: int = Field(default=100, ge=0)
    bonus_points_for_speed: int = Field(default=50, ge=0)


class AnswerRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    question_id: str
    selected_option_index: int
    is_correct: bool
    response_time_ms: int
    points_awarded: int = 0
    answered_at: datetime = Field(default_factory=now_dt)


class PlayerState(BaseModel):
    user_id: str
    # username/avatar are copied at join time and deliberately not refreshed
    username: str
    avatar: Optional[str] = None
    lives: int = Field(ge=0)
    score: int = Field(default=0, ge=0)
    is_active: bool = True
    is_spectator: bool = False
    joined_at: datetime = Field(default_factory=now_dt)
    last_answer_at: Optional[datetime] = None
    answers: List[AnswerRecord] = Field(default_factory=list)

    def has_answered(self, question_id: str) -> bool:
        return any(a.question_id == question_id for a in self.answers)

    @property
    def in_play(self) -> bool:
        return self.is_active and not self.is_spectator


class SpectatorState(BaseModel):
    user_id: str
    username: str
    avatar: Optional[str] = None
    joined_at: datetime = Field(default_factory=now_dt)


class LeaderboardEntry(BaseModel):
    user_id: str
    username: str
    avatar: Optional[str] = None
    score: int
    lives: int
    position: int
    is_active: bool


class GameStats(BaseModel):
    total_players: int = 0
    total_spectators: int = 0
    average_score: float = 0
    average_response_time_ms: float = 0
    questions_answered: int = 0


# States: waiting -> playing -> finished
class Session(BaseModel):
    id: str
    name: str
    status: SessionStatus = "waiting"
    category: SessionCategory = "general"
    max_players: int = Field(default=50, ge=MIN_PLAYERS, le=MAX_PLAYERS)
    settings: GameSettings = Field(default_factory=GameSettings)
    questions: List[Question] = Field(default_factory=list)
    current_question_index: int = 0
    round_open: bool = False
    question_deadline_ts: Optional[float] = None
    players: Dict[str, PlayerState] = Field(default_factory=dict)
    spectators: Dict[str, SpectatorState] = Field(default_factory=dict)
    leaderboard: List[LeaderboardEntry] = Field(default_factory=list)
    created_by: str
    created_at: datetime = Field(default_factory=now_dt)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    winner: Optional[str] = None
    stats: GameStats = Field(default_factory=GameStats)

    @property
    def current_question(self) -> Optional[Question]:
        if 0 <= self.current_question_index < len(self.questions):
            return self.questions[self.current_question_index]
        return None

    def is_participant(self, user_id: str) -> bool:
        return user_id in self.players or user_id in self.spectators
