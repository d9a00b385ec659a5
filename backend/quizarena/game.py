from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Sequence

from pydantic import ValidationError as ModelValidationError

from . import rules
from .auth import AuthService, AuthUser
from .catalog import QuestionCatalog
from .db import Settings, settings as default_settings
from .errors import (
    AlreadyJoinedError,
    DuplicateAnswerError,
    InsufficientPlayersError,
    InvalidStateError,
    NotActivePlayerError,
    NotFoundError,
    PermissionDeniedError,
    StaleQuestionError,
    ValidationError,
)
from .gateway import BroadcastGateway
from .models import (
    MAX_PLAYERS,
    MIN_PLAYERS,
    OPTIONS_PER_QUESTION,
    AnswerRecord,
    GameSettings,
    PlayerState,
    Question,
    Session,
    SpectatorState,
)
from .schemas import lobby_game, leaderboard_view, round_view, session_snapshot
from .sequencer import QuestionSequencer, announce_elimination
from .store import SessionStore
from .utils import LOBBY_ROOM, new_id, now_dt, session_room

logger = logging.getLogger(__name__)


class SessionCoordinator:
    """Handles every player/admin action against a session.

    All mutations of one session happen under that session's lock from the
    store, which the sequencer shares, so an answer can never interleave with
    a round transition of the same game. Answers only ever touch the
    submitting player's own state.
    """

    def __init__(
        self,
        store: SessionStore,
        gateway: BroadcastGateway,
        sequencer: QuestionSequencer,
        catalog: QuestionCatalog,
        auth: AuthService,
        config: Settings | None = None,
    ):
        self.store = store
        self.gateway = gateway
        self.sequencer = sequencer
        self.catalog = catalog
        self.auth = auth
        self.config = config or default_settings

    # ---- connections ------------------------------------------------------

    async def connect(self, user: AuthUser, websocket: Any) -> None:
        self.gateway.connect(user.user_id, websocket)
        await self.gateway.send(user.user_id, "availableGames", self.available_sessions())
        logger.info("user_connected user=%s", user.user_id)

    async def disconnect(self, user: AuthUser, websocket: Any = None) -> None:
        """Transport loss: drop the connection but keep every scored state."""

        rooms = self.gateway.disconnect(user.user_id, websocket)
        for room in rooms:
            if room == LOBBY_ROOM:
                continue
            session = self.store.get(room.split(":", 1)[1])
            if session is None:
                continue
            await self.gateway.publish(room, "playerLeft", self._left_payload(session, user, disconnected=True))
        logger.info("user_disconnected user=%s rooms=%d", user.user_id, len(rooms))

    def available_sessions(self) -> List[Dict[str, Any]]:
        return [lobby_game(s) for s in self.store.waiting()]

    # ---- operations -------------------------------------------------------

    async def create_session(
        self,
        creator: AuthUser,
        name: str,
        category: str = "general",
        max_players: Optional[int] = None,
        question_ids: Optional[Sequence[str]] = None,
        question_count: int = 10,
        difficulty: Optional[str] = None,
        settings_override: Optional[Dict[str, Any]] = None,
    ) -> str:
        if not self.auth.can_create_sessions(creator):
            raise PermissionDeniedError("Only admins can create games")

        if max_players is None:
            max_players = self.config.DEFAULT_MAX_PLAYERS
        if not MIN_PLAYERS <= max_players <= MAX_PLAYERS:
            raise ValidationError(f"maxPlayers must be between {MIN_PLAYERS} and {MAX_PLAYERS}")

        game_settings = self._build_settings(settings_override or {})

        if question_ids is not None:
            # answers are keyed by question id, so a repeat would be unanswerable
            if len(set(question_ids)) != len(question_ids):
                raise ValidationError("questionIds must not repeat a question")
            questions = await self.catalog.get_questions(question_ids) if question_ids else []
        else:
            questions = await self.catalog.fetch_questions(category, question_count, difficulty)
        if not questions:
            raise ValidationError("A game needs at least one question")

        try:
            session = Session(
                id=new_id(),
                name=name,
                category=category,
                max_players=max_players,
                settings=game_settings,
                questions=questions,
                created_by=creator.user_id,
            )
        except ModelValidationError as exc:
            raise ValidationError(_first_error(exc)) from exc

        async with self.store.lock(session.id):
            await self.store.add(session)

        await self.gateway.send(creator.user_id, "gameCreated", {"gameId": session.id})
        await self.gateway.publish(LOBBY_ROOM, "newGameAvailable", lobby_game(session))
        logger.info(
            "session_created session=%s creator=%s questions=%d max_players=%d",
            session.id,
            creator.user_id,
            len(questions),
            max_players,
        )
        return session.id

    async def join_session(self, session_id: str, user: AuthUser) -> Dict[str, Any]:
        async with self.store.lock(session_id):
            session = self.store.require(session_id)
            if session.is_participant(user.user_id):
                raise AlreadyJoinedError("You already joined this game")

            room = session_room(session_id)
            as_player = session.status == "waiting" and len(session.players) < session.max_players
            if as_player:
                session.players[user.user_id] = PlayerState(
                    user_id=user.user_id,
                    username=user.username,
                    avatar=user.avatar,
                    lives=session.settings.lives_per_player,
                )
            else:
                session.spectators[user.user_id] = SpectatorState(
                    user_id=user.user_id,
                    username=user.username,
                    avatar=user.avatar,
                )
            await self.store.save(session)

            self.gateway.subscribe(room, user.user_id)
            snapshot = session_snapshot(session)
            if as_player:
                await self.gateway.send(user.user_id, "joinedGame", {"game": snapshot})
                await self.gateway.publish(
                    room,
                    "playerJoined",
                    {
                        "userId": user.user_id,
                        "username": user.username,
                        "avatar": user.avatar,
                        "totalPlayers": len(session.players),
                    },
                    exclude=[user.user_id],
                )
                await self.gateway.publish(LOBBY_ROOM, "gameUpdated", lobby_game(session))
            else:
                await self.gateway.send(
                    user.user_id,
                    "joinedAsSpectator",
                    {"game": snapshot, "currentQuestion": self._open_question(session)},
                )
                await self.gateway.publish(
                    room,
                    "spectatorJoined",
                    {"userId": user.user_id, "username": user.username, "avatar": user.avatar},
                    exclude=[user.user_id],
                )

        role = "player" if as_player else "spectator"
        logger.info("session_joined session=%s user=%s role=%s", session_id, user.user_id, role)
        return {"role": role, "game": snapshot}

    async def start_session(self, session_id: str, requester: AuthUser) -> None:
        if not self.auth.has_admin_privilege(requester):
            raise PermissionDeniedError("Only admins can start a game")

        async with self.store.lock(session_id):
            session = self.store.require(session_id)
            if session.status != "waiting":
                raise InvalidStateError("This game has already started")
            if rules.active_player_count(session) < MIN_PLAYERS:
                raise InsufficientPlayersError(f"At least {MIN_PLAYERS} players are needed to start")

            session.status = "playing"
            session.started_at = now_dt()
            session.current_question_index = 0
            await self.store.save(session)

            await self.gateway.publish(
                session_room(session_id),
                "gameStarted",
                {
                    "message": "The game is starting!",
                    "totalQuestions": len(session.questions),
                    "startsInSeconds": self.config.START_DELAY_SEC,
                },
            )
            await self.gateway.publish(LOBBY_ROOM, "gameUpdated", lobby_game(session))
            self.sequencer.schedule_first_round(session_id)

        logger.info("session_started session=%s players=%d", session_id, len(session.players))

    async def submit_answer(
        self,
        session_id: str,
        user: AuthUser,
        question_id: str,
        selected_option_index: int,
        response_time_ms: int,
    ) -> Dict[str, Any]:
        eliminated = False
        async with self.store.lock(session_id):
            session = self.store.require(session_id)
            if session.status != "playing":
                raise InvalidStateError("This game is not being played")

            player = session.players.get(user.user_id)
            if player is None or not player.in_play:
                raise NotActivePlayerError("Only active players can answer")

            question = session.current_question
            if not session.round_open or question is None or question.id != question_id:
                raise StaleQuestionError("That question is no longer open")

            if not 0 <= selected_option_index < OPTIONS_PER_QUESTION:
                raise ValidationError(f"selectedOptionIndex must be between 0 and {OPTIONS_PER_QUESTION - 1}")
            if response_time_ms < 0:
                raise ValidationError("responseTimeMs cannot be negative")

            if player.has_answered(question_id):
                raise DuplicateAnswerError("You already answered this question")

            result = self._apply_answer(session, player, question, selected_option_index, response_time_ms)
            eliminated = not player.in_play
            await self.store.save(session)

            await self.gateway.send(user.user_id, "answerSubmitted", result)
            if eliminated:
                await announce_elimination(self.gateway, session, player)
                logger.info("player_eliminated session=%s user=%s", session_id, user.user_id)

            early_finish = eliminated and rules.active_player_count(session) <= 1

        if early_finish:
            await self.sequencer.end_early(session_id)
        return result

    async def leave_session(self, session_id: str, user: AuthUser) -> None:
        async with self.store.lock(session_id):
            session = self.store.require(session_id)
            if not session.is_participant(user.user_id):
                raise NotFoundError("You are not part of this game")

            payload = self._left_payload(session, user)
            lobby_changed = False
            if user.user_id in session.spectators:
                del session.spectators[user.user_id]
            elif session.status == "waiting":
                del session.players[user.user_id]
                lobby_changed = True
            elif session.status == "playing":
                # keep score and answers for history; the player just stops playing
                session.players[user.user_id].is_active = False
            await self.store.save(session)

            room = session_room(session_id)
            self.gateway.unsubscribe(room, user.user_id)
            await self.gateway.publish(room, "playerLeft", payload)
            if lobby_changed:
                await self.gateway.publish(LOBBY_ROOM, "gameUpdated", lobby_game(session))

            early_finish = session.status == "playing" and rules.active_player_count(session) <= 1

        logger.info("session_left session=%s user=%s", session_id, user.user_id)
        if early_finish:
            await self.sequencer.end_early(session_id)

    async def sync_session(self, session_id: str, user: AuthUser) -> Dict[str, Any]:
        """Re-attach a participant's new connection and send it the current state."""

        session = self.store.require(session_id)
        if not session.is_participant(user.user_id):
            raise NotFoundError("You are not part of this game")

        self.gateway.subscribe(session_room(session_id), user.user_id)
        player = session.players.get(user.user_id)
        state = {
            "role": "player" if player is not None and player.in_play else "spectator",
            "game": session_snapshot(session),
            "currentQuestion": self._open_question(session),
        }
        await self.gateway.send(user.user_id, "sessionState", state)
        return state

    async def game_stats(self, session_id: str, requester: AuthUser) -> Dict[str, Any]:
        if not self.auth.has_admin_privilege(requester):
            raise PermissionDeniedError("Only admins can read game stats")

        session = self.store.require(session_id)
        ranking = session.leaderboard or rules.leaderboard_order(session.players.values())
        stats = {
            "totalPlayers": len(session.players),
            "activePlayers": rules.active_player_count(session),
            "spectators": len(session.spectators) + sum(1 for p in session.players.values() if p.is_spectator),
            "currentQuestion": min(session.current_question_index + 1, len(session.questions)),
            "totalQuestions": len(session.questions),
            "leaderboard": leaderboard_view(ranking[: self.config.LEADERBOARD_BROADCAST_SIZE]),
        }
        await self.gateway.send(requester.user_id, "gameStats", stats)
        return stats

    # ---- helpers ----------------------------------------------------------

    def _build_settings(self, override: Dict[str, Any]) -> GameSettings:
        values = {
            "question_timer": self.config.QUESTION_TIMER_SEC,
            "lives_per_player": self.config.LIVES_PER_PLAYER,
            "points_per_correct_answer": self.config.POINTS_PER_CORRECT_ANSWER,
            "bonus_points_for_speed": self.config.BONUS_POINTS_FOR_SPEED,
        }
        values.update({k: v for k, v in override.items() if v is not None})
        try:
            return GameSettings(**values)
        except ModelValidationError as exc:
            raise ValidationError(_first_error(exc)) from exc

    @staticmethod
    def _apply_answer(
        session: Session,
        player: PlayerState,
        question: Question,
        selected_option_index: int,
        response_time_ms: int,
    ) -> Dict[str, Any]:
        is_correct = question.options[selected_option_index].is_correct
        points = rules.score(is_correct, response_time_ms, session.settings)

        player.answers.append(
            AnswerRecord(
                question_id=question.id,
                selected_option_index=selected_option_index,
                is_correct=is_correct,
                response_time_ms=response_time_ms,
                points_awarded=points,
            )
        )
        player.last_answer_at = now_dt()
        if is_correct:
            player.score += points
        else:
            rules.lose_life(player)

        return {
            "questionId": question.id,
            "isCorrect": is_correct,
            "pointsAwarded": points,
            "totalScore": player.score,
            "livesRemaining": player.lives,
        }

    @staticmethod
    def _open_question(session: Session) -> Optional[Dict[str, Any]]:
        if session.status != "playing" or not session.round_open:
            return None
        return round_view(session)

    @staticmethod
    def _left_payload(session: Session, user: AuthUser, disconnected: bool = False) -> Dict[str, Any]:
        player = session.players.get(user.user_id)
        return {
            "userId": user.user_id,
            "username": player.username if player else user.username,
            "isSpectator": player is None or player.is_spectator,
            "disconnected": disconnected,
        }


def _first_error(exc: ModelValidationError) -> str:
    err = exc.errors()[0]
    field = ".".join(str(p) for p in err.get("loc", ()))
    return f"{field}: {err.get('msg')}" if field else str(err.get("msg"))
