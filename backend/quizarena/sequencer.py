from __future__ import annotations

import logging
from typing import List, Optional

from . import rules
from .db import Settings, settings as default_settings
from .gateway import BroadcastGateway
from .models import PlayerState, Question, Session
from .schemas import leaderboard_view, round_view, stats_view
from .store import SessionStore
from .timers import TimerRegistry
from .utils import now_ts, session_room

logger = logging.getLogger(__name__)


async def announce_elimination(gateway: BroadcastGateway, session: Session, player: PlayerState) -> None:
    await gateway.send(
        player.user_id,
        "eliminated",
        {"message": "You have been eliminated! You can keep watching.", "finalScore": player.score},
    )
    await gateway.publish(
        session_room(session.id),
        "playerEliminated",
        {"userId": player.user_id, "username": player.username, "finalScore": player.score},
        exclude=[player.user_id],
    )


class QuestionSequencer:
    """Drives a playing session through its questions on a fixed clock.

    advance_round opens the current question and arms its expiry timer;
    close_round reveals the answer, re-ranks, moves the cursor on and either
    finishes the game or schedules the next advance_round. Only this class
    writes ``leaderboard`` and ``current_question_index``.
    """

    def __init__(
        self,
        store: SessionStore,
        gateway: BroadcastGateway,
        timers: TimerRegistry,
        config: Settings | None = None,
    ):
        self.store = store
        self.gateway = gateway
        self.timers = timers
        self.config = config or default_settings

    def schedule_first_round(self, session_id: str) -> None:
        self.timers.schedule(
            session_id,
            self.config.START_DELAY_SEC,
            lambda: self.advance_round(session_id),
            label="advance",
        )

    async def advance_round(self, session_id: str) -> None:
        async with self.store.lock(session_id):
            session = self.store.get(session_id)
            if session is None or session.status != "playing":
                logger.info("round_open_skipped session=%s reason=not_playing", session_id)
                return
            if session.round_open:
                logger.info("round_open_skipped session=%s reason=already_open", session_id)
                return

            if session.current_question_index >= len(session.questions):
                await self._finish(session)
                return

            idx = session.current_question_index
            timer = session.settings.question_timer
            session.round_open = True
            session.question_deadline_ts = now_ts() + timer
            await self.store.save(session)

            await self.gateway.publish(session_room(session_id), "newQuestion", round_view(session))
            logger.info("round_opened session=%s round=%d/%d", session_id, idx + 1, len(session.questions))

            self.timers.schedule(
                session_id,
                timer,
                lambda: self.close_round(session_id, idx),
                label=f"close:{idx}",
            )

    async def close_round(self, session_id: str, expected_index: int) -> None:
        async with self.store.lock(session_id):
            session = self.store.get(session_id)
            if (
                session is None
                or session.status != "playing"
                or not session.round_open
                or session.current_question_index != expected_index
            ):
                logger.info("round_close_skipped session=%s expected_round=%d", session_id, expected_index + 1)
                return

            question = session.current_question
            assert question is not None
            session.round_open = False
            session.question_deadline_ts = None

            penalised = self._apply_missed_answer_policy(session, question)

            session.leaderboard = rules.leaderboard_order(session.players.values())
            session.current_question_index += 1
            over = rules.is_game_over(session)
            if not over:
                await self.store.save(session)

            room = session_room(session_id)
            await self.gateway.publish(
                room,
                "questionEnded",
                {
                    "questionId": question.id,
                    "correctAnswer": {
                        "index": question.correct_index,
                        "text": question.options[question.correct_index].text,
                    },
                    "explanation": question.explanation,
                },
            )
            for player in penalised:
                await announce_elimination(self.gateway, session, player)

            await self.gateway.publish(
                room,
                "leaderboardUpdate",
                {
                    "entries": leaderboard_view(session.leaderboard[: self.config.LEADERBOARD_BROADCAST_SIZE]),
                    "activePlayerCount": rules.active_player_count(session),
                },
            )
            logger.info("round_closed session=%s round=%d", session_id, expected_index + 1)

            if over:
                await self._finish(session)
                return

            self.timers.schedule(
                session_id,
                self.config.ROUND_PAUSE_SEC,
                lambda: self.advance_round(session_id),
                label="advance",
            )

    async def close_round_now(self, session_id: str) -> None:
        """Close the open round without waiting for its deadline."""

        session = self.store.get(session_id)
        if session is None or not session.round_open:
            return
        expected = session.current_question_index
        self.timers.cancel(session_id)
        await self.close_round(session_id, expected)

    async def end_early(self, session_id: str) -> None:
        """Finish a playing session whose active players dropped to one or none.

        An open round is closed on the spot (which finishes the game); between
        rounds the pending advance is cancelled and the game finishes directly.
        """

        session = self.store.get(session_id)
        if session is None or session.status != "playing":
            return
        if session.round_open:
            await self.close_round_now(session_id)
            return

        async with self.store.lock(session_id):
            session = self.store.get(session_id)
            if session is None or session.status != "playing" or session.round_open:
                return
            if rules.is_game_over(session):
                await self._finish(session)

    def _apply_missed_answer_policy(self, session: Session, question: Question) -> List[PlayerState]:
        if not self.config.MISSED_ANSWER_COSTS_LIFE:
            return []
        eliminated = []
        for player in session.players.values():
            if player.in_play and not player.has_answered(question.id):
                if rules.lose_life(player):
                    eliminated.append(player)
        if eliminated:
            logger.info(
                "missed_answer_eliminations session=%s users=%s",
                session.id,
                ",".join(p.user_id for p in eliminated),
            )
        return eliminated

    async def _finish(self, session: Session) -> None:
        # caller holds the session lock and has checked status == "playing"
        rules.finish(session)
        self.timers.cancel(session.id)
        await self.store.save(session)

        await self.gateway.publish(
            session_room(session.id),
            "gameFinished",
            {
                "winner": self._winner_payload(session),
                "leaderboard": leaderboard_view(session.leaderboard),
                "stats": stats_view(session.stats),
            },
        )
        logger.info(
            "session_finished session=%s winner=%s questions_answered=%d",
            session.id,
            session.winner,
            session.stats.questions_answered,
        )

        self.timers.schedule(
            f"evict:{session.id}",
            self.config.FINISHED_SESSION_TTL_SEC,
            lambda: self._evict(session.id),
            label="evict",
        )

    async def _evict(self, session_id: str) -> None:
        await self.store.flush_dirty()
        if self.store.evict(session_id) is not None:
            self.gateway.close_room(session_room(session_id))
            logger.info("session_evicted session=%s", session_id)

    @staticmethod
    def _winner_payload(session: Session) -> Optional[dict]:
        if session.winner is None:
            return None
        top = session.leaderboard[0]
        return {"userId": top.user_id, "username": top.username, "avatar": top.avatar, "score": top.score}
