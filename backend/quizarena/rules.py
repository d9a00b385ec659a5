"""Scoring and lifecycle rules.

Pure functions over the models: nothing here touches the store, the timers or
the transport, so the coordinator and the sequencer can share them freely.
"""
from __future__ import annotations

import math
from typing import Iterable, List, Optional

from .models import GameSettings, GameStats, LeaderboardEntry, PlayerState, Session
from .utils import now_dt


def score(is_correct: bool, response_time_ms: float, settings: GameSettings) -> int:
    """Points for one answer: base points plus a speed bonus that decays to zero at the deadline."""

    if not is_correct:
        return 0
    limit_ms = settings.question_timer * 1000
    bonus = max(0.0, settings.bonus_points_for_speed * (1 - response_time_ms / limit_ms))
    # half-up, not banker's rounding
    return int(math.floor(settings.points_per_correct_answer + bonus + 0.5))


def lose_life(player: PlayerState) -> bool:
    """Take one life. Returns True when that eliminates the player."""

    player.lives = max(0, player.lives - 1)
    if player.lives == 0:
        player.is_active = False
        player.is_spectator = True
        return True
    return False


def active_player_count(session: Session) -> int:
    return sum(1 for p in session.players.values() if p.in_play)


def is_game_over(session: Session) -> bool:
    return active_player_count(session) <= 1 or session.current_question_index >= len(session.questions)


def leaderboard_order(players: Iterable[PlayerState]) -> List[LeaderboardEntry]:
    # sorted() is stable, so equal (score, lives) keep join order
    ranked = sorted(
        (p for p in players if not p.is_spectator),
        key=lambda p: (-p.score, -p.lives),
    )
    return [
        LeaderboardEntry(
            user_id=p.user_id,
            username=p.username,
            avatar=p.avatar,
            score=p.score,
            lives=p.lives,
            position=idx + 1,
            is_active=p.is_active,
        )
        for idx, p in enumerate(ranked)
    ]


def winner_of(leaderboard: List[LeaderboardEntry]) -> Optional[str]:
    # nobody wins once every ranked player has been eliminated or has left
    if not any(e.is_active for e in leaderboard):
        return None
    return leaderboard[0].user_id


def final_stats(session: Session) -> GameStats:
    players = list(session.players.values())
    if not players:
        return GameStats(
            total_spectators=len(session.spectators),
            questions_answered=session.current_question_index,
        )

    average_score = sum(p.score for p in players) / len(players)
    per_player_mean = [
        sum(a.response_time_ms for a in p.answers) / (len(p.answers) or 1)
        for p in players
    ]
    return GameStats(
        total_players=len(players),
        total_spectators=len(session.spectators),
        average_score=average_score,
        average_response_time_ms=sum(per_player_mean) / len(players),
        questions_answered=session.current_question_index,
    )


def finish(session: Session) -> None:
    """Freeze a playing session. Callers guarantee this runs once per session."""

    session.status = "finished"
    session.round_open = False
    session.question_deadline_ts = None
    session.finished_at = now_dt()
    session.leaderboard = leaderboard_order(session.players.values())
    session.winner = winner_of(session.leaderboard)
    session.stats = final_stats(session)
