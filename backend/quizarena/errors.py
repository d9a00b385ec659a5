from __future__ import annotations


class GameError(ValueError):
    """Base class for every caller-visible rejection raised by the engine.

    ``code`` is echoed to the client in the ``error`` frame next to the
    message.
    """

    code = "game_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(GameError):
    code = "validation_error"


class NotFoundError(GameError):
    code = "not_found"


class InvalidStateError(GameError):
    code = "invalid_state"


class NotActivePlayerError(GameError):
    code = "not_active_player"


class StaleQuestionError(GameError):
    code = "stale_question"


class DuplicateAnswerError(GameError):
    code = "duplicate_answer"


class InsufficientPlayersError(GameError):
    code = "insufficient_players"


class AlreadyJoinedError(GameError):
    code = "already_joined"


class PermissionDeniedError(GameError):
    code = "permission_denied"


class PersistenceError(GameError):
    """Durable-store write failure. Logged by the store, never sent to players."""

    code = "persistence_error"
