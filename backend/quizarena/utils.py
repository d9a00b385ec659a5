import time
import uuid
from datetime import datetime, timezone


def now_ts() -> float:
    return time.time()


def now_dt() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


def session_room(session_id: str) -> str:
    return f"game:{session_id}"


LOBBY_ROOM = "lobby"
