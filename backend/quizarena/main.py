import json
import logging
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable, Dict, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import ValidationError as ModelValidationError

from .auth import AuthError, AuthService, AuthUser
from .catalog import QuestionCatalog
from .db import Settings, create_database, settings as default_settings
from .errors import GameError
from .events import EventStore
from .game import SessionCoordinator
from .gateway import BroadcastGateway
from .logs import configure_logging
from .persistence import SessionRepository
from .schemas import AdminUpsertQuestionsIn, CreateSessionIn, SessionRefIn, SubmitAnswerIn, session_snapshot
from .sequencer import QuestionSequencer
from .store import SessionStore
from .timers import TimerRegistry

logger = logging.getLogger(__name__)

WS_UNAUTHORIZED = 4401


class Engine:
    """Wires one instance of every engine component for a process."""

    def __init__(self, config: Settings, database: Any = None):
        self.config = config
        self.database = database if database is not None else create_database(config)
        self.event_store = EventStore(self.database)
        self.repository = SessionRepository(self.database)
        self.store = SessionStore(self.repository, self.event_store)
        self.gateway = BroadcastGateway(self.event_store)
        self.timers = TimerRegistry()
        self.sequencer = QuestionSequencer(self.store, self.gateway, self.timers, config)
        self.catalog = QuestionCatalog(self.database)
        self.auth = AuthService(config)
        self.coordinator = SessionCoordinator(
            self.store, self.gateway, self.sequencer, self.catalog, self.auth, config
        )

    async def shutdown(self) -> None:
        self.timers.cancel_all()
        remaining = await self.store.flush_dirty()
        if remaining:
            logger.warning("shutdown_with_unpersisted_sessions count=%d", remaining)


# ---- websocket message handlers ---------------------------------------------

Handler = Callable[[SessionCoordinator, AuthUser, Any], Awaitable[Any]]


def _session_ref(data: Any) -> SessionRefIn:
    # joinSession("abc") and joinSession({"sessionId": "abc"}) are both accepted
    if isinstance(data, str):
        data = {"sessionId": data}
    return SessionRefIn.model_validate(data or {})


async def _create(coordinator: SessionCoordinator, user: AuthUser, data: Any):
    payload = CreateSessionIn.model_validate(data or {})
    return await coordinator.create_session(
        user,
        name=payload.name,
        category=payload.category,
        max_players=payload.max_players,
        question_ids=payload.question_ids,
        question_count=payload.question_count,
        difficulty=payload.difficulty,
        settings_override=payload.settings.model_dump() if payload.settings else None,
    )


async def _join(coordinator: SessionCoordinator, user: AuthUser, data: Any):
    return await coordinator.join_session(_session_ref(data).session_id, user)


async def _start(coordinator: SessionCoordinator, user: AuthUser, data: Any):
    return await coordinator.start_session(_session_ref(data).session_id, user)


async def _answer(coordinator: SessionCoordinator, user: AuthUser, data: Any):
    payload = SubmitAnswerIn.model_validate(data or {})
    return await coordinator.submit_answer(
        payload.session_id,
        user,
        payload.question_id,
        payload.selected_option_index,
        payload.response_time_ms,
    )


async def _leave(coordinator: SessionCoordinator, user: AuthUser, data: Any):
    return await coordinator.leave_session(_session_ref(data).session_id, user)


async def _sync(coordinator: SessionCoordinator, user: AuthUser, data: Any):
    return await coordinator.sync_session(_session_ref(data).session_id, user)


async def _stats(coordinator: SessionCoordinator, user: AuthUser, data: Any):
    return await coordinator.game_stats(_session_ref(data).session_id, user)


async def _ping(coordinator: SessionCoordinator, user: AuthUser, data: Any):
    await coordinator.gateway.send(user.user_id, "pong", data if isinstance(data, dict) else {})


HANDLERS: Dict[str, Handler] = {
    "createSession": _create,
    "joinSession": _join,
    "startSession": _start,
    "submitAnswer": _answer,
    "leaveSession": _leave,
    "syncSession": _sync,
    "getGameStats": _stats,
    "ping": _ping,
}


async def handle_message(engine: Engine, user: AuthUser, message: Any) -> None:
    """Run one client frame. Rejections go back to the sender only."""

    gateway = engine.gateway
    if not isinstance(message, dict) or not isinstance(message.get("event"), str):
        await gateway.send(user.user_id, "error", {"message": "Malformed message", "code": "validation_error"})
        return

    event = message["event"]
    handler = HANDLERS.get(event)
    if handler is None:
        await gateway.send(user.user_id, "error", {"message": f"Unknown event: {event}", "code": "validation_error"})
        return

    try:
        await handler(engine.coordinator, user, message.get("data"))
    except ModelValidationError as exc:
        err = exc.errors()[0]
        field = ".".join(str(p) for p in err.get("loc", ()))
        await gateway.send(
            user.user_id,
            "error",
            {"message": f"{field}: {err.get('msg')}" if field else str(err.get("msg")), "code": "validation_error"},
        )
    except GameError as exc:
        logger.info("action_rejected user=%s event=%s code=%s", user.user_id, event, exc.code)
        await gateway.send(user.user_id, "error", {"message": exc.message, "code": exc.code})
    except Exception:
        # the socket stays open; only this action failed
        logger.exception("action_failed user=%s event=%s", user.user_id, event)
        await gateway.send(user.user_id, "error", {"message": "Internal error", "code": "internal_error"})


# ---- app ----------------------------------------------------------------------


def create_app(config: Optional[Settings] = None, engine: Optional[Engine] = None) -> FastAPI:
    config = config or default_settings
    configure_logging(config.LOG_LEVEL)
    engine = engine or Engine(config)

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        yield
        await engine.shutdown()

    app = FastAPI(title="Quiz Arena API", lifespan=lifespan)
    app.state.engine = engine

    origins = [o.strip() for o in config.CORS_ORIGINS.split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins or ["*"],
        allow_origin_regex=config.CORS_ORIGIN_REGEX or None,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def get_engine(request: Request) -> Engine:
        return request.app.state.engine

    def require_admin(
        request: Request,
        authorization: Optional[str] = Header(default=None),
        x_admin_key: Optional[str] = Header(default=None),
    ):
        if x_admin_key is not None and x_admin_key == config.ADMIN_KEY:
            return
        eng = get_engine(request)
        token = authorization[7:] if authorization and authorization.startswith("Bearer ") else None
        try:
            user = eng.auth.verify_user(token)
        except AuthError as exc:
            raise HTTPException(status_code=401, detail=str(exc)) from exc
        if not eng.auth.has_admin_privilege(user):
            raise HTTPException(status_code=403, detail="Admin privilege required")

    @app.get("/api/health")
    async def health():
        return {"ok": True}

    @app.get("/api/sessions")
    async def list_sessions(eng: Engine = Depends(get_engine)):
        return {"games": eng.coordinator.available_sessions()}

    @app.get("/api/session/{session_id}")
    async def get_session(session_id: str, eng: Engine = Depends(get_engine)):
        s = eng.store.get(session_id) or await eng.store.load_archived(session_id)
        if not s:
            raise HTTPException(404, "Session not found")
        return session_snapshot(s)

    @app.get("/api/session/{session_id}/events")
    async def list_events(
        session_id: str, after: int | None = None, limit: int = 200, eng: Engine = Depends(get_engine)
    ):
        events = await eng.event_store.list(session_id, after=after, limit=limit)
        latest_seq = events[-1]["seq"] if events else after
        return {"events": events, "latest_seq": latest_seq}

    @app.post("/api/admin/questions")
    async def upsert_questions(
        payload: AdminUpsertQuestionsIn, _: None = Depends(require_admin), eng: Engine = Depends(get_engine)
    ):
        count = await eng.catalog.upsert_questions(payload.questions)
        return {"ok": True, "count": count}

    @app.get("/api/admin/verify")
    async def verify(_: None = Depends(require_admin)):
        return {"ok": True}

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket, token: Optional[str] = None):
        eng: Engine = websocket.app.state.engine
        try:
            user = eng.auth.verify_user(token)
        except AuthError as exc:
            logger.info("ws_rejected reason=%s", exc)
            await websocket.close(code=WS_UNAUTHORIZED, reason=str(exc))
            return

        await websocket.accept()
        await eng.coordinator.connect(user, websocket)
        try:
            while True:
                text = await websocket.receive_text()
                try:
                    message = json.loads(text)
                except json.JSONDecodeError:
                    message = None
                await handle_message(eng, user, message)
        except WebSocketDisconnect:
            pass
        finally:
            await eng.coordinator.disconnect(user, websocket)

    return app


app = create_app()
