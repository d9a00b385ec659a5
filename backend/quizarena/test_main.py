from __future__ import annotations

from unittest import TestCase, mock

from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from .main import WS_UNAUTHORIZED, create_app
from .testing import make_engine, make_question, make_settings

ADMIN_KEY = "admin-key"


def _receive_until(ws, event):
    while True:
        frame = ws.receive_json()
        if frame["event"] == event:
            return frame["data"]


class AppTestCase(TestCase):
    def setUp(self) -> None:
        self.config = make_settings(ADMIN_KEY=ADMIN_KEY)
        self.engine = make_engine(self.config)
        self.client = TestClient(create_app(self.config, self.engine))
        self.client.__enter__()
        self.addCleanup(self.client.__exit__, None, None, None)

        auth = self.engine.auth
        self.tokens = {
            "admin": auth.issue_token("admin", "Admin", role="admin"),
            "alice": auth.issue_token("alice", "Alice"),
            "bob": auth.issue_token("bob", "Bob"),
        }

    def _seed(self, *ids):
        payload = {"questions": [make_question(qid).model_dump() for qid in ids]}
        resp = self.client.post("/api/admin/questions", json=payload, headers={"X-Admin-Key": ADMIN_KEY})
        self.assertEqual(resp.status_code, 200)
        return resp.json()

    def _ws(self, who):
        return self.client.websocket_connect(f"/ws?token={self.tokens[who]}")


class RestApiTests(AppTestCase):
    def test_health(self):
        self.assertEqual(self.client.get("/api/health").json(), {"ok": True})

    def test_admin_routes_need_credentials(self):
        self.assertEqual(self.client.get("/api/admin/verify").status_code, 401)
        self.assertEqual(
            self.client.get("/api/admin/verify", headers={"X-Admin-Key": "wrong"}).status_code, 401
        )
        self.assertEqual(
            self.client.get(
                "/api/admin/verify", headers={"Authorization": f"Bearer {self.tokens['alice']}"}
            ).status_code,
            403,
        )

    def test_admin_routes_accept_key_or_admin_token(self):
        self.assertEqual(self.client.get("/api/admin/verify", headers={"X-Admin-Key": ADMIN_KEY}).status_code, 200)
        self.assertEqual(
            self.client.get(
                "/api/admin/verify", headers={"Authorization": f"Bearer {self.tokens['admin']}"}
            ).status_code,
            200,
        )

    def test_question_upload(self):
        self.assertEqual(self._seed("q1", "q2"), {"ok": True, "count": 2})

        broken = make_question("q3").model_dump()
        broken["options"] = broken["options"][:3]
        resp = self.client.post(
            "/api/admin/questions", json={"questions": [broken]}, headers={"X-Admin-Key": ADMIN_KEY}
        )
        self.assertEqual(resp.status_code, 422)

    def test_unknown_session(self):
        self.assertEqual(self.client.get("/api/session/missing").status_code, 404)

    def test_empty_lobby(self):
        self.assertEqual(self.client.get("/api/sessions").json(), {"games": []})


class WebSocketTests(AppTestCase):
    def test_rejects_missing_or_bad_token(self):
        for url in ("/ws", "/ws?token=garbage"):
            with self.assertRaises(WebSocketDisconnect) as ctx:
                with self.client.websocket_connect(url):
                    pass
            self.assertEqual(ctx.exception.code, WS_UNAUTHORIZED)

    def test_connect_lists_open_games(self):
        with self._ws("alice") as ws:
            self.assertEqual(ws.receive_json(), {"event": "availableGames", "data": []})

    def test_rejected_actions_come_back_as_error_frames(self):
        with self._ws("alice") as ws:
            ws.receive_json()

            ws.send_text("{not json")
            self.assertEqual(ws.receive_json()["data"]["code"], "validation_error")

            ws.send_json({"event": "fly", "data": {}})
            error = ws.receive_json()["data"]
            self.assertEqual(error["code"], "validation_error")
            self.assertIn("fly", error["message"])

            ws.send_json({"event": "createSession", "data": {"name": "Mine"}})
            self.assertEqual(ws.receive_json()["data"]["code"], "permission_denied")

            ws.send_json({"event": "submitAnswer", "data": {"sessionId": "s1"}})
            self.assertEqual(ws.receive_json()["data"]["code"], "validation_error")

            ws.send_json({"event": "joinSession", "data": "missing"})
            self.assertEqual(ws.receive_json(), {"event": "error", "data": {"message": "Session not found", "code": "not_found"}})

            ws.send_json({"event": "ping", "data": {"t": 1}})
            self.assertEqual(ws.receive_json(), {"event": "pong", "data": {"t": 1}})

    def test_unexpected_failure_keeps_the_socket_open(self):
        failing = mock.AsyncMock(side_effect=RuntimeError("catalog unavailable"))
        with mock.patch.object(self.engine.catalog, "fetch_questions", failing), self._ws("admin") as ws:
            ws.receive_json()

            with self.assertLogs("backend.quizarena.main", level="ERROR"):
                ws.send_json({"event": "createSession", "data": {"name": "Mixed bag", "category": "mixed"}})
                error = _receive_until(ws, "error")

            self.assertEqual(error, {"message": "Internal error", "code": "internal_error"})
            ws.send_json({"event": "ping", "data": {"t": 2}})
            self.assertEqual(ws.receive_json(), {"event": "pong", "data": {"t": 2}})
        failing.assert_awaited_once()

    def test_create_join_and_start(self):
        self._seed("q1", "q2")
        with self._ws("admin") as admin, self._ws("alice") as alice, self._ws("bob") as bob:
            for ws in (admin, alice, bob):
                ws.receive_json()

            admin.send_json(
                {
                    "event": "createSession",
                    "data": {"name": "Physics night", "category": "physics", "questionIds": ["q1", "q2"]},
                }
            )
            sid = _receive_until(admin, "gameCreated")["gameId"]
            self.assertEqual(_receive_until(alice, "newGameAvailable")["id"], sid)

            alice.send_json({"event": "joinSession", "data": {"sessionId": sid}})
            joined = _receive_until(alice, "joinedGame")
            self.assertEqual(joined["game"]["id"], sid)
            self.assertEqual(joined["game"]["totalQuestions"], 2)
            _receive_until(admin, "gameUpdated")

            bob.send_json({"event": "joinSession", "data": sid})
            _receive_until(bob, "joinedGame")
            self.assertEqual(_receive_until(alice, "playerJoined")["totalPlayers"], 2)
            self.assertEqual(_receive_until(admin, "gameUpdated")["currentPlayers"], 2)

            lobby = self.client.get("/api/sessions").json()["games"]
            self.assertEqual([(g["id"], g["currentPlayers"]) for g in lobby], [(sid, 2)])

            admin.send_json({"event": "startSession", "data": sid})
            self.assertEqual(_receive_until(alice, "gameStarted")["totalQuestions"], 2)
            self.assertEqual(_receive_until(admin, "gameUpdated")["status"], "playing")

            snapshot = self.client.get(f"/api/session/{sid}").json()
            self.assertEqual(snapshot["status"], "playing")
            self.assertEqual(sorted(p["userId"] for p in snapshot["players"]), ["alice", "bob"])

            log = self.client.get(f"/api/session/{sid}/events").json()
            self.assertEqual(log["events"][-1]["event"], "gameStarted")
            self.assertEqual(log["latest_seq"], log["events"][-1]["seq"])

            later = self.client.get(f"/api/session/{sid}/events", params={"after": log["latest_seq"]}).json()
            self.assertEqual(later, {"events": [], "latest_seq": log["latest_seq"]})
