from __future__ import annotations

from unittest import IsolatedAsyncioTestCase

from .db import InMemoryDatabase
from .events import EventStore
from .gateway import BroadcastGateway
from .testing import FakeWebSocket


class BroadcastGatewayTests(IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.events = EventStore(InMemoryDatabase())
        self.gateway = BroadcastGateway(self.events)
        self.alice, self.bob = FakeWebSocket(), FakeWebSocket()
        self.gateway.connect("alice", self.alice)
        self.gateway.connect("bob", self.bob)

    async def test_connect_subscribes_to_lobby(self):
        await self.gateway.publish("lobby", "newGameAvailable", {"id": "s1"})
        self.assertEqual(self.alice.last("newGameAvailable"), {"id": "s1"})
        self.assertEqual(self.bob.last("newGameAvailable"), {"id": "s1"})

    async def test_publish_respects_exclude(self):
        self.gateway.subscribe("game:s1", "alice")
        self.gateway.subscribe("game:s1", "bob")

        await self.gateway.publish("game:s1", "playerJoined", {"username": "Bob"}, exclude=["bob"])

        self.assertEqual(self.alice.events(), ["playerJoined"])
        self.assertEqual(self.bob.events(), [])

    async def test_session_room_publications_are_replayable(self):
        self.gateway.subscribe("game:s1", "alice")
        await self.gateway.publish("game:s1", "gameStarted", {"totalQuestions": 3})
        await self.gateway.publish("game:s1", "newQuestion", {"roundNumber": 1})
        await self.gateway.publish("lobby", "gameUpdated", {"id": "s1"})

        events = await self.events.list("s1")
        self.assertEqual([e["seq"] for e in events], [1, 2])
        self.assertEqual((events[0]["event"], events[0]["data"]), ("gameStarted", {"totalQuestions": 3}))

        later = await self.events.list("s1", after=1)
        self.assertEqual([e["event"] for e in later], ["newQuestion"])

    async def test_send_to_unknown_user_is_a_no_op(self):
        self.assertFalse(await self.gateway.send("nobody", "error", {"message": "x"}))

    async def test_dead_connection_is_dropped(self):
        dead = FakeWebSocket(fail=True)
        self.gateway.connect("carol", dead)
        self.gateway.subscribe("game:s1", "carol")
        self.gateway.subscribe("game:s1", "alice")

        with self.assertLogs("backend.quizarena.gateway", level="INFO"):
            await self.gateway.publish("game:s1", "newQuestion", {})

        self.assertFalse(self.gateway.is_connected("carol"))
        self.assertEqual(self.gateway.members("game:s1"), {"alice"})
        self.assertEqual(self.alice.events(), ["newQuestion"])

    async def test_disconnect_returns_rooms(self):
        self.gateway.subscribe("game:s1", "alice")
        rooms = self.gateway.disconnect("alice", self.alice)
        self.assertEqual(rooms, ["game:s1", "lobby"])
        self.assertFalse(self.gateway.is_connected("alice"))

    async def test_stale_socket_disconnect_keeps_newer_connection(self):
        newer = FakeWebSocket()
        self.gateway.connect("alice", newer)

        self.assertEqual(self.gateway.disconnect("alice", self.alice), [])
        self.assertTrue(self.gateway.is_connected("alice"))

    async def test_payloads_are_json_encoded(self):
        from datetime import datetime, timezone

        stamp = datetime(2024, 1, 1, tzinfo=timezone.utc)
        await self.gateway.send("alice", "gameCreated", {"at": stamp})
        self.assertEqual(self.alice.last("gameCreated"), {"at": "2024-01-01T00:00:00+00:00"})

    async def test_empty_payloads_keep_their_shape(self):
        await self.gateway.send("alice", "availableGames", [])
        await self.gateway.send("alice", "pong")
        self.gateway.subscribe("game:s1", "bob")
        await self.gateway.publish("game:s1", "leaderboardUpdate", {"entries": [], "activePlayerCount": 0})

        self.assertEqual(self.alice.last("availableGames"), [])
        self.assertEqual(self.alice.last("pong"), {})
        self.assertEqual(self.bob.last("leaderboardUpdate"), {"entries": [], "activePlayerCount": 0})
