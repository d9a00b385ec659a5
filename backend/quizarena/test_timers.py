from __future__ import annotations

import asyncio
from unittest import IsolatedAsyncioTestCase

from .timers import TimerRegistry


class TimerRegistryTests(IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.timers = TimerRegistry()
        self.calls = []

    async def asyncTearDown(self) -> None:
        self.timers.cancel_all()

    def _record(self, name):
        async def callback():
            self.calls.append(name)

        return callback

    async def test_fires_after_delay(self):
        task = self.timers.schedule("s1", 0, self._record("fired"))
        await task
        self.assertEqual(self.calls, ["fired"])
        self.assertIsNone(self.timers.pending("s1"))

    async def test_cancel_prevents_callback(self):
        task = self.timers.schedule("s1", 0.05, self._record("fired"))
        self.assertTrue(self.timers.cancel("s1"))
        await asyncio.gather(task, return_exceptions=True)
        self.assertEqual(self.calls, [])

    async def test_rescheduling_replaces_pending_timer(self):
        first = self.timers.schedule("s1", 0.05, self._record("first"))
        second = self.timers.schedule("s1", 0, self._record("second"))
        await asyncio.gather(first, second, return_exceptions=True)
        self.assertEqual(self.calls, ["second"])

    async def test_keys_are_independent(self):
        a = self.timers.schedule("a", 0, self._record("a"))
        self.timers.schedule("b", 10, self._record("b"))
        await a
        self.assertEqual(self.calls, ["a"])
        self.assertIsNotNone(self.timers.pending("b"))

    async def test_callback_can_schedule_its_own_successor(self):
        async def first():
            self.calls.append("first")
            self.timers.cancel("s1")  # must not cancel itself
            self.timers.schedule("s1", 0.01, self._record("second"))
            self.calls.append("first-done")

        await self.timers.schedule("s1", 0, first)
        successor = self.timers.pending("s1")
        self.assertIsNotNone(successor)
        await successor
        self.assertEqual(self.calls, ["first", "first-done", "second"])

    async def test_callback_errors_are_logged_not_raised(self):
        async def broken():
            raise RuntimeError("boom")

        with self.assertLogs("backend.quizarena.timers", level="ERROR"):
            await self.timers.schedule("s1", 0, broken)
