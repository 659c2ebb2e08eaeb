from __future__ import annotations

import asyncio
import random
from unittest import IsolatedAsyncioTestCase, TestCase, mock

from backend.arena import matchmaker as matchmaking
from backend.arena.db import InMemoryDatabase, Settings
from backend.arena.errors import StateConflictError
from backend.arena.events import EventStore
from backend.arena.game import SessionController
from backend.arena.matchmaker import Matchmaker, bracket_for
from backend.arena.models import SessionStatus
from backend.arena.results import ResultStore
from backend.arena.rooms import ProblemSource, RoomDirectory


class _TickingClock:
    """Every reading is one second later than the last."""

    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        self.now += 1
        return self.now


class BracketTests(TestCase):
    def test_brackets_are_two_hundred_wide(self):
        self.assertEqual(bracket_for(1200, 200), 1200)
        self.assertEqual(bracket_for(1399, 200), 1200)
        self.assertEqual(bracket_for(1400, 200), 1400)
        self.assertEqual(bracket_for(0, 200), 0)


class MatchmakerTests(IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.on_match = mock.AsyncMock()
        self.mm = Matchmaker(self.on_match, bracket_width=200, max_group_size=8, clock=_TickingClock())

    async def test_single_user_waits(self):
        self.assertIsNone(await self.mm.enqueue("u1", 1200))

        self.on_match.assert_not_awaited()
        self.assertEqual(self.mm.snapshot(), {1200: 1})
        request = await self.mm.status("u1")
        self.assertEqual((request.bracket, request.username), (1200, "u1"))

    async def test_same_bracket_pair_matches_immediately(self):
        await self.mm.enqueue("u1", 1210, "alice")
        group = await self.mm.enqueue("u2", 1390, "bob")

        self.assertEqual([r.user_id for r in group], ["u1", "u2"])
        self.on_match.assert_awaited_once_with(group)
        self.assertEqual(self.mm.snapshot(), {})
        self.assertIsNone(await self.mm.status("u1"))

    async def test_neighbouring_brackets_match(self):
        await self.mm.enqueue("u1", 1199)
        group = await self.mm.enqueue("u2", 1200)
        self.assertEqual({r.user_id for r in group}, {"u1", "u2"})

    async def test_distant_brackets_do_not_match(self):
        await self.mm.enqueue("u1", 1000)
        self.assertIsNone(await self.mm.enqueue("u2", 1400))
        self.assertEqual(self.mm.snapshot(), {1000: 1, 1400: 1})

    async def test_requeue_replaces_previous_entry(self):
        await self.mm.enqueue("u1", 1000)
        self.assertIsNone(await self.mm.enqueue("u1", 1450))

        self.assertEqual(self.mm.snapshot(), {1400: 1})
        self.assertIsNone(await self.mm.enqueue("u2", 1000))

    async def test_dequeue(self):
        await self.mm.enqueue("u1", 1200)
        self.assertTrue(await self.mm.dequeue("u1"))
        self.assertFalse(await self.mm.dequeue("u1"))
        self.assertIsNone(await self.mm.enqueue("u2", 1200))

    async def test_group_size_is_capped_oldest_first(self):
        mm = Matchmaker(self.on_match, bracket_width=200, max_group_size=2, clock=_TickingClock())
        await mm.enqueue("old", 1000)
        await mm.enqueue("older-bracket", 1400)

        group = await mm.enqueue("newest", 1200)

        self.assertEqual([r.user_id for r in group], ["old", "older-bracket"])
        self.assertEqual(mm.snapshot(), {1200: 1})

    async def test_concurrent_enqueues_never_match_a_user_twice(self):
        rng = random.Random(3)
        users = [(f"u{i}", rng.randint(900, 1700)) for i in range(60)]

        groups = await asyncio.gather(*(self.mm.enqueue(u, r) for u, r in users))

        matched = [r.user_id for group in groups if group for r in group]
        self.assertEqual(len(matched), len(set(matched)))
        waiting = sum(self.mm.snapshot().values())
        self.assertEqual(len(matched) + waiting, len(users))

    async def test_failed_session_creation_is_logged(self):
        self.on_match.side_effect = RuntimeError("boom")
        await self.mm.enqueue("u1", 1200)

        with self.assertLogs(matchmaking.logger, "ERROR"):
            group = await self.mm.enqueue("u2", 1200)

        self.assertEqual(len(group), 2)
        self.assertEqual(self.mm.snapshot(), {})


class MatchToSessionTests(IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        database = InMemoryDatabase()
        self.controller = SessionController(
            rooms=RoomDirectory(database),
            problems=ProblemSource(database),
            results=ResultStore(database),
            events=EventStore(database),
            config=Settings(),
        )
        self.mm = Matchmaker(
            self.controller.start_from_match,
            bracket_width=200,
            max_group_size=8,
            is_busy=self.controller.in_live_session,
        )

    async def asyncTearDown(self) -> None:
        await self.controller.aclose()

    async def test_match_creates_a_session(self):
        await self.mm.enqueue("u1", 1250, "alice")
        await self.mm.enqueue("u2", 1300, "bob")

        sessions = list(self.controller.sessions.values())
        self.assertEqual(len(sessions), 1)
        s = sessions[0]
        self.assertEqual(s.status, SessionStatus.AWAITING_READY)
        self.assertEqual([(p.user_id, p.username, p.rating_at_start) for p in s.participants],
                         [("u1", "alice", 1250), ("u2", "bob", 1300)])
        self.assertTrue(s.room_id.startswith("match-"))

    async def test_players_in_a_live_session_cannot_queue_again(self):
        await self.mm.enqueue("u1", 1250, "alice")
        await self.mm.enqueue("u2", 1300, "bob")
        await self.mm.enqueue("u3", 1280, "carol")

        with self.assertRaises(StateConflictError):
            await self.mm.enqueue("u1", 1250, "alice")

        self.assertEqual(len(self.controller.sessions), 1)
        self.assertEqual(self.mm.snapshot(), {1200: 1})
        self.assertEqual((await self.mm.status("u3")).user_id, "u3")

    async def test_aborted_session_frees_players_to_queue(self):
        await self.mm.enqueue("u1", 1250)
        await self.mm.enqueue("u2", 1300)
        room_id = next(iter(self.controller.sessions))

        await self.controller.abort(room_id)

        self.assertIsNone(await self.mm.enqueue("u1", 1250))
