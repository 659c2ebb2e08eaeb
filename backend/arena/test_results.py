from __future__ import annotations

from unittest import IsolatedAsyncioTestCase, mock

from backend.arena.db import InMemoryDatabase
from backend.arena.errors import NotFoundError, PersistenceError
from backend.arena.models import FinishedSessionRecord, ParticipantResult, RosterEntry
from backend.arena.results import ResultStore
from backend.arena.rooms import RoomDirectory


def _record(session_id: str, finished_at: float, winner: str, loser: str, delta: int = 16) -> FinishedSessionRecord:
    return FinishedSessionRecord(
        session_id=session_id,
        room_id="room-1",
        problem_id="monte-carlo",
        start_time=finished_at - 120,
        end_time=finished_at + 780,
        finished_at=finished_at,
        winner_id=winner,
        participant_ids=[winner, loser],
        participants=[
            ParticipantResult(user_id=winner, username=winner.title(), rating_before=1200, rating_delta=delta,
                              rating_after=1200 + delta, rank=1, points=1000, solved=True, solve_duration=95.5),
            ParticipantResult(user_id=loser, username=loser.title(), rating_before=1200, rating_delta=-delta,
                              rating_after=1200 - delta, rank=2, points=0, solved=False),
        ],
    )


class ResultStoreTests(IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.database = InMemoryDatabase()
        self.store = ResultStore(self.database)
        await RoomDirectory(self.database).register(
            "room-1",
            [RosterEntry(user_id="ann", username="Ann", rating=1200),
             RosterEntry(user_id="bob", username="Bob", rating=1200)],
        )

    async def test_record_updates_statistics(self):
        await self.store.record(_record("s1", 1_000, "ann", "bob"))
        await self.store.record(_record("s2", 2_000, "bob", "ann", delta=17))

        stats = await self.store.get_user_stats("ann")

        self.assertEqual(stats["rating"], 1200 + 16 - 17)
        self.assertEqual(stats["statistics"]["games_played"], 2)
        self.assertEqual(stats["statistics"]["wins"], 1)
        self.assertEqual(stats["statistics"]["win_rate"], 50.0)
        self.assertEqual(stats["statistics"]["avg_points_per_game"], 500)
        self.assertEqual([g["session_id"] for g in stats["recent_games"]], ["s2", "s1"])
        self.assertFalse(stats["recent_games"][0]["won"])

    async def test_history_is_paginated_newest_first(self):
        for i in range(3):
            await self.store.record(_record(f"s{i}", 1_000 * (i + 1), "ann", "bob"))

        page = await self.store.get_history("bob", page=2, limit=2)

        self.assertEqual(page["pagination"], {"page": 2, "limit": 2, "total": 3, "total_pages": 2})
        self.assertEqual(len(page["games"]), 1)
        game = page["games"][0]
        self.assertEqual(game["session_id"], "s0")
        self.assertEqual((game["rank"], game["rating_delta"], game["duration"]), (2, -16, 120))

    async def test_leaderboard_orders_by_rating(self):
        await self.store.record(_record("s1", 1_000, "bob", "ann"))

        board = await self.store.leaderboard()

        self.assertEqual([e["user_id"] for e in board["leaderboard"]], ["bob", "ann"])
        self.assertEqual(board["leaderboard"][0]["rank"], 1)
        self.assertEqual(board["leaderboard"][0]["win_rate"], 100.0)

    async def test_unregistered_user_gets_a_row(self):
        record = _record("s1", 1_000, "ann", "carol")
        await self.store.record(record)

        stats = await self.store.get_user_stats("carol")
        self.assertEqual(stats["rating"], 1200 - 16)

    async def test_unknown_user(self):
        with self.assertRaises(NotFoundError):
            await self.store.get_user_stats("nobody")

    async def test_write_failure_is_a_persistence_error(self):
        with mock.patch.object(self.store.finished_sessions, "insert_one", side_effect=RuntimeError("disk")):
            with self.assertRaises(PersistenceError):
                await self.store.record(_record("s1", 1_000, "ann", "bob"))

        user = await self.database.users.find_one({"user_id": "ann"})
        self.assertEqual(user["games_played"], 0)

    async def test_failed_increment_reverts_earlier_ones(self):
        real_update = self.database.users.update_one
        calls = []

        async def _fail_second_write(*args, **kwargs):
            calls.append(args)
            if len(calls) == 2:
                raise RuntimeError("write conflict")
            return await real_update(*args, **kwargs)

        with mock.patch.object(self.database.users, "update_one", side_effect=_fail_second_write):
            with self.assertRaises(PersistenceError):
                await self.store.record(_record("s1", 1_000, "ann", "bob"))

        for user_id in ("ann", "bob"):
            user = await self.database.users.find_one({"user_id": user_id})
            self.assertEqual(
                (user["rating"], user["games_played"], user["wins"], user["total_points"]),
                (1200, 0, 0, 0),
            )
        self.assertEqual(await self.database.finished_sessions.count_documents({}), 0)
