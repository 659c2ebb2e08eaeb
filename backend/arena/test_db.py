from __future__ import annotations

from unittest import IsolatedAsyncioTestCase

from pymongo import ReturnDocument

from backend.arena.db import InMemoryCollection


class InMemoryCollectionTests(IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.users = InMemoryCollection()
        for user_id, rating, games in (("ann", 1300, 2), ("bob", 1100, 0), ("cat", 1250, 5), ("dan", 1400, 1)):
            await self.users.insert_one({"user_id": user_id, "rating": rating, "games_played": games})

    async def test_sort_skip_limit(self):
        cursor = self.users.find({}).sort("rating", -1).skip(1).limit(2)

        self.assertEqual([d["user_id"] for d in await cursor.to_list()], ["ann", "cat"])

    async def test_range_filter_and_count(self):
        query = {"games_played": {"$gt": 0}}

        self.assertEqual(await self.users.count_documents(query), 3)
        names = [d["user_id"] async for d in self.users.find(query).sort("rating", 1)]
        self.assertEqual(names, ["cat", "ann", "dan"])

    async def test_scalar_matches_array_member(self):
        sessions = InMemoryCollection()
        await sessions.insert_one({"session_id": "s1", "participant_ids": ["ann", "bob"]})
        await sessions.insert_one({"session_id": "s2", "participant_ids": ["cat"]})

        found = await sessions.find({"participant_ids": "bob"}).to_list()

        self.assertEqual([d["session_id"] for d in found], ["s1"])

    async def test_returned_documents_are_copies(self):
        doc = await self.users.find_one({"user_id": "ann"})
        doc["rating"] = 0

        self.assertEqual((await self.users.find_one({"user_id": "ann"}))["rating"], 1300)

    async def test_update_one_inc_set_and_upsert(self):
        await self.users.update_one({"user_id": "bob"}, {"$inc": {"rating": 16, "games_played": 1}, "$set": {"last_active": 5}})
        await self.users.update_one({"user_id": "eve"}, {"$set": {"rating": 1200}})
        await self.users.update_one({"user_id": "eve"}, {"$set": {"rating": 1200}}, upsert=True)

        bob = await self.users.find_one({"user_id": "bob"})
        self.assertEqual((bob["rating"], bob["games_played"], bob["last_active"]), (1116, 1, 5))
        self.assertEqual(await self.users.count_documents({"user_id": "eve"}), 1)

    async def test_find_one_and_update_counter(self):
        counters = InMemoryCollection()

        first = await counters.find_one_and_update(
            {"_id": "room-1"}, {"$inc": {"seq": 1}}, upsert=True, return_document=ReturnDocument.AFTER
        )
        before = await counters.find_one_and_update({"_id": "room-1"}, {"$inc": {"seq": 1}})

        self.assertEqual(first, {"_id": "room-1", "seq": 1})
        self.assertEqual(before["seq"], 1)
        self.assertEqual((await counters.find_one({"_id": "room-1"}))["seq"], 2)
        self.assertIsNone(await counters.find_one_and_update({"_id": "room-2"}, {"$inc": {"seq": 1}}))

    async def test_delete_many(self):
        await self.users.delete_many({"games_played": {"$gt": 1}})

        remaining = [d["user_id"] async for d in self.users.find().sort("user_id", 1)]
        self.assertEqual(remaining, ["bob", "dan"])

    async def test_unknown_operator_is_rejected(self):
        with self.assertRaises(ValueError):
            await self.users.count_documents({"rating": {"$ne": 1}})
