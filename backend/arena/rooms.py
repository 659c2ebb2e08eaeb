from __future__ import annotations

import logging
import random
from typing import Any, List, Optional

from .db import db, settings
from .errors import NotFoundError
from .models import Problem, RosterEntry

logger = logging.getLogger(__name__)

ROOM_WAITING = "waiting"
ROOM_IN_GAME = "in_game"

DEFAULT_PROBLEMS = [
    Problem(id="option-pricing", title="Option Pricing Model", difficulty="Medium",
            url="https://quantguide.io/problems/option-pricing"),
    Problem(id="portfolio-optimization", title="Portfolio Optimization", difficulty="Medium",
            url="https://quantguide.io/problems/portfolio-optimization"),
    Problem(id="risk-calculation", title="Risk Calculation", difficulty="Medium",
            url="https://quantguide.io/problems/risk-calculation"),
    Problem(id="monte-carlo", title="Monte Carlo Simulation", difficulty="Medium",
            url="https://quantguide.io/problems/monte-carlo"),
    Problem(id="black-scholes", title="Black-Scholes Formula", difficulty="Medium",
            url="https://quantguide.io/problems/black-scholes"),
    Problem(id="coin-flip-streaks", title="Coin Flip Streaks", difficulty="Easy",
            url="https://quantguide.io/problems/coin-flip-streaks"),
    Problem(id="dice-expectation", title="Dice Expectation", difficulty="Easy",
            url="https://quantguide.io/problems/dice-expectation"),
    Problem(id="stochastic-volatility", title="Stochastic Volatility", difficulty="Hard",
            url="https://quantguide.io/problems/stochastic-volatility"),
]


class RoomDirectory:
    """Room rosters, difficulty and status.

    Ratings are read from the user statistics collection when a user has
    finished a session before, so rosters never carry stale ratings.
    """

    def __init__(self, database: Any = None):
        database = database if database is not None else db
        self.rooms = database.rooms
        self.users = database.users

    async def register(self, room_id: str, roster: List[RosterEntry], difficulty: Optional[str] = None) -> None:
        await self.rooms.update_one(
            {"room_id": room_id},
            {
                "$set": {
                    "participants": [{"user_id": r.user_id, "username": r.username} for r in roster],
                    "difficulty": difficulty or settings.DEFAULT_DIFFICULTY,
                    "status": ROOM_WAITING,
                }
            },
            upsert=True,
        )
        for entry in roster:
            if await self.users.find_one({"user_id": entry.user_id}) is None:
                await self.users.insert_one(
                    {
                        "user_id": entry.user_id,
                        "username": entry.username,
                        "rating": entry.rating,
                        "games_played": 0,
                        "wins": 0,
                        "total_points": 0,
                        "last_active": None,
                    }
                )

    async def exists(self, room_id: str) -> bool:
        return await self.rooms.find_one({"room_id": room_id}) is not None

    async def _room(self, room_id: str) -> dict:
        room = await self.rooms.find_one({"room_id": room_id})
        if room is None:
            raise NotFoundError(f"Room {room_id} not found")
        return room

    async def get_participants(self, room_id: str) -> List[RosterEntry]:
        room = await self._room(room_id)
        roster = []
        for member in room.get("participants", []):
            user = await self.users.find_one({"user_id": member["user_id"]}) or {}
            roster.append(
                RosterEntry(
                    user_id=member["user_id"],
                    username=member.get("username") or user.get("username") or member["user_id"],
                    rating=int(user.get("rating", settings.DEFAULT_RATING)),
                )
            )
        return roster

    async def get_difficulty(self, room_id: str) -> str:
        room = await self._room(room_id)
        return room.get("difficulty") or settings.DEFAULT_DIFFICULTY

    async def set_status(self, room_id: str, status: str) -> None:
        await self.rooms.update_one({"room_id": room_id}, {"$set": {"status": status}})


class ProblemSource:
    def __init__(self, database: Any = None, rng: Optional[random.Random] = None):
        database = database if database is not None else db
        self.problems = database.problems
        self.rng = rng or random.Random()
        self._seeded = False

    async def _ensure_seeded(self) -> None:
        if self._seeded:
            return
        self._seeded = True
        if await self.problems.count_documents({}) == 0:
            for problem in DEFAULT_PROBLEMS:
                await self.problems.insert_one(problem.model_dump())

    async def replace_catalog(self, problems: List[Problem]) -> None:
        self._seeded = True
        await self.problems.delete_many({})
        for problem in problems:
            await self.problems.insert_one(problem.model_dump())

    async def get_candidate_problems(self, count: int, difficulty: Optional[str] = None) -> List[Problem]:
        """Draw up to ``count`` distinct problems, preferring ``difficulty``.

        Falls back to the whole catalog when nothing matches the filter.
        """
        await self._ensure_seeded()
        docs = await self.problems.find({}).to_list()
        matching = [d for d in docs if not difficulty or d.get("difficulty") == difficulty]
        if not matching:
            if difficulty:
                logger.warning("No %s problems in catalog, drawing from all difficulties", difficulty)
            matching = docs
        if not matching:
            raise NotFoundError("Problem catalog is empty")

        picked = self.rng.sample(matching, min(count, len(matching)))
        return [Problem(**{k: v for k, v in d.items() if k in Problem.model_fields}) for d in picked]


room_directory = RoomDirectory()
problem_source = ProblemSource()
