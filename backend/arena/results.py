from __future__ import annotations

import logging
import math
from typing import Any, Dict, List

from .db import db
from .errors import NotFoundError, PersistenceError
from .models import FinishedSessionRecord, ParticipantResult
from .utils import now_ts

logger = logging.getLogger(__name__)

RECENT_GAMES = 10


class ResultStore:
    """Durable home of finished sessions and per-user statistics."""

    def __init__(self, database: Any = None):
        database = database if database is not None else db
        self.finished_sessions = database.finished_sessions
        self.users = database.users

    async def write_finished_session(self, record: FinishedSessionRecord) -> None:
        try:
            await self.finished_sessions.insert_one(record.model_dump())
        except Exception as exc:
            raise PersistenceError(f"Could not store session {record.session_id}") from exc

    async def increment_user_stats(
        self,
        user_id: str,
        username: str,
        rating_before: int,
        rating_delta: int,
        won: bool,
        points: int,
    ) -> None:
        try:
            existing = await self.users.find_one({"user_id": user_id})
            if existing is None:
                # First game for a user the directory never registered
                await self.users.insert_one(
                    {
                        "user_id": user_id,
                        "username": username,
                        "rating": rating_before,
                        "games_played": 0,
                        "wins": 0,
                        "total_points": 0,
                    }
                )
            await self.users.update_one(
                {"user_id": user_id},
                {
                    "$inc": {
                        "rating": rating_delta,
                        "games_played": 1,
                        "wins": 1 if won else 0,
                        "total_points": points,
                    },
                    "$set": {"last_active": now_ts()},
                },
            )
        except Exception as exc:
            raise PersistenceError(f"Could not update statistics for {user_id}") from exc

    async def record(self, record: FinishedSessionRecord) -> None:
        """Apply every participant's increment, then write the session.

        All or nothing: if any write fails the increments already applied
        are reverted before ``PersistenceError`` propagates.
        """

        applied: List[ParticipantResult] = []
        try:
            for result in record.participants:
                await self.increment_user_stats(
                    result.user_id,
                    result.username,
                    result.rating_before,
                    result.rating_delta,
                    won=result.rank == 1,
                    points=result.points,
                )
                applied.append(result)
            await self.write_finished_session(record)
        except PersistenceError:
            await self._revert(applied)
            raise
        logger.info("Stored finished session %s for room %s", record.session_id, record.room_id)

    async def _revert(self, applied: List[ParticipantResult]) -> None:
        for result in applied:
            try:
                await self.users.update_one(
                    {"user_id": result.user_id},
                    {
                        "$inc": {
                            "rating": -result.rating_delta,
                            "games_played": -1,
                            "wins": -1 if result.rank == 1 else 0,
                            "total_points": -result.points,
                        }
                    },
                )
            except Exception:
                logger.exception("Could not revert statistics for %s; needs reconciliation", result.user_id)

    async def _user(self, user_id: str) -> Dict[str, Any]:
        user = await self.users.find_one({"user_id": user_id})
        if user is None:
            raise NotFoundError(f"User {user_id} not found")
        return user

    async def get_user_stats(self, user_id: str) -> Dict[str, Any]:
        user = await self._user(user_id)
        games_played = user.get("games_played", 0)
        wins = user.get("wins", 0)
        total_points = user.get("total_points", 0)

        cursor = (
            self.finished_sessions.find({"participant_ids": user_id})
            .sort("finished_at", -1)
            .limit(RECENT_GAMES)
        )
        recent = []
        async for doc in cursor:
            result = FinishedSessionRecord(**doc).result_for(user_id)
            recent.append(
                {
                    "session_id": doc["session_id"],
                    "problem_id": doc.get("problem_id"),
                    "won": doc.get("winner_id") == user_id,
                    "points": result.points if result else 0,
                    "played_at": doc.get("finished_at"),
                }
            )

        return {
            "user_id": user_id,
            "username": user.get("username"),
            "rating": user.get("rating"),
            "statistics": {
                "games_played": games_played,
                "wins": wins,
                "total_points": total_points,
                "win_rate": round(wins / games_played * 100, 2) if games_played else 0.0,
                "avg_points_per_game": round(total_points / games_played) if games_played else 0,
            },
            "recent_games": recent,
        }

    async def get_history(self, user_id: str, page: int = 1, limit: int = 20) -> Dict[str, Any]:
        user = await self._user(user_id)
        page = max(1, page)
        total = await self.finished_sessions.count_documents({"participant_ids": user_id})
        cursor = (
            self.finished_sessions.find({"participant_ids": user_id})
            .sort("finished_at", -1)
            .skip((page - 1) * limit)
            .limit(limit)
        )

        games: List[Dict[str, Any]] = []
        async for doc in cursor:
            record = FinishedSessionRecord(**doc)
            result = record.result_for(user_id)
            duration = None
            if record.start_time is not None:
                duration = round(record.finished_at - record.start_time)
            games.append(
                {
                    "session_id": record.session_id,
                    "room_id": record.room_id,
                    "problem_id": record.problem_id,
                    "participants": len(record.participants),
                    "duration": duration,
                    "won": record.winner_id == user_id,
                    "rank": result.rank if result else None,
                    "points": result.points if result else 0,
                    "solve_duration": result.solve_duration if result else None,
                    "rating_delta": result.rating_delta if result else 0,
                    "rating_before": result.rating_before if result else None,
                    "rating_after": result.rating_after if result else None,
                    "played_at": record.finished_at,
                }
            )

        return {
            "username": user.get("username"),
            "games": games,
            "pagination": _pagination(page, limit, total),
        }

    async def leaderboard(self, page: int = 1, limit: int = 50) -> Dict[str, Any]:
        page = max(1, page)
        query = {"games_played": {"$gt": 0}}
        total = await self.users.count_documents(query)
        offset = (page - 1) * limit
        cursor = self.users.find(query).sort("rating", -1).skip(offset).limit(limit)

        entries = []
        async for index, user in _aenumerate(cursor):
            games_played = user.get("games_played", 0)
            entries.append(
                {
                    "rank": offset + index + 1,
                    "user_id": user["user_id"],
                    "username": user.get("username"),
                    "rating": user.get("rating"),
                    "games_played": games_played,
                    "win_rate": round(user.get("wins", 0) / games_played * 100, 2) if games_played else 0.0,
                    "total_points": user.get("total_points", 0),
                }
            )
        return {"leaderboard": entries, "pagination": _pagination(page, limit, total)}


def _pagination(page: int, limit: int, total: int) -> Dict[str, int]:
    return {
        "page": page,
        "limit": limit,
        "total": total,
        "total_pages": math.ceil(total / limit) if limit else 0,
    }


async def _aenumerate(aiterable):
    index = 0
    async for item in aiterable:
        yield index, item
        index += 1


result_store = ResultStore()
