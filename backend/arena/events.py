from __future__ import annotations

import logging
from typing import Any, List

from pymongo import ReturnDocument

from .db import db
from .utils import now_ts

logger = logging.getLogger(__name__)


class EventStore:
    """Per-room broadcast log that clients poll over HTTP."""

    def __init__(self, database: Any = None):
        database = database if database is not None else db
        self.counters_collection = database.room_event_counters
        self.events_collection = database.room_events

    async def append(self, room_id: str, payload: dict[str, Any]) -> int:
        """Store a new event for a room and return its sequence number."""

        counter_doc = await self.counters_collection.find_one_and_update(
            {"_id": room_id},
            {"$inc": {"seq": 1}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )

        if not counter_doc:
            # Some Mongo-compatible providers complete the upsert but return
            # ``None``; read the counter back instead.
            counter_doc = await self.counters_collection.find_one({"_id": room_id})

        seq = int((counter_doc or {}).get("seq", 1))

        await self.events_collection.insert_one(
            {
                "room_id": room_id,
                "seq": seq,
                "timestamp": now_ts(),
                "payload": payload,
            }
        )
        return seq

    async def list(self, room_id: str, after: int | None = None, limit: int = 200) -> List[dict[str, Any]]:
        """Return events for a room that occur after the given sequence."""

        query: dict[str, Any] = {"room_id": room_id}
        if after is not None:
            query["seq"] = {"$gt": after}

        cursor = (
            self.events_collection.find(query)
            .sort("seq", 1)
            .limit(limit)
        )

        events: List[dict[str, Any]] = []
        async for doc in cursor:
            events.append(
                {
                    "seq": doc["seq"],
                    "timestamp": doc.get("timestamp"),
                    "payload": doc.get("payload", {}),
                }
            )
        return events

    async def broadcast(self, room_id: str, event_type: str, **fields: Any) -> int | None:
        """Append a typed event; a failing transport never fails the caller."""

        try:
            return await self.append(room_id, {"type": event_type, **fields})
        except Exception:
            logger.exception("Failed to broadcast %s to room %s", event_type, room_id)
            return None


event_store = EventStore()
