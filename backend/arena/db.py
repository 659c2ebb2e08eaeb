from __future__ import annotations

import asyncio
import copy
from functools import lru_cache
from typing import Any, Dict, Iterator, List, Optional, Tuple

from pydantic_settings import BaseSettings, SettingsConfigDict
from pymongo import ReturnDocument


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    ADMIN_KEY: str = "change-me"
    CORS_ORIGINS: str = "http://localhost:5173,http://localhost:8080"
    CORS_ORIGIN_REGEX: Optional[str] = r"chrome-extension://.*"
    LOG_LEVEL: str = "INFO"

    # Session timers (seconds)
    VOTING_DURATION_SEC: float = 30
    MATCH_DURATION_SEC: float = 15 * 60

    PROBLEM_OPTION_COUNT: int = 5
    DEFAULT_DIFFICULTY: str = "Medium"
    MIN_PARTICIPANTS: int = 2

    # Matchmaking
    MAX_GROUP_SIZE: int = 8
    BRACKET_WIDTH: int = 200

    # Rating
    RATING_K_FACTOR: float = 32
    DEFAULT_RATING: int = 1200


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()


Document = Dict[str, Any]


class InMemoryCursor:
    """Lazy ``find`` result: filtering, ordering and paging run on first iteration."""

    def __init__(self, collection: "InMemoryCollection", query: Document):
        self._collection = collection
        self._query = query
        self._order: Optional[Tuple[str, int]] = None
        self._offset = 0
        self._count: Optional[int] = None
        self._pending: Optional[Iterator[Document]] = None

    def sort(self, key: str, direction: int):
        self._order = (key, direction)
        return self

    def skip(self, skip: int):
        self._offset = max(0, skip)
        return self

    def limit(self, limit: int):
        self._count = limit
        return self

    async def to_list(self) -> List[Document]:
        return [doc async for doc in self]

    async def _page(self) -> List[Document]:
        docs = await self._collection._select(self._query)
        if self._order is not None:
            key, direction = self._order
            docs.sort(key=lambda d: d.get(key), reverse=direction < 0)
        end = None if self._count is None else self._offset + self._count
        return docs[self._offset:end]

    def __aiter__(self):
        return self

    async def __anext__(self) -> Document:
        if self._pending is None:
            self._pending = iter(await self._page())
        try:
            return next(self._pending)
        except StopIteration as exc:
            raise StopAsyncIteration from exc


class InMemoryCollection:
    """Just enough of the Motor collection API for the arena stores.

    Documents are copied on the way in and out, so callers never share
    state with the stored rows.
    """

    def __init__(self):
        self._docs: List[Document] = []
        self._lock = asyncio.Lock()

    async def _select(self, query: Document) -> List[Document]:
        async with self._lock:
            return [copy.deepcopy(doc) for doc in self._docs if _matches(doc, query)]

    def _position(self, query: Document) -> Optional[int]:
        return next((i for i, doc in enumerate(self._docs) if _matches(doc, query)), None)

    async def find_one(self, query: Document) -> Optional[Document]:
        async with self._lock:
            i = self._position(query)
            return None if i is None else copy.deepcopy(self._docs[i])

    def find(self, query: Optional[Document] = None) -> InMemoryCursor:
        return InMemoryCursor(self, query or {})

    async def count_documents(self, query: Document) -> int:
        async with self._lock:
            return sum(1 for doc in self._docs if _matches(doc, query))

    async def insert_one(self, document: Document) -> None:
        async with self._lock:
            self._docs.append(copy.deepcopy(document))

    async def delete_many(self, query: Document) -> None:
        async with self._lock:
            self._docs = [doc for doc in self._docs if not _matches(doc, query)]

    async def update_one(self, query: Document, update: Document, upsert: bool = False) -> None:
        async with self._lock:
            self._modify(query, update, upsert)

    async def find_one_and_update(
        self,
        query: Document,
        update: Document,
        *,
        upsert: bool = False,
        return_document: bool = ReturnDocument.BEFORE,
    ) -> Optional[Document]:
        async with self._lock:
            before, after = self._modify(query, update, upsert)
        return copy.deepcopy(after if return_document == ReturnDocument.AFTER else before)

    def _modify(self, query: Document, update: Document, upsert: bool) -> Tuple[Optional[Document], Optional[Document]]:
        # Caller holds self._lock; returns the document before and after the update
        i = self._position(query)
        if i is not None:
            before = self._docs[i]
            self._docs[i] = _apply_update(copy.deepcopy(before), update)
            return before, self._docs[i]
        if not upsert:
            return None, None
        # An upserted document starts from the equality fields of the query
        seed = {k: v for k, v in query.items() if not isinstance(v, dict)}
        self._docs.append(_apply_update(copy.deepcopy(seed), update))
        return None, self._docs[-1]


def _apply_update(doc: Document, update: Document) -> Document:
    for op, fields in update.items():
        if op == "$set":
            doc.update(copy.deepcopy(fields))
        elif op == "$inc":
            for key, amount in fields.items():
                doc[key] = doc.get(key, 0) + amount
        else:  # pragma: no cover - only the above operators are used today
            raise ValueError(f"Unsupported update operator: {op}")
    return doc


def _matches(doc: Document, query: Document) -> bool:
    for key, expected in query.items():
        actual = doc.get(key)
        if isinstance(expected, dict):
            # Only range filters are needed: {"$gt": value}
            for op, operand in expected.items():
                if op != "$gt":
                    raise ValueError(f"Unsupported query operator: {op}")
                if actual is None or actual <= operand:
                    return False
        elif isinstance(actual, list):
            # A scalar matches any element of an array field
            if expected not in actual:
                return False
        elif actual != expected:
            return False
    return True


class InMemoryDatabase:
    def __init__(self):
        self.rooms = InMemoryCollection()
        self.problems = InMemoryCollection()
        self.users = InMemoryCollection()
        self.finished_sessions = InMemoryCollection()
        self.room_event_counters = InMemoryCollection()
        self.room_events = InMemoryCollection()


db: Any = InMemoryDatabase()
