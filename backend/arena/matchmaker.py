from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .db import settings
from .errors import StateConflictError
from .game import controller
from .models import MatchRequest
from .utils import now_ts

logger = logging.getLogger(__name__)

MatchHandler = Callable[[List[MatchRequest]], Awaitable[Any]]


def bracket_for(rating: int, width: int) -> int:
    return (rating // width) * width


class Matchmaker:
    """Rating-bracketed waiting queue.

    Each bracket holds its requests in enqueue order. Selecting a group and
    removing it from the queues happens under one lock, so two concurrent
    formation attempts can never hand out the same user.
    """

    def __init__(
        self,
        on_match: Optional[MatchHandler] = None,
        *,
        bracket_width: Optional[int] = None,
        max_group_size: Optional[int] = None,
        min_group_size: int = 2,
        clock: Callable[[], float] = now_ts,
        is_busy: Optional[Callable[[str], bool]] = None,
    ):
        self.on_match = on_match
        self.bracket_width = bracket_width or settings.BRACKET_WIDTH
        self.max_group_size = max_group_size or settings.MAX_GROUP_SIZE
        self.min_group_size = min_group_size
        self.clock = clock
        self.is_busy = is_busy

        self._queues: Dict[int, List[MatchRequest]] = {}
        self._brackets: Dict[str, int] = {}  # user_id -> bracket
        self._lock = asyncio.Lock()

    async def enqueue(self, user_id: str, rating: int, username: Optional[str] = None) -> Optional[List[MatchRequest]]:
        """Queue a user (replacing any earlier request) and try to form a match.

        Returns the formed group, or ``None`` when the user keeps waiting.
        Users already playing a live session are refused.
        """
        if self.is_busy is not None and self.is_busy(user_id):
            raise StateConflictError(f"{user_id} is already in a live session")
        async with self._lock:
            self._remove(user_id)
            bracket = bracket_for(rating, self.bracket_width)
            request = MatchRequest(
                user_id=user_id,
                username=username or user_id,
                rating=rating,
                enqueue_time=self.clock(),
                bracket=bracket,
            )
            self._queues.setdefault(bracket, []).append(request)
            self._brackets[user_id] = bracket
            logger.debug("Queued %s (rating %d) in bracket %d", user_id, rating, bracket)

            group = self._take_group(bracket)

        if group is None:
            return None

        logger.info("Matched %s around bracket %d", [r.user_id for r in group], bracket)
        if self.on_match is not None:
            try:
                await self.on_match(group)
            except Exception:
                # The group has already left the queue; its users must re-enqueue
                logger.exception("Could not create a session for %s", [r.user_id for r in group])
        return group

    async def dequeue(self, user_id: str) -> bool:
        async with self._lock:
            return self._remove(user_id)

    async def status(self, user_id: str) -> Optional[MatchRequest]:
        async with self._lock:
            bracket = self._brackets.get(user_id)
            if bracket is None:
                return None
            return next(r for r in self._queues[bracket] if r.user_id == user_id)

    def snapshot(self) -> Dict[int, int]:
        return {bracket: len(queue) for bracket, queue in sorted(self._queues.items()) if queue}

    def _remove(self, user_id: str) -> bool:
        bracket = self._brackets.pop(user_id, None)
        if bracket is None:
            return False
        queue = self._queues.get(bracket, [])
        queue[:] = [r for r in queue if r.user_id != user_id]
        if not queue:
            self._queues.pop(bracket, None)
        return True

    def _take_group(self, bracket: int) -> Optional[List[MatchRequest]]:
        # Caller holds self._lock
        pool: List[MatchRequest] = []
        for neighbour in (bracket - self.bracket_width, bracket, bracket + self.bracket_width):
            pool.extend(self._queues.get(neighbour, []))
        if len(pool) < self.min_group_size:
            return None

        pool.sort(key=lambda r: r.enqueue_time)
        group = pool[: self.max_group_size]
        for request in group:
            self._remove(request.user_id)
        return group


matchmaker = Matchmaker(on_match=controller.start_from_match, is_busy=controller.in_live_session)
