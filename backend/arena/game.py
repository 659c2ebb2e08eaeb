from __future__ import annotations

import asyncio
import logging
import random
import uuid
from collections import OrderedDict
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, Dict, List, Mapping, Optional, Set

from .db import Settings, settings as default_settings
from .errors import NotFoundError, PersistenceError, StateConflictError, ValidationError
from .events import EventStore, event_store
from .models import (
    EventOutcome,
    FinishedSessionRecord,
    MatchRequest,
    Participant,
    ParticipantResult,
    Problem,
    RosterEntry,
    Session,
    SessionStatus,
)
from .rating import compute_rating_deltas
from .results import ResultStore, result_store
from .rooms import ROOM_IN_GAME, ROOM_WAITING, ProblemSource, RoomDirectory, problem_source, room_directory
from .scoring import score
from .utils import now_ts, sort_standings

logger = logging.getLogger(__name__)

LIVE_STATUSES = (SessionStatus.AWAITING_READY, SessionStatus.VOTING, SessionStatus.IN_PROGRESS)

# Rooms whose last finished roster is remembered for straggler solve attempts
FINISHED_ROOMS_KEPT = 1024


def tally_votes(options: List[Problem], votes: Mapping[str, str]) -> Dict[str, int]:
    tally = {problem.id: 0 for problem in options}
    for problem_id in votes.values():
        if problem_id in tally:
            tally[problem_id] += 1
    return tally


def select_problem(options: List[Problem], votes: Mapping[str, str], rng: random.Random) -> Problem:
    """Pick the most voted option, breaking ties uniformly at random.

    With no votes at all every option is tied at zero.
    """
    if not options:
        raise StateConflictError("No problem options to choose from")
    tally = tally_votes(options, votes)
    top = max(tally.values())
    return rng.choice([problem for problem in options if tally[problem.id] == top])


class SessionController:
    """Owns every live session, one per room.

    All mutations of a session (participant events and timer firings) run
    under that room's lock, so they apply one at a time in arrival order
    while different rooms proceed independently.
    """

    def __init__(
        self,
        rooms: Optional[RoomDirectory] = None,
        problems: Optional[ProblemSource] = None,
        results: Optional[ResultStore] = None,
        events: Optional[EventStore] = None,
        config: Optional[Settings] = None,
        clock: Callable[[], float] = now_ts,
        rng: Optional[random.Random] = None,
    ):
        self.rooms = rooms or room_directory
        self.problems = problems or problem_source
        self.results = results or result_store
        self.events = events or event_store
        self.config = config or default_settings
        self.clock = clock
        self.rng = rng or random.Random()

        self.sessions: Dict[str, Session] = {}
        self.locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}
        # room_id -> participants of the session that last finished there,
        # oldest first, capped at finished_rooms_kept
        self.last_finished: "OrderedDict[str, Set[str]]" = OrderedDict()
        self.finished_rooms_kept = FINISHED_ROOMS_KEPT
        self._timers: Set[asyncio.Task] = set()

    @asynccontextmanager
    async def _serialized(self, room_id: str) -> AsyncIterator[None]:
        """Hold the room's lock; the lock is dropped once nobody holds or awaits it."""

        lock = self.locks.setdefault(room_id, asyncio.Lock())
        self._lock_users[room_id] = self._lock_users.get(room_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[room_id] -= 1
            if not self._lock_users[room_id]:
                del self._lock_users[room_id]
                del self.locks[room_id]

    def _remember_finished(self, room_id: str, user_ids: Set[str]) -> None:
        self.last_finished.pop(room_id, None)
        self.last_finished[room_id] = user_ids
        while len(self.last_finished) > self.finished_rooms_kept:
            self.last_finished.popitem(last=False)

    def get_session(self, room_id: str) -> Optional[Session]:
        return self.sessions.get(room_id)

    def in_live_session(self, user_id: str) -> bool:
        return any(s.participant(user_id) is not None for s in self.sessions.values())

    # -- session creation / teardown -------------------------------------

    async def start(self, room_id: str) -> Session:
        async with self._serialized(room_id):
            if room_id in self.sessions:
                raise StateConflictError(f"Room {room_id} already has a live session")
            if not await self.rooms.exists(room_id):
                raise NotFoundError(f"Room {room_id} not found")

            roster = await self.rooms.get_participants(room_id)
            if len(roster) < self.config.MIN_PARTICIPANTS:
                raise StateConflictError(
                    f"Cannot start: need at least {self.config.MIN_PARTICIPANTS} participants"
                )

            s = Session(
                id=uuid.uuid4().hex,
                room_id=room_id,
                difficulty=await self.rooms.get_difficulty(room_id),
                created_at=self.clock(),
                participants=[
                    Participant(user_id=r.user_id, username=r.username, rating_at_start=r.rating)
                    for r in roster
                ],
            )
            self.sessions[room_id] = s
            self.last_finished.pop(room_id, None)
            await self._set_room_status(room_id, ROOM_IN_GAME)

            logger.info("Session %s created in room %s with %d participants", s.id, room_id, len(roster))
            await self.events.broadcast(
                room_id,
                "session_started",
                session_id=s.id,
                participants=[p.model_dump() for p in s.participants],
            )
            return s

    async def start_from_match(self, group: List[MatchRequest]) -> Session:
        """Create a room for a matchmaking group and start its session."""

        room_id = f"match-{uuid.uuid4().hex[:12]}"
        roster = [RosterEntry(user_id=r.user_id, username=r.username, rating=r.rating) for r in group]
        await self.rooms.register(room_id, roster, self.config.DEFAULT_DIFFICULTY)
        return await self.start(room_id)

    async def abort(self, room_id: str) -> None:
        async with self._serialized(room_id):
            s = self._live(room_id)
            if s.status != SessionStatus.AWAITING_READY:
                raise StateConflictError(f"Cannot abort a session that is {s.status.value}")
            s.status = SessionStatus.ABORTED
            del self.sessions[room_id]
            await self._set_room_status(room_id, ROOM_WAITING)
            logger.info("Session %s in room %s aborted", s.id, room_id)
            await self.events.broadcast(room_id, "session_aborted", session_id=s.id)

    async def aclose(self) -> None:
        """Cancel pending timers; used on shutdown."""

        timers = list(self._timers)
        for task in timers:
            task.cancel()
        await asyncio.gather(*timers, return_exceptions=True)

    # -- participant events ----------------------------------------------

    def _live(self, room_id: str) -> Session:
        s = self.sessions.get(room_id)
        if s is None:
            raise StateConflictError(f"No live session in room {room_id}")
        return s

    def _participant(self, s: Session, user_id: str) -> Participant:
        p = s.participant(user_id)
        if p is None:
            raise ValidationError(f"{user_id} is not a participant of this session")
        return p

    def _require(self, s: Session, status: SessionStatus, action: str) -> None:
        if s.status != status:
            raise StateConflictError(f"Cannot {action} while session is {s.status.value}")

    async def ready(self, room_id: str, user_id: str, ready: bool, externally_verified: bool) -> EventOutcome:
        async with self._serialized(room_id):
            s = self._live(room_id)
            p = self._participant(s, user_id)
            self._require(s, SessionStatus.AWAITING_READY, "ready up")

            if p.ready == ready and p.externally_verified == externally_verified:
                return EventOutcome(accepted=False, duplicate=True, status=s.status)

            def is_set(other: Participant) -> bool:
                if other is p:
                    return ready and externally_verified
                return other.ready and other.externally_verified

            everyone_ready = (
                len(s.participants) >= self.config.MIN_PARTICIPANTS
                and all(is_set(other) for other in s.participants)
            )
            options: List[Problem] = []
            if everyone_ready:
                # Fetch first so a failing problem source leaves the session untouched
                options = await self.problems.get_candidate_problems(
                    self.config.PROBLEM_OPTION_COUNT, s.difficulty
                )

            p.ready = ready
            p.externally_verified = externally_verified
            ready_count = sum(1 for other in s.participants if other.ready and other.externally_verified)
            await self.events.broadcast(
                room_id,
                "ready_update",
                user_id=user_id,
                ready=ready,
                externally_verified=externally_verified,
                ready_count=ready_count,
                total_participants=len(s.participants),
            )

            if everyone_ready:
                await self._open_voting(s, options)
            return EventOutcome(accepted=True, status=s.status)

    async def vote(self, room_id: str, user_id: str, problem_id: str) -> EventOutcome:
        async with self._serialized(room_id):
            s = self._live(room_id)
            self._participant(s, user_id)
            self._require(s, SessionStatus.VOTING, "vote")

            if s.option(problem_id) is None:
                raise ValidationError(f"Problem {problem_id} is not one of the offered options")
            if user_id in s.votes:
                return EventOutcome(accepted=False, duplicate=True, status=s.status)

            s.votes[user_id] = problem_id
            await self.events.broadcast(
                room_id,
                "vote_tally",
                votes_count=len(s.votes),
                total_participants=len(s.participants),
                tally=tally_votes(s.problem_options, s.votes),
            )

            if all(p.user_id in s.votes for p in s.participants):
                await self._begin_round(s)
            return EventOutcome(accepted=True, status=s.status)

    async def solve_attempt(self, room_id: str, user_id: str, solved: bool) -> EventOutcome:
        async with self._serialized(room_id):
            s = self.sessions.get(room_id)
            if s is None and user_id in self.last_finished.get(room_id, ()):
                # Straggler from a session that already finished
                return EventOutcome(accepted=False, duplicate=True, status=SessionStatus.FINISHED)
            s = self._live(room_id)
            p = self._participant(s, user_id)
            self._require(s, SessionStatus.IN_PROGRESS, "submit a solution")

            if p.solved:
                return EventOutcome(accepted=False, duplicate=True, status=s.status)

            now = self.clock()
            if s.end_time is not None and now >= s.end_time:
                # The deadline timer has not run yet; the late solve is not credited
                await self._finish(s)
                return EventOutcome(accepted=False, status=s.status)

            if not solved:
                return EventOutcome(accepted=True, status=s.status)

            p.solved = True
            p.rank = sum(1 for other in s.participants if other.solved)
            p.points = score(p.rank, solved=True)
            p.solve_duration = round(now - s.start_time, 3) if s.start_time is not None else None
            logger.info("Room %s: %s solved in place %d", room_id, p.username, p.rank)
            await self.events.broadcast(
                room_id,
                "participant_solved",
                user_id=p.user_id,
                username=p.username,
                rank=p.rank,
                points=p.points,
                solve_duration=p.solve_duration,
            )

            if all(other.solved for other in s.participants):
                await self._finish(s)
            return EventOutcome(accepted=True, status=s.status)

    # -- transitions -----------------------------------------------------

    async def _open_voting(self, s: Session, options: List[Problem]) -> None:
        s.problem_options = options
        s.votes = {}
        s.voting_deadline = self.clock() + self.config.VOTING_DURATION_SEC
        s.status = SessionStatus.VOTING
        logger.info("Room %s: voting opened over %s", s.room_id, [o.id for o in options])

        await self.events.broadcast(
            s.room_id,
            "voting_started",
            options=[o.model_dump() for o in options],
            deadline=s.voting_deadline,
        )
        self._schedule(self.config.VOTING_DURATION_SEC, s, SessionStatus.VOTING, self._begin_round)

    async def _begin_round(self, s: Session) -> None:
        s.current_problem = select_problem(s.problem_options, s.votes, self.rng)
        s.start_time = self.clock()
        s.end_time = s.start_time + self.config.MATCH_DURATION_SEC
        for p in s.participants:
            p.solved = False
            p.rank = None
            p.points = 0
            p.solve_duration = None
        s.status = SessionStatus.IN_PROGRESS
        logger.info("Room %s: problem %s selected", s.room_id, s.current_problem.id)

        await self.events.broadcast(
            s.room_id,
            "problem_selected",
            problem=s.current_problem.model_dump(),
            start_time=s.start_time,
            end_time=s.end_time,
        )
        self._schedule(self.config.MATCH_DURATION_SEC, s, SessionStatus.IN_PROGRESS, self._finish)

    async def _finish(self, s: Session) -> None:
        if s.status == SessionStatus.FINISHED:
            return

        # Unsolved participants take the remaining places in roster order
        next_rank = sum(1 for p in s.participants if p.solved) + 1
        for p in s.participants:
            if not p.solved:
                p.rank = next_rank
                p.points = 0
                next_rank += 1

        s.status = SessionStatus.FINISHED
        s.finished_at = self.clock()

        deltas = compute_rating_deltas(
            {p.user_id: p.rating_at_start for p in s.participants},
            {p.user_id: p.rank for p in s.participants},
            self.config.RATING_K_FACTOR,
        )
        record = self._build_record(s, deltas)

        try:
            await self.results.record(record)
        except PersistenceError:
            logger.exception("Session %s finished but was not persisted; needs reconciliation", s.id)

        self.sessions.pop(s.room_id, None)
        self._remember_finished(s.room_id, {p.user_id for p in s.participants})
        await self._set_room_status(s.room_id, ROOM_WAITING)

        logger.info("Room %s: session %s finished, deltas %s", s.room_id, s.id, deltas)
        await self.events.broadcast(
            s.room_id,
            "session_finished",
            session_id=s.id,
            ranks={p.user_id: p.rank for p in s.participants},
            points={p.user_id: p.points for p in s.participants},
            rating_deltas=deltas,
            winner_id=record.winner_id,
            standings=sort_standings([p.model_dump() for p in s.participants]),
        )

    def _build_record(self, s: Session, deltas: Dict[str, int]) -> FinishedSessionRecord:
        results = [
            ParticipantResult(
                user_id=p.user_id,
                username=p.username,
                rating_before=p.rating_at_start,
                rating_delta=deltas[p.user_id],
                rating_after=p.rating_at_start + deltas[p.user_id],
                rank=p.rank,
                points=p.points,
                solved=p.solved,
                solve_duration=p.solve_duration,
            )
            for p in s.participants
        ]
        winner = next((r for r in results if r.rank == 1), None)
        return FinishedSessionRecord(
            session_id=s.id,
            room_id=s.room_id,
            problem_id=s.current_problem.id if s.current_problem else None,
            start_time=s.start_time,
            end_time=s.end_time,
            finished_at=s.finished_at,
            winner_id=winner.user_id if winner else None,
            participant_ids=[r.user_id for r in results],
            participants=results,
        )

    async def _set_room_status(self, room_id: str, status: str) -> None:
        try:
            await self.rooms.set_status(room_id, status)
        except Exception:
            logger.exception("Failed to mark room %s as %s", room_id, status)

    # -- timers ----------------------------------------------------------

    def _schedule(
        self,
        delay: float,
        s: Session,
        expected: SessionStatus,
        transition: Callable[[Session], Awaitable[None]],
    ) -> None:
        task = asyncio.create_task(self._fire(delay, s.room_id, s.id, expected, transition))
        self._timers.add(task)
        task.add_done_callback(self._timers.discard)

    async def _fire(
        self,
        delay: float,
        room_id: str,
        session_id: str,
        expected: SessionStatus,
        transition: Callable[[Session], Awaitable[None]],
    ) -> None:
        await asyncio.sleep(max(0.0, delay))
        async with self._serialized(room_id):
            # Re-read: the phase may have ended, or a new session may own the room
            s = self.sessions.get(room_id)
            if s is None or s.id != session_id or s.status != expected:
                logger.debug("Room %s: stale %s timer ignored", room_id, expected.value)
                return
            logger.info("Room %s: %s deadline reached", room_id, expected.value)
            try:
                await transition(s)
            except Exception:
                logger.exception("Room %s: %s deadline transition failed", room_id, expected.value)


controller = SessionController()
