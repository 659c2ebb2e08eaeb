import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from .db import settings
from .errors import ArenaError, NotFoundError, StateConflictError
from .events import event_store
from .game import controller
from .matchmaker import matchmaker
from .models import Session
from .results import result_store
from .rooms import problem_source, room_directory
from .schemas import (
    AdminProblemsIn,
    AdminRoomIn,
    DequeueIn,
    EnqueueIn,
    PublicSessionOut,
    ReadyIn,
    SolveAttemptIn,
    VoteIn,
)

logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)


@asynccontextmanager
async def lifespan(_: FastAPI):
    yield
    await controller.aclose()


app = FastAPI(title="Arena API", lifespan=lifespan)

origins = [o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()]
origin_regex = settings.CORS_ORIGIN_REGEX or None

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins or ["*"],
    allow_origin_regex=origin_regex,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def require_admin(x_admin_key: Optional[str] = Header(default=None)):
    if x_admin_key != settings.ADMIN_KEY:
        raise HTTPException(status_code=401, detail="Invalid admin key")


def _http_error(exc: ArenaError) -> HTTPException:
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, StateConflictError):
        return HTTPException(status_code=409, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


def _public(s: Session) -> PublicSessionOut:
    return PublicSessionOut(
        id=s.id,
        room_id=s.room_id,
        status=s.status,
        participants=s.participants,
        problem_options=s.problem_options,
        votes_count=len(s.votes),
        current_problem=s.current_problem,
        voting_deadline=s.voting_deadline,
        start_time=s.start_time,
        end_time=s.end_time,
    )


# -- sessions ---------------------------------------------------------------

@app.post("/api/rooms/{room_id}/session", response_model=PublicSessionOut)
async def start_session(room_id: str):
    try:
        s = await controller.start(room_id)
    except ArenaError as exc:
        raise _http_error(exc) from exc
    return _public(s)


@app.get("/api/rooms/{room_id}/session", response_model=PublicSessionOut)
async def get_session(room_id: str):
    s = controller.get_session(room_id)
    if not s:
        raise HTTPException(404, "No live session")
    return _public(s)


@app.delete("/api/rooms/{room_id}/session")
async def abort_session(room_id: str):
    try:
        await controller.abort(room_id)
    except ArenaError as exc:
        raise _http_error(exc) from exc
    return {"ok": True}


@app.get("/api/rooms/{room_id}/events")
async def list_events(room_id: str, after: int | None = None, limit: int = 200):
    events = await event_store.list(room_id, after=after, limit=limit)
    latest_seq = events[-1]["seq"] if events else after
    return {"events": events, "latest_seq": latest_seq}


@app.post("/api/rooms/{room_id}/ready")
async def ready(room_id: str, payload: ReadyIn):
    try:
        outcome = await controller.ready(room_id, payload.user_id, payload.ready, payload.externally_verified)
    except ArenaError as exc:
        raise _http_error(exc) from exc
    return outcome.model_dump()


@app.post("/api/rooms/{room_id}/vote")
async def vote(room_id: str, payload: VoteIn):
    try:
        outcome = await controller.vote(room_id, payload.user_id, payload.problem_id)
    except ArenaError as exc:
        raise _http_error(exc) from exc
    return outcome.model_dump()


@app.post("/api/rooms/{room_id}/solve")
async def solve(room_id: str, payload: SolveAttemptIn):
    try:
        outcome = await controller.solve_attempt(room_id, payload.user_id, payload.solved)
    except ArenaError as exc:
        raise _http_error(exc) from exc
    return outcome.model_dump()


# -- matchmaking ------------------------------------------------------------

@app.post("/api/matchmaking/enqueue")
async def enqueue(payload: EnqueueIn):
    try:
        group = await matchmaker.enqueue(payload.user_id, payload.rating, payload.username)
    except ArenaError as exc:
        raise _http_error(exc) from exc
    if group is None:
        return {"matched": False}
    return {"matched": True, "user_ids": [r.user_id for r in group]}


@app.post("/api/matchmaking/dequeue")
async def dequeue(payload: DequeueIn):
    removed = await matchmaker.dequeue(payload.user_id)
    return {"removed": removed}


@app.get("/api/matchmaking/status/{user_id}")
async def queue_status(user_id: str):
    request = await matchmaker.status(user_id)
    if request is None:
        return {"queued": False}
    return {"queued": True, "request": request.model_dump()}


# -- statistics -------------------------------------------------------------

@app.get("/api/users/{user_id}/stats")
async def user_stats(user_id: str):
    try:
        return await result_store.get_user_stats(user_id)
    except NotFoundError as exc:
        raise _http_error(exc) from exc


@app.get("/api/users/{user_id}/history")
async def user_history(user_id: str, page: int = 1, limit: int = 20):
    try:
        return await result_store.get_history(user_id, page=page, limit=limit)
    except NotFoundError as exc:
        raise _http_error(exc) from exc


@app.get("/api/leaderboard")
async def leaderboard(page: int = 1, limit: int = 50):
    return await result_store.leaderboard(page=page, limit=limit)


# -- admin ------------------------------------------------------------------

@app.post("/api/admin/rooms")
async def register_room(payload: AdminRoomIn, _: None = Depends(require_admin)):
    await room_directory.register(payload.room_id, payload.participants, payload.difficulty)
    return {"ok": True}


@app.post("/api/admin/problems")
async def replace_problems(payload: AdminProblemsIn, _: None = Depends(require_admin)):
    if not payload.problems:
        raise HTTPException(status_code=400, detail="Catalog cannot be empty")
    await problem_source.replace_catalog(payload.problems)
    return {"ok": True, "count": len(payload.problems)}
