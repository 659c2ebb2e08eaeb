from pydantic import BaseModel
from typing import List, Optional
from .models import Participant, Problem, RosterEntry, SessionStatus


class ReadyIn(BaseModel):
    user_id: str
    ready: bool = True
    externally_verified: bool = False


class VoteIn(BaseModel):
    user_id: str
    problem_id: str


class SolveAttemptIn(BaseModel):
    user_id: str
    solved: bool


class EnqueueIn(BaseModel):
    user_id: str
    rating: int
    username: Optional[str] = None


class DequeueIn(BaseModel):
    user_id: str


class AdminRoomIn(BaseModel):
    room_id: str
    participants: List[RosterEntry]
    difficulty: Optional[str] = None


class AdminProblemsIn(BaseModel):
    problems: List[Problem]


class PublicSessionOut(BaseModel):
    id: str
    room_id: str
    status: SessionStatus
    participants: List[Participant]
    problem_options: List[Problem]
    votes_count: int
    current_problem: Optional[Problem]
    voting_deadline: float | None
    start_time: float | None
    end_time: float | None
