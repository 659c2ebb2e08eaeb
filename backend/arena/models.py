from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from .utils import now_ts


class Problem(BaseModel):
    id: str
    title: str
    url: str
    difficulty: str = "Medium"


class RosterEntry(BaseModel):
    user_id: str
    username: str
    rating: int


class Participant(BaseModel):
    user_id: str
    username: str
    rating_at_start: int
    ready: bool = False
    externally_verified: bool = False
    solved: bool = False
    solve_duration: Optional[float] = None  # seconds since start_time
    rank: Optional[int] = None
    points: int = 0


# States: awaiting_ready -> voting -> in_progress -> finished
# awaiting_ready -> aborted is the only other exit.
class SessionStatus(str, Enum):
    AWAITING_READY = "awaiting_ready"
    VOTING = "voting"
    IN_PROGRESS = "in_progress"
    FINISHED = "finished"
    ABORTED = "aborted"


class Session(BaseModel):
    id: str
    room_id: str
    status: SessionStatus = SessionStatus.AWAITING_READY
    participants: List[Participant] = Field(default_factory=list)
    problem_options: List[Problem] = Field(default_factory=list)
    votes: Dict[str, str] = Field(default_factory=dict)
    current_problem: Optional[Problem] = None
    difficulty: str = "Medium"
    voting_deadline: Optional[float] = None
    start_time: Optional[float] = None
    end_time: Optional[float] = None
    created_at: float = Field(default_factory=now_ts)
    finished_at: Optional[float] = None

    def participant(self, user_id: str) -> Optional[Participant]:
        for p in self.participants:
            if p.user_id == user_id:
                return p
        return None

    def option(self, problem_id: str) -> Optional[Problem]:
        for problem in self.problem_options:
            if problem.id == problem_id:
                return problem
        return None


class MatchRequest(BaseModel):
    user_id: str
    username: str
    rating: int
    enqueue_time: float
    bracket: int


class EventOutcome(BaseModel):
    """What happened to a participant event that was not rejected."""

    accepted: bool
    duplicate: bool = False
    status: SessionStatus


class ParticipantResult(BaseModel):
    user_id: str
    username: str
    rating_before: int
    rating_delta: int
    rating_after: int
    rank: int
    points: int
    solved: bool
    solve_duration: Optional[float] = None


class FinishedSessionRecord(BaseModel):
    session_id: str
    room_id: str
    problem_id: Optional[str] = None
    start_time: Optional[float] = None
    end_time: Optional[float] = None
    finished_at: float
    winner_id: Optional[str] = None
    participant_ids: List[str] = Field(default_factory=list)
    participants: List[ParticipantResult] = Field(default_factory=list)

    def result_for(self, user_id: str) -> Optional[ParticipantResult]:
        for result in self.participants:
            if result.user_id == user_id:
                return result
        return None
