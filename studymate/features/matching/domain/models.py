"""
Domain models for the matching feature.

Lightweight dataclasses shared by the scorer, score cache, candidate
buffers, precomputation jobs and the discovery orchestrator. Serialization
helpers produce plain JSON-safe dicts for the shared cache.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any


class RelationshipStatus(StrEnum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"
    BLOCKED = "BLOCKED"


class SwipeAction(StrEnum):
    LIKE = "LIKE"
    PASS = "PASS"


class JobStatus(StrEnum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class JobPriority(StrEnum):
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"


# Relationship states that hide a candidate at the database layer. REJECTED
# (a pass) is not listed: passed users resurface once the requester's cached
# exclusions are cleared.
DB_EXCLUDED_STATUSES: tuple[RelationshipStatus, ...] = (
    RelationshipStatus.ACCEPTED,
    RelationshipStatus.BLOCKED,
    RelationshipStatus.PENDING,
)


def _parse_datetime(value: Any) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def _unique(values: Any) -> list[str]:
    return list(dict.fromkeys(values or []))


@dataclass(slots=True)
class Profile:
    """Read-only snapshot of a user profile as seen by the matcher."""

    id: str
    university: str = ""
    major: str = ""
    year: int = 1
    first_name: str = ""
    last_name: str = ""
    bio: str | None = None
    avatar: str | None = None
    interests: list[str] = field(default_factory=list)
    skills: list[str] = field(default_factory=list)
    study_goals: list[str] = field(default_factory=list)
    preferred_study_time: list[str] = field(default_factory=list)
    languages: list[str] = field(default_factory=list)
    total_matches: int = 0
    successful_matches: int = 0
    average_rating: float = 0.0
    gpa: float | None = None
    created_at: datetime | None = None
    last_active: datetime | None = None

    def __post_init__(self) -> None:
        self.interests = _unique(self.interests)
        self.skills = _unique(self.skills)
        self.study_goals = _unique(self.study_goals)
        self.preferred_study_time = _unique(self.preferred_study_time)
        self.languages = _unique(self.languages)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["created_at"] = self.created_at.isoformat() if self.created_at else None
        data["last_active"] = self.last_active.isoformat() if self.last_active else None
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Profile:
        known = {name: data[name] for name in cls.__dataclass_fields__ if name in data}
        known["created_at"] = _parse_datetime(known.get("created_at"))
        known["last_active"] = _parse_datetime(known.get("last_active"))
        return cls(**known)


@dataclass(slots=True, frozen=True)
class ScoreBreakdown:
    university_match: float
    major_match: float
    year_compatibility: float
    interests_match: float
    skills_match: float
    study_time_match: float
    language_match: float

    def to_dict(self) -> dict[str, float]:
        return asdict(self)


@dataclass(slots=True, frozen=True)
class MatchScore:
    candidate_id: str
    score: int
    breakdown: ScoreBreakdown


@dataclass(slots=True)
class ScoredCandidate:
    """A candidate profile paired with the score it was ranked by."""

    profile: Profile
    score: int
    reasoning: str | None = None
    breakdown: ScoreBreakdown | None = None
    is_online: bool = False
    distance: str | None = None

    @property
    def id(self) -> str:
        return self.profile.id

    def to_dict(self) -> dict[str, Any]:
        return {
            "profile": self.profile.to_dict(),
            "score": self.score,
            "reasoning": self.reasoning,
            "breakdown": self.breakdown.to_dict() if self.breakdown else None,
            "is_online": self.is_online,
            "distance": self.distance,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ScoredCandidate:
        breakdown = data.get("breakdown")
        return cls(
            profile=Profile.from_dict(data["profile"]),
            score=int(data["score"]),
            reasoning=data.get("reasoning"),
            breakdown=ScoreBreakdown(**breakdown) if breakdown else None,
            is_online=bool(data.get("is_online", False)),
            distance=data.get("distance"),
        )


@dataclass(slots=True)
class RankedCandidate:
    """Single entry of a re-ranking collaborator response."""

    candidate_id: str
    score: float
    reasoning: str


@dataclass(slots=True)
class CachedMatchBatch:
    """Serialized, TTL-bound snapshot of a requester's candidate list."""

    candidates: list[ScoredCandidate]
    timestamp: float
    excluded_ids: list[str]

    def age_seconds(self, now: float) -> float:
        return now - self.timestamp

    def to_dict(self) -> dict[str, Any]:
        return {
            "candidates": [c.to_dict() for c in self.candidates],
            "timestamp": self.timestamp,
            "excludedIds": list(self.excluded_ids),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CachedMatchBatch:
        return cls(
            candidates=[ScoredCandidate.from_dict(c) for c in data.get("candidates", [])],
            timestamp=float(data["timestamp"]),
            excluded_ids=list(data.get("excludedIds", [])),
        )


@dataclass(slots=True)
class MatchBuffer:
    """
    Per-requester ordered candidate list with a read cursor.

    Entries before ``cursor`` have been delivered and are never handed out
    again during the buffer's lifetime. ``delivered_history`` holds ids
    delivered by buffers this one replaced.
    """

    candidates: list[ScoredCandidate] = field(default_factory=list)
    cursor: int = 0
    is_loading: bool = False
    has_more: bool = True
    last_fetch: float = 0.0
    seed_excluded_ids: list[str] = field(default_factory=list)
    processed_ids: set[str] = field(default_factory=set)
    delivered_history: list[str] = field(default_factory=list)

    @property
    def remaining(self) -> int:
        return len(self.candidates) - self.cursor

    def delivered_ids(self) -> list[str]:
        current = [c.id for c in self.candidates[: self.cursor]]
        return list(dict.fromkeys([*self.delivered_history, *current]))

    def buffered_ids(self) -> set[str]:
        return {c.id for c in self.candidates}


@dataclass(slots=True)
class Relationship:
    """Directed like/pass edge between two users (owned by the relationship store)."""

    id: str
    sender_id: str
    receiver_id: str
    status: RelationshipStatus
    created_at: datetime | None = None


@dataclass(slots=True)
class JobMetrics:
    total_users: int = 0
    processed_users: int = 0
    scores_computed: int = 0
    cache_hits: int = 0
    cache_misses: int = 0
    execution_time_ms: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class PrecomputationJob:
    id: str
    user_id: str
    priority: JobPriority = JobPriority.NORMAL
    status: JobStatus = JobStatus.PENDING
    progress: int = 0
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error: str | None = None
    metrics: JobMetrics = field(default_factory=JobMetrics)

    @property
    def is_terminal(self) -> bool:
        return self.status in (JobStatus.COMPLETED, JobStatus.FAILED)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "priority": self.priority.value,
            "status": self.status.value,
            "progress": self.progress,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "error": self.error,
            "metrics": self.metrics.to_dict(),
        }


@dataclass(slots=True)
class Outcome:
    target_id: str
    action: SwipeAction


@dataclass(slots=True)
class OutcomeResult:
    target_id: str
    action: SwipeAction
    success: bool
    match: bool = False
    message: str | None = None
    error: str | None = None


@dataclass(slots=True)
class OutcomeBatchResult:
    results: list[OutcomeResult]
    remaining: int
    refill_triggered: bool

    @property
    def processed(self) -> int:
        return len(self.results)


@dataclass(slots=True)
class DiscoveryResult:
    matches: list[ScoredCandidate]
    total_available: int
    remaining: int
    source: str
    execution_time_ms: float
    excluded_count: int = 0
    message: str | None = None
