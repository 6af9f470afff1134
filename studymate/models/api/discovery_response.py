# studymate/models/api/discovery_response.py
"""
Discovery API response models.
Used by routes for output formatting; serialized with camelCase aliases.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from studymate.features.matching.domain import (
    OutcomeResult,
    PrecomputationJob,
    ScoredCandidate,
)


class CamelResponse(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CandidateResponse(CamelResponse):
    """A ranked candidate as shown on the discovery card."""

    id: str
    first_name: str = ""
    last_name: str = ""
    avatar: str | None = None
    bio: str | None = None
    university: str = ""
    major: str = ""
    year: int = 1
    gpa: float | None = None
    interests: list[str] = Field(default_factory=list)
    skills: list[str] = Field(default_factory=list)
    study_goals: list[str] = Field(default_factory=list)
    preferred_study_time: list[str] = Field(default_factory=list)
    languages: list[str] = Field(default_factory=list)
    total_matches: int = 0
    successful_matches: int = 0
    average_rating: float = 0.0
    created_at: datetime | None = None
    match_score: int = Field(..., ge=0, le=100, description="Compatibility score 0-100")
    reasoning: str | None = None
    breakdown: dict[str, float] | None = None
    distance: str | None = None
    is_online: bool = False

    @classmethod
    def from_candidate(cls, candidate: ScoredCandidate) -> "CandidateResponse":
        profile = candidate.profile
        return cls(
            id=profile.id,
            first_name=profile.first_name,
            last_name=profile.last_name,
            avatar=profile.avatar,
            bio=profile.bio,
            university=profile.university,
            major=profile.major,
            year=profile.year,
            gpa=profile.gpa,
            interests=profile.interests,
            skills=profile.skills,
            study_goals=profile.study_goals,
            preferred_study_time=profile.preferred_study_time,
            languages=profile.languages,
            total_matches=profile.total_matches,
            successful_matches=profile.successful_matches,
            average_rating=profile.average_rating,
            created_at=profile.created_at,
            match_score=candidate.score,
            reasoning=candidate.reasoning,
            breakdown=candidate.breakdown.to_dict() if candidate.breakdown else None,
            distance=candidate.distance,
            is_online=candidate.is_online,
        )


class SmartMatchesResponse(CamelResponse):
    matches: list[CandidateResponse]
    total_available: int
    remaining: int
    source: str = Field(..., description="cache, miss or empty")
    execution_time_ms: float
    excluded_count: int = 0
    message: str | None = None


class ActionResultResponse(CamelResponse):
    target_user_id: str
    action: str
    success: bool
    match: bool = False
    message: str | None = None
    error: str | None = None

    @classmethod
    def from_result(cls, result: OutcomeResult) -> "ActionResultResponse":
        return cls(
            target_user_id=result.target_id,
            action=result.action.value,
            success=result.success,
            match=result.match,
            message=result.message,
            error=result.error,
        )


class SmartMatchActionResponse(CamelResponse):
    success: bool
    results: list[ActionResultResponse]
    processed: int
    remaining: int
    prefetch_triggered: bool


class BufferStatusResponse(CamelResponse):
    user_id: str
    initialized: bool
    remaining: int = 0
    total: int = 0
    cursor: int = 0
    is_loading: bool = False
    has_more: bool = False
    processed: int = 0
    refill_in_flight: bool = False


class PrecomputationJobResponse(CamelResponse):
    id: str
    user_id: str
    priority: str
    status: str
    progress: int
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error: str | None = None
    metrics: dict[str, Any]

    @classmethod
    def from_job(cls, job: PrecomputationJob) -> "PrecomputationJobResponse":
        return cls(
            id=job.id,
            user_id=job.user_id,
            priority=job.priority.value,
            status=job.status.value,
            progress=job.progress,
            created_at=job.created_at,
            started_at=job.started_at,
            completed_at=job.completed_at,
            error=job.error,
            metrics=job.metrics.to_dict(),
        )


class PrecomputeScheduledResponse(CamelResponse):
    job_id: str
    priority: str


class PrecomputeCancelResponse(CamelResponse):
    job_id: str
    cancelled: bool
