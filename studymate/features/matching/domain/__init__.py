"""
Domain subpackage for the matching feature.
"""

from .exceptions import (
    MatchingError,
    PrecomputationJobError,
    ProfileNotFoundError,
    RerankingError,
)
from .models import (
    DB_EXCLUDED_STATUSES,
    CachedMatchBatch,
    DiscoveryResult,
    JobMetrics,
    JobPriority,
    JobStatus,
    MatchBuffer,
    MatchScore,
    Outcome,
    OutcomeBatchResult,
    OutcomeResult,
    PrecomputationJob,
    Profile,
    RankedCandidate,
    Relationship,
    RelationshipStatus,
    ScoreBreakdown,
    ScoredCandidate,
    SwipeAction,
)

__all__ = [
    "DB_EXCLUDED_STATUSES",
    "CachedMatchBatch",
    "DiscoveryResult",
    "JobMetrics",
    "JobPriority",
    "JobStatus",
    "MatchBuffer",
    "MatchScore",
    "MatchingError",
    "Outcome",
    "OutcomeBatchResult",
    "OutcomeResult",
    "PrecomputationJob",
    "PrecomputationJobError",
    "Profile",
    "ProfileNotFoundError",
    "RankedCandidate",
    "Relationship",
    "RelationshipStatus",
    "RerankingError",
    "ScoreBreakdown",
    "ScoredCandidate",
    "SwipeAction",
]
