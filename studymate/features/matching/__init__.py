"""
Matching feature package.

This vertical slice keeps every layer of the compatibility matching
pipeline co-located: domain models, the scorer, the shared score cache,
per-user candidate buffers, the precomputation job, repositories, services
and the discovery API router.
"""

# Re-export the primary building blocks for easy access.
from .api.router import router as discovery_router  # noqa: F401
from .buffer import BufferConfig, CandidateBufferManager  # noqa: F401
from .cache import ScoreCache, ScoreCacheConfig  # noqa: F401
from .jobs import MatchPrecomputationService, start_match_precomputation_scheduler  # noqa: F401
from .pipeline.scoring import CompatibilityScorer, compatibility_scorer  # noqa: F401
from .services import DiscoveryService, RerankingService  # noqa: F401
