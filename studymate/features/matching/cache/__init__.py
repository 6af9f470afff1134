"""
Shared-cache layer for pairwise scores and candidate batches.
"""

from .score_cache import ScoreCache, ScoreCacheConfig, exclusion_digest

__all__ = ["ScoreCache", "ScoreCacheConfig", "exclusion_digest"]
