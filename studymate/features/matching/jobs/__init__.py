"""
Background jobs for the matching feature.
"""

from .precomputation_job import (
    MatchPrecomputationService,
    PrecomputationConfig,
    run_match_precomputation_once,
    seconds_until_next_run,
    start_match_precomputation_scheduler,
)

__all__ = [
    "MatchPrecomputationService",
    "PrecomputationConfig",
    "run_match_precomputation_once",
    "seconds_until_next_run",
    "start_match_precomputation_scheduler",
]
