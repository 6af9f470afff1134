"""
Compatibility scoring package.

Provides the pure seven-factor scorer used by discovery and by the
precomputation jobs.
"""

from .service import CompatibilityScorer, compatibility_scorer

__all__ = ["CompatibilityScorer", "compatibility_scorer"]
