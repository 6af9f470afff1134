"""
Request-time services for the matching feature.
"""

from .discovery_service import (
    NO_MORE_USERS_MESSAGE,
    DiscoveryConfig,
    DiscoveryService,
)
from .reranker import RerankingService

__all__ = [
    "NO_MORE_USERS_MESSAGE",
    "DiscoveryConfig",
    "DiscoveryService",
    "RerankingService",
]
