"""
Exceptions raised inside the matching feature.
"""


class MatchingError(Exception):
    """Base exception for matching pipeline errors."""

    def __init__(self, message: str, operation: str | None = None, recoverable: bool = True):
        super().__init__(message)
        self.operation = operation
        self.recoverable = recoverable


class ProfileNotFoundError(MatchingError):
    """The requester (or job target) has no profile."""

    def __init__(self, user_id: str, operation: str | None = None):
        super().__init__(f"User {user_id} not found", operation=operation, recoverable=False)
        self.user_id = user_id


class RerankingError(MatchingError):
    """The re-ranking collaborator failed or returned unusable output."""


class PrecomputationJobError(MatchingError):
    """Raised for precomputation job lookups and failures."""
