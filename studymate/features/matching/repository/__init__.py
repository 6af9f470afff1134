"""
Postgres collaborators for the matching feature.
"""

from .profile_repository import ProfileRepository, row_to_profile, row_to_relationship
from .relationship_repository import RelationshipRepository, RelationshipRepositoryError

__all__ = [
    "ProfileRepository",
    "RelationshipRepository",
    "RelationshipRepositoryError",
    "row_to_profile",
    "row_to_relationship",
]
