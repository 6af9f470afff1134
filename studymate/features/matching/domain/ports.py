"""
Collaborator contracts consumed by the matching pipeline.

Postgres-backed implementations live in ``repository``; tests inject
in-memory stand-ins that satisfy the same protocols.
"""

from collections.abc import Awaitable, Callable, Iterable, Sequence
from typing import Protocol

from .models import Profile, RankedCandidate, Relationship, RelationshipStatus, ScoredCandidate


class ProfileStore(Protocol):
    async def find_user_by_id(self, user_id: str) -> Profile | None: ...

    async def find_candidates(
        self, exclude_ids: Iterable[str], limit: int, active_days: int
    ) -> list[Profile]: ...

    async def find_related_user_ids(
        self, user_id: str, statuses: Sequence[RelationshipStatus]
    ) -> set[str]: ...

    async def find_active_user_ids(self, active_days: int, limit: int) -> list[str]: ...

    async def find_relationship(self, user_a: str, user_b: str) -> Relationship | None: ...


class RelationshipStore(Protocol):
    async def create_edge(
        self, sender_id: str, receiver_id: str, status: RelationshipStatus
    ) -> Relationship: ...

    async def update_edge_status(self, edge_id: str, status: RelationshipStatus) -> None: ...


class Reranker(Protocol):
    async def rank(
        self, requester: Profile, candidates: Sequence[Profile]
    ) -> list[RankedCandidate]: ...


# (user_id, exclude_ids, limit) -> next page of scored candidates
CandidateFetcher = Callable[[str, list[str], int], Awaitable[list[ScoredCandidate]]]
