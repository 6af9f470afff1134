import fnmatch
import itertools
from datetime import UTC, datetime

import pytest

from studymate.auth.verify import auth_dependency
from studymate.features.matching.cache import ScoreCache, ScoreCacheConfig
from studymate.features.matching.domain import Profile, Relationship, RelationshipStatus
from studymate.features.matching.pipeline.scoring import CompatibilityScorer
from studymate.features.matching.services import RerankingService
from studymate.infrastructure.background import BackgroundTaskRunner


@pytest.fixture
def auth_override():
    def _override():
        return {"sub": "user-123"}

    return _override


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeRedis:
    """In-memory stand-in for RedisClient (same method surface)."""

    def __init__(self):
        self.store: dict[str, str] = {}
        self.ttls: dict[str, int] = {}
        self.healthy = True
        self.info_sections: dict[str, dict] = {}

    async def ping(self) -> bool:
        return self.healthy

    async def get(self, key: str) -> str | None:
        return self.store.get(key)

    async def mget(self, keys: list[str]) -> list[str | None]:
        return [self.store.get(key) for key in keys]

    async def set_with_ttl(self, key: str, value: str, ttl_s: int | None = None) -> bool:
        self.store[key] = value
        if ttl_s:
            self.ttls[key] = ttl_s
        return True

    async def set_many_with_ttl(self, items: dict[str, str], ttl_s: int) -> bool:
        for key, value in items.items():
            await self.set_with_ttl(key, value, ttl_s)
        return True

    async def ttl(self, key: str) -> int | None:
        return self.ttls.get(key)

    async def delete(self, key: str) -> bool:
        self.ttls.pop(key, None)
        return self.store.pop(key, None) is not None

    async def delete_many(self, keys: list[str]) -> int:
        removed = 0
        for key in keys:
            if await self.delete(key):
                removed += 1
        return removed

    async def scan_keys(self, pattern: str, count: int = 500) -> list[str]:
        return [key for key in self.store if fnmatch.fnmatchcase(key, pattern)]

    async def info(self, section: str | None = None) -> dict:
        return self.info_sections.get(section or "all", {})


class InMemoryProfileStore:
    """Profile store over plain dicts; counts candidate queries."""

    def __init__(self, edges: list[Relationship] | None = None):
        self.profiles: dict[str, Profile] = {}
        self.edges: list[Relationship] = edges if edges is not None else []
        self.find_candidates_calls: list[dict] = []

    def add(self, *profiles: Profile) -> None:
        for profile in profiles:
            self.profiles[profile.id] = profile

    async def find_user_by_id(self, user_id: str) -> Profile | None:
        return self.profiles.get(user_id)

    async def find_candidates(self, exclude_ids, limit: int, active_days: int) -> list[Profile]:
        excluded = set(exclude_ids)
        self.find_candidates_calls.append({"exclude_ids": excluded, "limit": limit})
        return [p for p in self.profiles.values() if p.id not in excluded][:limit]

    async def find_related_user_ids(self, user_id: str, statuses) -> set[str]:
        wanted = {RelationshipStatus(s) for s in statuses}
        related = set()
        for edge in self.edges:
            if edge.status not in wanted:
                continue
            if edge.sender_id == user_id:
                related.add(edge.receiver_id)
            elif edge.receiver_id == user_id:
                related.add(edge.sender_id)
        return related

    async def find_active_user_ids(self, active_days: int, limit: int) -> list[str]:
        return list(self.profiles)[:limit]

    async def find_relationship(self, user_a: str, user_b: str) -> Relationship | None:
        for edge in reversed(self.edges):
            if {edge.sender_id, edge.receiver_id} == {user_a, user_b}:
                return edge
        return None


class InMemoryRelationshipStore:
    def __init__(self, edges: list[Relationship]):
        self.edges = edges
        self._ids = itertools.count(1)

    async def create_edge(self, sender_id: str, receiver_id: str, status) -> Relationship:
        edge = Relationship(
            id=f"edge-{next(self._ids)}",
            sender_id=sender_id,
            receiver_id=receiver_id,
            status=RelationshipStatus(status),
            created_at=datetime.now(UTC),
        )
        self.edges.append(edge)
        return edge

    async def update_edge_status(self, edge_id: str, status) -> None:
        for edge in self.edges:
            if edge.id == edge_id:
                edge.status = RelationshipStatus(status)
                return
        raise LookupError(edge_id)


@pytest.fixture
def make_profile():
    def _make(user_id: str, **overrides) -> Profile:
        fields = {
            "university": "State University",
            "major": "Computer Science",
            "year": 2,
            "first_name": user_id.title(),
            "interests": ["AI", "Algorithms"],
            "skills": ["Backend"],
            "preferred_study_time": ["Evening"],
            "languages": ["English"],
        }
        fields.update(overrides)
        return Profile(id=user_id, **fields)

    return _make


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def score_cache(fake_redis, clock):
    return ScoreCache(fake_redis, ScoreCacheConfig(key_prefix="test:"), clock=clock)


@pytest.fixture
def scorer():
    return CompatibilityScorer()


@pytest.fixture
def local_reranker(scorer):
    return RerankingService(scorer, api_key=None)


@pytest.fixture
def task_runner():
    return BackgroundTaskRunner()


@pytest.fixture
def edges():
    return []


@pytest.fixture
def profile_store(edges):
    return InMemoryProfileStore(edges)


@pytest.fixture
def relationship_store(edges):
    return InMemoryRelationshipStore(edges)


@pytest.fixture
def apply_auth_override(auth_override):
    def _apply(app):
        app.dependency_overrides[auth_dependency] = auth_override

    return _apply
