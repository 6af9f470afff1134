from datetime import UTC, datetime
from unittest.mock import AsyncMock

import pytest

from studymate.db.helpers import DatabaseError, with_db_retry
from studymate.features.matching.domain import DB_EXCLUDED_STATUSES, RelationshipStatus
from studymate.features.matching.repository import (
    ProfileRepository,
    RelationshipRepository,
    RelationshipRepositoryError,
    row_to_profile,
)

PROFILE_ROW = {
    "id": "7f0c",
    "first_name": "Ada",
    "last_name": "L",
    "university": "State University",
    "major": "Mathematics",
    "year": 3,
    "bio": None,
    "avatar": None,
    "interests": ["Algebra", "Algebra", "Logic"],
    "skills": None,
    "study_goals": [],
    "preferred_study_time": ["Morning"],
    "languages": ["English"],
    "total_matches": 4,
    "successful_matches": 2,
    "average_rating": "4.5",
    "gpa": None,
    "created_at": datetime(2025, 9, 1, tzinfo=UTC),
    "last_active": datetime(2026, 1, 1, tzinfo=UTC),
}


def test_row_to_profile_normalises_nulls():
    profile = row_to_profile(PROFILE_ROW)

    assert profile.id == "7f0c"
    assert profile.interests == ["Algebra", "Logic"]
    assert profile.skills == []
    assert profile.average_rating == 4.5
    assert profile.gpa is None
    assert row_to_profile(None) is None


@pytest.mark.asyncio
async def test_find_candidates_passes_exclusions(monkeypatch):
    fetch_all = AsyncMock(return_value=[PROFILE_ROW])
    monkeypatch.setattr(
        "studymate.features.matching.repository.profile_repository.fetch_all", fetch_all
    )
    repo = ProfileRepository(pool=object())

    profiles = await repo.find_candidates(["me", "x"], limit=30, active_days=60)

    assert [p.id for p in profiles] == ["7f0c"]
    _, query, params = fetch_all.await_args.args
    assert "is_profile_public" in query
    assert params == (["me", "x"], 60, 30)


@pytest.mark.asyncio
async def test_find_related_user_ids_uses_status_values(monkeypatch):
    fetch_all = AsyncMock(return_value=[{"partner_id": "a"}, {"partner_id": "b"}])
    monkeypatch.setattr(
        "studymate.features.matching.repository.profile_repository.fetch_all", fetch_all
    )
    repo = ProfileRepository(pool=object())

    related = await repo.find_related_user_ids("me", DB_EXCLUDED_STATUSES)

    assert related == {"a", "b"}
    params = fetch_all.await_args.args[2]
    assert params[1] == ["ACCEPTED", "BLOCKED", "PENDING"]
    assert "REJECTED" not in params[1]


@pytest.mark.asyncio
async def test_find_relationship_maps_row(monkeypatch):
    fetch_one = AsyncMock(
        return_value={"id": 9, "sender_id": "them", "receiver_id": "me", "status": "PENDING", "created_at": None}
    )
    monkeypatch.setattr(
        "studymate.features.matching.repository.profile_repository.fetch_one", fetch_one
    )

    edge = await ProfileRepository(pool=object()).find_relationship("me", "them")

    assert edge.id == "9"
    assert edge.status == RelationshipStatus.PENDING
    assert fetch_one.await_args.args[2] == ("me", "them", "them", "me")


@pytest.mark.asyncio
async def test_create_edge_returns_relationship(monkeypatch):
    fetch_one = AsyncMock(
        return_value={"id": "e1", "sender_id": "me", "receiver_id": "c1", "status": "REJECTED", "created_at": None}
    )
    monkeypatch.setattr(
        "studymate.features.matching.repository.relationship_repository.fetch_one", fetch_one
    )

    edge = await RelationshipRepository(pool=object()).create_edge("me", "c1", RelationshipStatus.REJECTED)

    assert edge.status == RelationshipStatus.REJECTED
    assert fetch_one.await_args.args[2] == ("me", "c1", "REJECTED")


@pytest.mark.asyncio
async def test_update_missing_edge_raises(monkeypatch):
    monkeypatch.setattr(
        "studymate.features.matching.repository.relationship_repository.execute_query",
        AsyncMock(return_value=0),
    )

    with pytest.raises(RelationshipRepositoryError):
        await RelationshipRepository(pool=object()).update_edge_status("e1", RelationshipStatus.ACCEPTED)


@pytest.mark.asyncio
async def test_retry_recovers_from_transient_errors():
    calls = AsyncMock(side_effect=[DatabaseError("blip"), "ok"])

    @with_db_retry(max_retries=2, base_delay=0)
    async def operation():
        return await calls()

    assert await operation() == "ok"
    assert calls.await_count == 2


@pytest.mark.asyncio
async def test_retry_gives_up_on_permanent_errors():
    calls = AsyncMock(side_effect=DatabaseError("syntax", recoverable=False))

    @with_db_retry(max_retries=2, base_delay=0)
    async def operation():
        return await calls()

    with pytest.raises(DatabaseError):
        await operation()
    assert calls.await_count == 1
