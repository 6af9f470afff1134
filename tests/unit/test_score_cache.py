"""
Tests for the Redis-backed score cache (against the in-memory FakeRedis).
"""

import json

import pytest

from studymate.features.matching.cache import exclusion_digest
from studymate.features.matching.domain import ScoredCandidate


def _candidates(make_profile, *ids, score=70):
    return [ScoredCandidate(profile=make_profile(i), score=score) for i in ids]


def test_exclusion_digest_ignores_order_and_duplicates():
    assert exclusion_digest(["b", "a", "a"]) == exclusion_digest(["a", "b"])
    assert exclusion_digest(["a"]) != exclusion_digest(["a", "b"])


def test_score_key_is_order_independent(score_cache):
    assert score_cache.score_key("u2", "u1") == score_cache.score_key("u1", "u2") == "test:score:u1:u2"


@pytest.mark.asyncio
async def test_score_roundtrip_either_direction(score_cache):
    await score_cache.cache_score("alice", "bob", 87)

    assert await score_cache.get_score("bob", "alice") == 87
    assert await score_cache.get_score("alice", "carol") is None


@pytest.mark.asyncio
async def test_batch_scores_skip_misses(score_cache, fake_redis):
    ok = await score_cache.batch_cache_scores([("a", "b", 50), ("a", "c", 60)])

    found = await score_cache.batch_get_scores([("a", "b"), ("c", "a"), ("a", "z")])

    assert ok is True
    assert found == {("a", "b"): 50, ("c", "a"): 60}
    assert fake_redis.ttls["test:score:a:b"] == score_cache.config.score_ttl_s


@pytest.mark.asyncio
async def test_malformed_score_is_treated_as_miss(score_cache, fake_redis):
    fake_redis.store[score_cache.score_key("a", "b")] = "not-a-number"

    assert await score_cache.get_score("a", "b") is None


@pytest.mark.asyncio
async def test_candidate_batch_is_keyed_by_exclusion_set(score_cache, make_profile):
    await score_cache.cache_candidate_batch("me", ["x", "y"], _candidates(make_profile, "c1", "c2"))

    batch = await score_cache.get_candidate_batch("me", ["y", "x", "x"])
    other = await score_cache.get_candidate_batch("me", ["x"])

    assert [c.id for c in batch.candidates] == ["c1", "c2"]
    assert batch.excluded_ids == ["x", "y"]
    assert other is None


@pytest.mark.asyncio
async def test_stale_batch_is_not_returned(score_cache, make_profile, clock):
    await score_cache.cache_candidate_batch("me", [], _candidates(make_profile, "c1"))

    clock.advance(301)
    assert await score_cache.get_candidate_batch("me", [], max_age_s=300) is None
    # still within the batch TTL, so the entry survives for other readers
    assert await score_cache.get_candidate_batch("me", []) is not None

    clock.advance(score_cache.config.batch_ttl_s)
    assert await score_cache.get_candidate_batch("me", []) is None
    assert await score_cache.redis.scan_keys("test:matches:me:*") == []


@pytest.mark.asyncio
async def test_add_exclusion_updates_every_batch(score_cache, make_profile, fake_redis):
    await score_cache.cache_candidate_batch("me", [], _candidates(make_profile, "c1", "c2"))
    await score_cache.cache_candidate_batch("me", ["z"], _candidates(make_profile, "c2", "c3"))
    fake_redis.ttls[score_cache.batch_key("me", [])] = 120

    updated = await score_cache.add_exclusion("me", "c2")

    first = await score_cache.get_candidate_batch("me", [])
    second = await score_cache.get_candidate_batch("me", ["z"])
    assert updated == 2
    assert [c.id for c in first.candidates] == ["c1"]
    assert [c.id for c in second.candidates] == ["c3"]
    assert "c2" in first.excluded_ids
    assert fake_redis.ttls[score_cache.batch_key("me", [])] == 120


@pytest.mark.asyncio
async def test_malformed_batch_is_dropped(score_cache, fake_redis):
    key = score_cache.batch_key("me", [])
    fake_redis.store[key] = json.dumps({"candidates": []})

    assert await score_cache.get_candidate_batch("me", []) is None
    assert key not in fake_redis.store


@pytest.mark.asyncio
async def test_profile_roundtrip(score_cache, make_profile):
    profile = make_profile("alice", gpa=3.7)

    await score_cache.cache_profile("alice", profile)

    assert await score_cache.get_profile("alice") == profile
    assert await score_cache.get_profile("bob") is None


@pytest.mark.asyncio
async def test_precompute_marker(score_cache, clock):
    assert await score_cache.get_last_precomputed("alice") is None

    await score_cache.mark_precomputed("alice")

    assert await score_cache.get_last_precomputed("alice") == clock.now


@pytest.mark.asyncio
async def test_invalidation_is_scoped(score_cache, make_profile):
    await score_cache.cache_candidate_batch("me", [], _candidates(make_profile, "c1"))
    await score_cache.cache_candidate_batch("other", [], _candidates(make_profile, "c1"))
    await score_cache.batch_cache_scores([("me", "c1", 10), ("c2", "me", 20), ("c1", "c2", 30)])

    assert await score_cache.invalidate_user_matches("me") == 1
    assert await score_cache.invalidate_scores_involving("me") == 2

    assert await score_cache.get_candidate_batch("other", []) is not None
    assert await score_cache.get_score("c1", "c2") == 30


@pytest.mark.asyncio
async def test_clear_only_touches_prefix(score_cache, fake_redis):
    fake_redis.store["unrelated:key"] = "keep"
    await score_cache.cache_score("a", "b", 10)
    await score_cache.mark_precomputed("a")

    assert await score_cache.clear() == 2
    assert fake_redis.store == {"unrelated:key": "keep"}


@pytest.mark.asyncio
async def test_cache_stats_from_info(score_cache, fake_redis):
    fake_redis.info_sections = {
        "stats": {"keyspace_hits": 30, "keyspace_misses": 10},
        "memory": {"used_memory_human": "1.5M"},
        "keyspace": {"db0": {"keys": 42, "expires": 40}},
    }

    stats = await score_cache.get_cache_stats()

    assert stats == {"total_keys": 42, "memory_usage": "1.5M", "hit_rate": 0.75, "miss_rate": 0.25}
