"""
Tests for the match precomputation service and its scheduling helpers.
"""

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from studymate.features.matching.domain import JobPriority, JobStatus, PrecomputationJobError
from studymate.features.matching.jobs import (
    MatchPrecomputationService,
    PrecomputationConfig,
    run_match_precomputation_once,
    seconds_until_next_run,
)


@pytest.fixture
def service(profile_store, score_cache, scorer, task_runner, clock):
    config = PrecomputationConfig(
        sub_batch_size=2,
        sub_batch_delay_s=0.0,
        batch_delay_s=0.0,
        normal_delay_s=0.0,
        low_delay_s=0.0,
    )
    return MatchPrecomputationService(
        profile_store, score_cache, scorer, task_runner, config, clock=clock
    )


@pytest.fixture
def population(profile_store, make_profile):
    profile_store.add(
        make_profile("me"),
        make_profile("c1"),
        make_profile("c2", major="Biology"),
        make_profile("c3", year=4),
    )
    return profile_store


@pytest.mark.asyncio
async def test_high_priority_job_scores_every_candidate(service, population, score_cache, clock):
    job_id = await service.schedule_precomputation("me", JobPriority.HIGH)
    await service.wait_for_jobs([job_id])

    job = service.get_job_status(job_id)
    assert job.status == JobStatus.COMPLETED
    assert job.progress == 100
    assert job.metrics.total_users == 3
    assert job.metrics.scores_computed == 3
    assert job.metrics.cache_misses == 3
    assert await score_cache.get_score("c1", "me") == 100
    assert await score_cache.get_last_precomputed("me") == clock.now


@pytest.mark.asyncio
async def test_cached_pairs_are_not_rescored(service, population, score_cache):
    await score_cache.cache_score("me", "c2", 12)

    job_id = await service.schedule_precomputation("me", JobPriority.HIGH)
    await service.wait_for_jobs([job_id])

    job = service.get_job_status(job_id)
    assert job.metrics.cache_hits == 1
    assert job.metrics.scores_computed == 2
    assert await score_cache.get_score("me", "c2") == 12


@pytest.mark.asyncio
async def test_missing_profile_fails_job(service):
    job_id = await service.schedule_precomputation("ghost", JobPriority.HIGH)
    await service.wait_for_jobs([job_id])

    job = service.get_job_status(job_id)
    assert job.status == JobStatus.FAILED
    assert job.error == "User ghost not found"
    assert job.completed_at is not None


@pytest.mark.asyncio
async def test_pending_job_can_be_cancelled(service, population, profile_store):
    service.config.normal_delay_s = 60.0
    job_id = await service.schedule_precomputation("me", JobPriority.NORMAL)

    assert service.cancel_job(job_id) is True
    assert service.cancel_job(job_id) is False
    await service.wait_for_jobs()

    job = service.get_job_status(job_id)
    assert job.status == JobStatus.FAILED
    assert job.error == "Cancelled by user"
    assert profile_store.find_candidates_calls == []


@pytest.mark.asyncio
async def test_needs_recomputation_tracks_marker_age(service, score_cache, clock):
    assert await service.needs_recomputation("me") is True

    await score_cache.mark_precomputed("me")
    assert await service.needs_recomputation("me") is False

    clock.advance(timedelta(days=8).total_seconds())
    assert await service.needs_recomputation("me") is True


@pytest.mark.asyncio
async def test_batch_skips_fresh_users(service, population, score_cache):
    await score_cache.mark_precomputed("c1")

    job_ids = await service.run_batch_precomputation(JobPriority.HIGH)
    await service.wait_for_jobs(job_ids)

    assert sorted(service.get_job_status(j).user_id for j in job_ids) == ["c2", "c3", "me"]
    stats = service.get_performance_stats()
    assert stats["completed_jobs"] == 3
    assert stats["average_execution_time_ms"] >= 0
    assert service.last_run_time is not None


@pytest.mark.asyncio
async def test_run_once_requires_healthy_cache(service, fake_redis):
    fake_redis.healthy = False

    with pytest.raises(PrecomputationJobError):
        await run_match_precomputation_once(service)


@pytest.mark.asyncio
async def test_run_once_reports_cycle_stats(service, population):
    stats = await run_match_precomputation_once(service)

    assert stats["jobs_scheduled"] == 4
    assert stats["completed_jobs"] == 4
    assert stats["jobs_cleaned"] == 0


@pytest.mark.asyncio
async def test_cleanup_drops_expired_jobs(service):
    job_id = await service.schedule_precomputation("ghost", JobPriority.HIGH)
    await service.wait_for_jobs([job_id])
    service.get_job_status(job_id).completed_at = datetime.now(UTC) - timedelta(hours=25)

    assert service.cleanup_completed_jobs() == 1
    assert service.get_job_status(job_id) is None


def test_health_check_flags_overdue_sweeps(service):
    assert service.health_check()["healthy"] is True

    service.last_run_time = datetime.now(UTC) - timedelta(days=2)
    health = service.health_check()

    assert health["healthy"] is False
    assert health["warning"].startswith("Precomputation overdue by")


@pytest.mark.parametrize(
    "now, expected",
    [
        (datetime(2026, 1, 1, 13, 30, tzinfo=UTC), 30 * 60),
        (datetime(2026, 1, 1, 14, 0, tzinfo=UTC), 8 * 3600),
        (datetime(2026, 1, 1, 23, 0, tzinfo=UTC), 3 * 3600),
    ],
)
def test_seconds_until_next_run(now, expected):
    assert seconds_until_next_run(now, (2, 14, 22)) == expected


def test_seconds_until_next_run_needs_hours():
    with pytest.raises(ValueError):
        seconds_until_next_run(datetime(2026, 1, 1, tzinfo=UTC), [])


@pytest.mark.asyncio
async def test_get_all_jobs_lists_every_job(service, population):
    first = await service.schedule_precomputation("me", JobPriority.HIGH)
    second = await service.schedule_precomputation("c1", JobPriority.LOW)
    await service.wait_for_jobs()

    assert {job.id for job in service.get_all_jobs()} == {first, second}
    assert service.get_job_status(second).priority == JobPriority.LOW


@pytest.mark.asyncio
async def test_scheduling_sweeps_expired_jobs(service, population, clock):
    stale = await service.schedule_precomputation("ghost", JobPriority.HIGH)
    await service.wait_for_jobs([stale])
    service.get_job_status(stale).completed_at = datetime.now(UTC) - timedelta(hours=25)

    clock.advance(service.config.cleanup_interval_s)
    fresh = await service.schedule_precomputation("me", JobPriority.HIGH)
    await service.wait_for_jobs([fresh])

    assert service.get_job_status(stale) is None
    assert service.get_job_status(fresh).status == JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_concurrent_jobs_are_capped(population, score_cache, scorer, task_runner, clock, monkeypatch):
    config = PrecomputationConfig(max_concurrent_jobs=2, sub_batch_delay_s=0.0)
    service = MatchPrecomputationService(
        population, score_cache, scorer, task_runner, config, clock=clock
    )
    observed = []
    find_candidates = population.find_candidates

    async def slow_find_candidates(*args, **kwargs):
        observed.append(service.get_performance_stats()["processing_jobs"])
        await asyncio.sleep(0.01)
        return await find_candidates(*args, **kwargs)

    monkeypatch.setattr(population, "find_candidates", slow_find_candidates)

    job_ids = [
        await service.schedule_precomputation(user_id, JobPriority.HIGH)
        for user_id in ("me", "c1", "c2", "c3")
    ]
    await service.wait_for_jobs(job_ids)

    assert max(observed) == 2
    assert len(observed) == 4
    assert all(service.get_job_status(j).status == JobStatus.COMPLETED for j in job_ids)
