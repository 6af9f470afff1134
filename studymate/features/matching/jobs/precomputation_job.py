"""
Match precomputation job.

Walks the active-user population, finds users whose cached pairwise scores
are stale and runs bounded-concurrency jobs that score each of them against
a large candidate pool, writing results into the shared score cache so the
request path mostly hits warm entries.
"""

import asyncio
import math
import time
import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

from studymate.features.matching.cache import ScoreCache
from studymate.features.matching.domain import (
    JobPriority,
    JobStatus,
    PrecomputationJob,
    PrecomputationJobError,
    ProfileNotFoundError,
)
from studymate.features.matching.domain.ports import ProfileStore
from studymate.features.matching.pipeline.scoring import CompatibilityScorer
from studymate.infrastructure.background import BackgroundTaskRunner
from studymate.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

CANCELLED_MESSAGE = "Cancelled by user"


@dataclass(slots=True)
class PrecomputationConfig:
    batch_size: int = 100
    batch_delay_s: float = 5.0
    max_concurrent_jobs: int = 3
    staleness_days: float = 7
    active_user_days: int = 30
    candidate_active_days: int = 60
    active_user_limit: int = 1000
    candidate_limit: int = 5000
    sub_batch_size: int = 50
    sub_batch_delay_s: float = 0.1
    normal_delay_s: float = 60.0
    low_delay_s: float = 300.0
    job_retention_hours: float = 24
    cleanup_interval_s: float = 3600.0
    schedule_hours: tuple[int, ...] = field(default_factory=lambda: (2, 14, 22))

    def start_delay(self, priority: JobPriority) -> float:
        if priority == JobPriority.HIGH:
            return 0.0
        if priority == JobPriority.NORMAL:
            return self.normal_delay_s
        return self.low_delay_s


class MatchPrecomputationService:
    """Schedules, runs and tracks precomputation jobs in this process."""

    def __init__(
        self,
        profile_store: ProfileStore,
        cache: ScoreCache,
        scorer: CompatibilityScorer,
        task_runner: BackgroundTaskRunner,
        config: PrecomputationConfig | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.profile_store = profile_store
        self.cache = cache
        self.scorer = scorer
        self.task_runner = task_runner
        self.config = config or PrecomputationConfig()
        self._clock = clock

        self._jobs: dict[str, PrecomputationJob] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._semaphore = asyncio.Semaphore(self.config.max_concurrent_jobs)
        self.last_run_time: datetime | None = None
        self._last_cleanup = 0.0

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------
    async def schedule_precomputation(
        self, user_id: str, priority: JobPriority = JobPriority.NORMAL
    ) -> str:
        """
        Register a job for ``user_id`` and dispatch it.

        High priority jobs start immediately (subject to the concurrency cap);
        normal and low priority jobs are staggered by a start delay and stay
        ``pending`` (and cancellable) until then.

        Returns:
            str: The new job id
        """
        priority = JobPriority(priority)
        if self._clock() - self._last_cleanup >= self.config.cleanup_interval_s:
            self.cleanup_completed_jobs()

        job_id = f"precomp_{user_id}_{int(self._clock() * 1000)}_{uuid.uuid4().hex[:8]}"
        job = PrecomputationJob(id=job_id, user_id=user_id, priority=priority)
        self._jobs[job_id] = job

        task = self.task_runner.submit(
            lambda: self._run_job(job_id),
            name=f"precompute:{job_id}",
            delay_s=self.config.start_delay(priority),
        )
        if task is None:
            self._finish(job, JobStatus.FAILED, error="Task runner unavailable")
        else:
            self._tasks[job_id] = task
            task.add_done_callback(lambda _: self._tasks.pop(job_id, None))

        logger.info(
            "Precomputation job scheduled",
            job_id=job_id,
            user_id=user_id,
            priority=priority.value,
        )
        return job_id

    async def needs_recomputation(self, user_id: str) -> bool:
        last_run = await self.cache.get_last_precomputed(user_id)
        if last_run is None:
            return True
        days_since = (self._clock() - last_run) / 86400
        return days_since >= self.config.staleness_days

    async def run_batch_precomputation(
        self, priority: JobPriority = JobPriority.NORMAL
    ) -> list[str]:
        """Schedule jobs for every active user whose precomputed scores are stale."""
        self.last_run_time = datetime.now(UTC)
        user_ids = await self.profile_store.find_active_user_ids(
            self.config.active_user_days, self.config.active_user_limit
        )
        logger.info("Starting batch precomputation", active_users=len(user_ids))

        job_ids: list[str] = []
        batch_size = max(self.config.batch_size, 1)
        for start in range(0, len(user_ids), batch_size):
            for user_id in user_ids[start : start + batch_size]:
                if await self.needs_recomputation(user_id):
                    job_ids.append(await self.schedule_precomputation(user_id, priority))

            if start + batch_size < len(user_ids):
                await asyncio.sleep(self.config.batch_delay_s)

        logger.info("Batch precomputation scheduled", jobs_scheduled=len(job_ids))
        return job_ids

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------
    async def _run_job(self, job_id: str) -> None:
        job = self._jobs.get(job_id)
        if job is None or job.status != JobStatus.PENDING:
            return

        async with self._semaphore:
            # may have been cancelled while waiting for a slot
            if job.status != JobStatus.PENDING:
                return
            await self._execute(job)

    async def _execute(self, job: PrecomputationJob) -> None:
        job.status = JobStatus.PROCESSING
        job.started_at = datetime.now(UTC)
        started = time.perf_counter()

        try:
            profile = await self.profile_store.find_user_by_id(job.user_id)
            if profile is None:
                raise ProfileNotFoundError(job.user_id, operation="precompute")

            candidates = await self.profile_store.find_candidates(
                [job.user_id], self.config.candidate_limit, self.config.candidate_active_days
            )
            candidates = [c for c in candidates if c.id != job.user_id]
            job.metrics.total_users = len(candidates)

            sub_batch_size = max(self.config.sub_batch_size, 1)
            pending_scores: list[tuple[str, str, int]] = []

            for start in range(0, len(candidates), sub_batch_size):
                batch = candidates[start : start + sub_batch_size]
                cached = await self.cache.batch_get_scores([(job.user_id, c.id) for c in batch])

                for candidate in batch:
                    if (job.user_id, candidate.id) in cached:
                        job.metrics.cache_hits += 1
                        continue
                    job.metrics.cache_misses += 1
                    score = self.scorer.calculate_match_score(profile, candidate).score
                    pending_scores.append((job.user_id, candidate.id, score))

                processed = min(start + sub_batch_size, len(candidates))
                job.metrics.processed_users = processed
                job.progress = math.floor(processed * 100 / len(candidates))

                is_last = processed >= len(candidates)
                if pending_scores and (len(pending_scores) >= sub_batch_size or is_last):
                    await self.cache.batch_cache_scores(pending_scores)
                    job.metrics.scores_computed += len(pending_scores)
                    pending_scores = []

                if not is_last:
                    await asyncio.sleep(self.config.sub_batch_delay_s)

            await self.cache.mark_precomputed(job.user_id)
            job.metrics.execution_time_ms = round((time.perf_counter() - started) * 1000, 2)
            self._finish(job, JobStatus.COMPLETED)

            logger.info("Precomputation job completed", job_id=job.id, **job.metrics.to_dict())

        except Exception as e:
            job.metrics.execution_time_ms = round((time.perf_counter() - started) * 1000, 2)
            self._finish(job, JobStatus.FAILED, error=str(e))
            logger.error(
                "Precomputation job failed",
                job_id=job.id,
                user_id=job.user_id,
                error=str(e),
                error_type=type(e).__name__,
                execution_time_ms=job.metrics.execution_time_ms,
            )

    @staticmethod
    def _finish(job: PrecomputationJob, status: JobStatus, error: str | None = None) -> None:
        job.status = status
        job.completed_at = datetime.now(UTC)
        if status == JobStatus.COMPLETED:
            job.progress = 100
        if error is not None:
            job.error = error

    # ------------------------------------------------------------------
    # Job management
    # ------------------------------------------------------------------
    def get_job_status(self, job_id: str) -> PrecomputationJob | None:
        return self._jobs.get(job_id)

    def get_all_jobs(self) -> list[PrecomputationJob]:
        return list(self._jobs.values())

    def cancel_job(self, job_id: str) -> bool:
        """Cancel a job that has not started; processing jobs run to completion."""
        job = self._jobs.get(job_id)
        if job is None or job.status != JobStatus.PENDING:
            return False

        self._finish(job, JobStatus.FAILED, error=CANCELLED_MESSAGE)
        task = self._tasks.get(job_id)
        if task is not None:
            task.cancel()

        logger.info("Precomputation job cancelled", job_id=job_id)
        return True

    def cleanup_completed_jobs(self) -> int:
        """Drop terminal jobs older than the retention window. Also swept from scheduling."""
        self._last_cleanup = self._clock()
        cutoff = datetime.now(UTC) - timedelta(hours=self.config.job_retention_hours)
        expired = [
            job_id
            for job_id, job in self._jobs.items()
            if job.completed_at is not None and job.completed_at < cutoff
        ]
        for job_id in expired:
            del self._jobs[job_id]

        if expired:
            logger.info("Cleaned up precomputation jobs", removed=len(expired))
        return len(expired)

    async def wait_for_jobs(self, job_ids: Iterable[str] | None = None) -> None:
        """Block until the given (or all) dispatched jobs have finished."""
        wanted = self._tasks.keys() if job_ids is None else job_ids
        tasks = [self._tasks[job_id] for job_id in list(wanted) if job_id in self._tasks]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def get_performance_stats(self) -> dict:
        jobs = list(self._jobs.values())
        timed = [j.metrics.execution_time_ms for j in jobs if j.metrics.execution_time_ms > 0]
        hits = sum(j.metrics.cache_hits for j in jobs)
        misses = sum(j.metrics.cache_misses for j in jobs)

        return {
            "total_jobs": len(jobs),
            "pending_jobs": sum(1 for j in jobs if j.status == JobStatus.PENDING),
            "processing_jobs": sum(1 for j in jobs if j.status == JobStatus.PROCESSING),
            "completed_jobs": sum(1 for j in jobs if j.status == JobStatus.COMPLETED),
            "failed_jobs": sum(1 for j in jobs if j.status == JobStatus.FAILED),
            "average_execution_time_ms": round(sum(timed) / len(timed), 2) if timed else 0.0,
            "total_scores_computed": sum(j.metrics.scores_computed for j in jobs),
            "cache_hit_rate": round(hits / (hits + misses), 4) if hits + misses else 0.0,
        }

    def health_check(self) -> dict:
        """
        Health check for the precomputation scheduler.

        The job counts as overdue when no sweep has run for a full day.
        """
        now = datetime.now(UTC)
        is_overdue = self.last_run_time is not None and now - self.last_run_time > timedelta(days=1)

        health_status = {
            "healthy": not is_overdue,
            "service": "match_precomputation_job",
            "last_run_time": self.last_run_time.isoformat() if self.last_run_time else None,
            "is_overdue": is_overdue,
            "running_jobs": sum(1 for j in self._jobs.values() if j.status == JobStatus.PROCESSING),
            "configuration": {
                "max_concurrent_jobs": self.config.max_concurrent_jobs,
                "batch_size": self.config.batch_size,
                "staleness_days": self.config.staleness_days,
                "schedule_hours": list(self.config.schedule_hours),
            },
        }
        if is_overdue:
            hours = (now - self.last_run_time).total_seconds() / 3600
            health_status["warning"] = f"Precomputation overdue by {hours:.1f} hours"
        return health_status


def seconds_until_next_run(now: datetime, schedule_hours: Iterable[int]) -> float:
    """Seconds from ``now`` until the next configured UTC hour boundary."""
    hours = sorted({h % 24 for h in schedule_hours})
    if not hours:
        raise ValueError("schedule_hours must not be empty")

    today = now.replace(minute=0, second=0, microsecond=0)
    for hour in hours:
        candidate = today.replace(hour=hour)
        if candidate > now:
            return (candidate - now).total_seconds()

    tomorrow = today.replace(hour=hours[0]) + timedelta(days=1)
    return (tomorrow - now).total_seconds()


async def _run_once(service: MatchPrecomputationService) -> dict:
    if not await service.cache.is_healthy():
        raise PrecomputationJobError("Redis is not available", operation="run_once")

    job_ids = await service.run_batch_precomputation()
    await service.wait_for_jobs(job_ids)

    stats = service.get_performance_stats()
    stats["jobs_scheduled"] = len(job_ids)
    stats["jobs_cleaned"] = service.cleanup_completed_jobs()

    logger.info("Match precomputation cycle completed", **stats)
    return stats


async def run_match_precomputation_once(service: MatchPrecomputationService | None = None) -> dict:
    """Run one full sweep: health check, schedule, wait, report, clean up."""
    if service is not None:
        return await _run_once(service)

    from studymate.container import worker_services

    async with worker_services() as container:
        return await _run_once(container.precomputation_service)


async def start_match_precomputation_scheduler(
    service: MatchPrecomputationService | None = None,
):
    """
    Start the precomputation scheduler loop.

    Sleeps until the next configured hour, then runs a full sweep. Meant to
    run in the worker process, not alongside the API.
    """
    if service is None:
        from studymate.container import worker_services

        async with worker_services() as container:
            await start_match_precomputation_scheduler(container.precomputation_service)
        return

    logger.info(
        "Starting match precomputation scheduler",
        schedule_hours=list(service.config.schedule_hours),
    )

    while True:
        try:
            wait_s = seconds_until_next_run(datetime.now(UTC), service.config.schedule_hours)
            logger.info("Next precomputation run scheduled", wait_seconds=round(wait_s))
            await asyncio.sleep(wait_s)

            await _run_once(service)

        except asyncio.CancelledError:
            logger.info("Match precomputation scheduler stopped")
            raise
        except Exception as e:
            logger.error(
                "Error in match precomputation scheduler", error=str(e), error_type=type(e).__name__
            )
            await asyncio.sleep(60)
