"""
Composition root.

Builds every long-lived collaborator from Settings so nothing in the
matching feature reads configuration or constructs clients on its own.
The API lifespan and the worker process both go through ServiceContainer.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from studymate.config import Settings, settings
from studymate.db.pool import DatabasePoolManager
from studymate.features.matching.buffer import BufferConfig
from studymate.features.matching.cache import ScoreCache, ScoreCacheConfig
from studymate.features.matching.jobs import MatchPrecomputationService, PrecomputationConfig
from studymate.features.matching.pipeline.scoring import CompatibilityScorer
from studymate.features.matching.repository import ProfileRepository, RelationshipRepository
from studymate.features.matching.services import (
    DiscoveryConfig,
    DiscoveryService,
    RerankingService,
)
from studymate.infrastructure.background import BackgroundTaskRunner
from studymate.infrastructure.observability.logging import get_logger
from studymate.services.infrastructure.redis_client import RedisClient

logger = get_logger(__name__)


def score_cache_config(config: Settings) -> ScoreCacheConfig:
    return ScoreCacheConfig(
        key_prefix=config.REDIS_KEY_PREFIX,
        score_ttl_s=config.SCORE_TTL_SECONDS,
        batch_ttl_s=config.CANDIDATE_BATCH_TTL_SECONDS,
        profile_ttl_s=config.PROFILE_TTL_SECONDS,
        precompute_marker_ttl_s=config.PRECOMPUTE_STALENESS_DAYS * 24 * 60 * 60,
    )


def buffer_config(config: Settings) -> BufferConfig:
    return BufferConfig(
        buffer_size=config.BUFFER_SIZE,
        refill_threshold=config.BUFFER_REFILL_THRESHOLD,
        max_cache_size=config.BUFFER_MAX_CACHE_SIZE,
        batch_size=config.BUFFER_BATCH_SIZE,
        prefetch_cooldown_s=config.BUFFER_PREFETCH_COOLDOWN_SECONDS,
        low_priority_delay_s=config.BUFFER_LOW_PRIORITY_DELAY_SECONDS,
        max_active_buffers=config.BUFFER_MAX_ACTIVE,
        cache_max_age_s=config.BUFFER_CACHE_MAX_AGE_SECONDS,
    )


def discovery_config(config: Settings) -> DiscoveryConfig:
    return DiscoveryConfig(
        candidate_pool_size=config.DISCOVERY_CANDIDATE_POOL_SIZE,
        candidate_active_days=config.DISCOVERY_CANDIDATE_ACTIVE_DAYS,
        outcome_refill_threshold=config.OUTCOME_REFILL_THRESHOLD,
        store_timeout_s=config.DISCOVERY_STORE_TIMEOUT_SECONDS,
    )


def precomputation_config(config: Settings) -> PrecomputationConfig:
    return PrecomputationConfig(
        batch_size=config.PRECOMPUTE_BATCH_SIZE,
        batch_delay_s=config.PRECOMPUTE_BATCH_DELAY_SECONDS,
        max_concurrent_jobs=config.PRECOMPUTE_MAX_CONCURRENT_JOBS,
        staleness_days=config.PRECOMPUTE_STALENESS_DAYS,
        active_user_days=config.PRECOMPUTE_ACTIVE_USER_DAYS,
        candidate_active_days=config.DISCOVERY_CANDIDATE_ACTIVE_DAYS,
        active_user_limit=config.PRECOMPUTE_ACTIVE_USER_LIMIT,
        candidate_limit=config.PRECOMPUTE_CANDIDATE_LIMIT,
        sub_batch_size=config.PRECOMPUTE_SUB_BATCH_SIZE,
        sub_batch_delay_s=config.PRECOMPUTE_SUB_BATCH_DELAY_SECONDS,
        normal_delay_s=config.PRECOMPUTE_NORMAL_DELAY_SECONDS,
        low_delay_s=config.PRECOMPUTE_LOW_DELAY_SECONDS,
        job_retention_hours=config.PRECOMPUTE_JOB_RETENTION_HOURS,
        cleanup_interval_s=config.PRECOMPUTE_CLEANUP_INTERVAL_SECONDS,
        schedule_hours=tuple(config.PRECOMPUTE_SCHEDULE_HOURS),
    )


class ServiceContainer:
    """Owns the Redis client, DB pool, task runner and the matching services."""

    def __init__(self, config: Settings, application_name: str = "studymate-matching"):
        self.settings = config

        self.redis = RedisClient(
            config.REDIS_URL,
            max_connections=config.REDIS_MAX_CONNECTIONS,
            socket_timeout=config.REDIS_SOCKET_TIMEOUT,
        )
        self.db_pool = DatabasePoolManager(
            config.DATABASE_URL, config.get_db_pool_config(), application_name
        )
        self.task_runner = BackgroundTaskRunner()

        self.scorer = CompatibilityScorer()
        self.cache = ScoreCache(self.redis, score_cache_config(config))
        self.profile_repository = ProfileRepository(self.db_pool)
        self.relationship_repository = RelationshipRepository(self.db_pool)
        self.reranker = RerankingService(
            self.scorer,
            api_key=config.OPENAI_API_KEY,
            model=config.OPENAI_MODEL,
            timeout_s=config.RERANK_TIMEOUT_SECONDS,
        )

        self.discovery_service = DiscoveryService(
            self.profile_repository,
            self.relationship_repository,
            self.cache,
            self.scorer,
            self.reranker,
            self.task_runner,
            config=discovery_config(config),
            buffer_config=buffer_config(config),
        )
        self.precomputation_service = MatchPrecomputationService(
            self.profile_repository,
            self.cache,
            self.scorer,
            self.task_runner,
            config=precomputation_config(config),
        )

        self._started: list[str] = []

    async def start(self) -> None:
        """
        Open the database pool then Redis.

        Only the database pool is fatal: a Redis outage is logged and the
        client reconnects lazily, with cache lookups degrading to misses.
        """
        try:
            logger.info("Initializing database pool")
            await self.db_pool.initialize()
            self._started.append("database_pool")
        except Exception as e:
            logger.error("Failed to initialize services", error=str(e), completed_tasks=list(self._started))
            await self.close()
            raise

        logger.info("Initializing Redis connection", redis_host=self.settings.redis_host())
        try:
            await self.redis.initialize()
        except Exception as e:
            logger.warning("Redis unavailable at startup, continuing without cache", error=str(e))
        # closed either way: a lazy reconnect may open the pool later
        self._started.append("redis")

        logger.info("All services initialized", services=list(self._started))

    async def close(self) -> None:
        """Stop background work, then close Redis and the database pool."""
        shutdown_errors = []

        await self.task_runner.shutdown()

        if "redis" in self._started:
            try:
                logger.info("Closing Redis connection")
                await self.redis.close()
            except Exception as e:
                logger.error("Error closing Redis", error=str(e))
                shutdown_errors.append(f"Redis: {e}")

        if "database_pool" in self._started:
            try:
                logger.info("Closing database pool")
                await self.db_pool.close()
            except Exception as e:
                logger.error("Error closing database pool", error=str(e))
                shutdown_errors.append(f"Database: {e}")

        self._started.clear()
        if shutdown_errors:
            logger.warning("Some services had shutdown errors", errors=shutdown_errors)
        else:
            logger.info("All services closed successfully")


@asynccontextmanager
async def worker_services(config: Settings = settings) -> AsyncGenerator[ServiceContainer, None]:
    """Started container for one-off jobs and the worker process."""
    container = ServiceContainer(config, application_name="studymate-matching-worker")
    await container.start()
    try:
        yield container
    finally:
        await container.close()
