"""
Typed cache for pairwise scores, candidate batches and profile snapshots.

Wraps the shared Redis store. Keys are derived deterministically so that
every service instance (request path and precomputation workers alike)
reads and writes the same entries:

    {prefix}score:{lower_id}:{higher_id}      pairwise score, order-independent
    {prefix}matches:{user_id}:{digest}        candidate batch per exclusion set
    {prefix}profile:{user_id}                 profile snapshot
    {prefix}last_precomp:{user_id}            last precomputation marker

Every method degrades to a miss / no-op when Redis is unavailable.
"""

from __future__ import annotations

import hashlib
import json
import time
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass

from studymate.features.matching.domain.models import CachedMatchBatch, Profile, ScoredCandidate
from studymate.infrastructure.observability.logging import get_logger
from studymate.services.infrastructure.redis_client import RedisClient

logger = get_logger(__name__)


@dataclass(slots=True)
class ScoreCacheConfig:
    key_prefix: str = "studymate:"
    score_ttl_s: int = 7 * 24 * 60 * 60
    batch_ttl_s: int = 24 * 60 * 60
    profile_ttl_s: int = 60 * 60
    precompute_marker_ttl_s: int = 7 * 24 * 60 * 60


def exclusion_digest(excluded_ids: Iterable[str]) -> str:
    """Stable digest of an exclusion set, independent of order and duplicates."""
    canonical = ",".join(sorted(set(excluded_ids)))
    return hashlib.sha1(canonical.encode("utf-8")).hexdigest()[:16]


class ScoreCache:
    """Score / candidate-batch / profile cache over the shared Redis store."""

    def __init__(
        self,
        redis: RedisClient,
        config: ScoreCacheConfig | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.redis = redis
        self.config = config or ScoreCacheConfig()
        self._clock = clock

    # ------------------------------------------------------------------
    # Key derivation
    # ------------------------------------------------------------------
    def score_key(self, user_a: str, user_b: str) -> str:
        first, second = sorted((user_a, user_b))
        return f"{self.config.key_prefix}score:{first}:{second}"

    def batch_key(self, user_id: str, excluded_ids: Iterable[str]) -> str:
        return f"{self.config.key_prefix}matches:{user_id}:{exclusion_digest(excluded_ids)}"

    def profile_key(self, user_id: str) -> str:
        return f"{self.config.key_prefix}profile:{user_id}"

    def precompute_marker_key(self, user_id: str) -> str:
        return f"{self.config.key_prefix}last_precomp:{user_id}"

    # ------------------------------------------------------------------
    # Pairwise scores
    # ------------------------------------------------------------------
    async def cache_score(self, user_a: str, user_b: str, score: int) -> bool:
        return await self.redis.set_with_ttl(
            self.score_key(user_a, user_b), str(int(score)), self.config.score_ttl_s
        )

    async def get_score(self, user_a: str, user_b: str) -> int | None:
        raw = await self.redis.get(self.score_key(user_a, user_b))
        return self._parse_score(raw)

    async def batch_cache_scores(self, scores: Iterable[tuple[str, str, int]]) -> bool:
        """Write many pairwise scores in a single pipelined round trip."""
        items = {self.score_key(a, b): str(int(score)) for a, b, score in scores}
        if not items:
            return True
        if len(items) == 1:
            (key, value), = items.items()
            return await self.redis.set_with_ttl(key, value, self.config.score_ttl_s)

        ok = await self.redis.set_many_with_ttl(items, self.config.score_ttl_s)
        if not ok:
            logger.warning("Batch score cache write incomplete", score_count=len(items))
        return ok

    async def batch_get_scores(
        self, pairs: Sequence[tuple[str, str]]
    ) -> dict[tuple[str, str], int]:
        """Look up many pairwise scores with one MGET; misses are omitted."""
        if not pairs:
            return {}
        values = await self.redis.mget([self.score_key(a, b) for a, b in pairs])
        results: dict[tuple[str, str], int] = {}
        for pair, raw in zip(pairs, values):
            score = self._parse_score(raw)
            if score is not None:
                results[(pair[0], pair[1])] = score
        return results

    @staticmethod
    def _parse_score(raw: str | None) -> int | None:
        if raw is None:
            return None
        try:
            return int(round(float(raw)))
        except ValueError:
            logger.warning("Discarding malformed cached score", raw=raw[:20])
            return None

    # ------------------------------------------------------------------
    # Candidate batches
    # ------------------------------------------------------------------
    async def cache_candidate_batch(
        self,
        user_id: str,
        excluded_ids: Iterable[str],
        candidates: Sequence[ScoredCandidate],
        stored_exclusions: Iterable[str] | None = None,
    ) -> bool:
        """
        Store a ranked candidate list under the requester's exclusion key.

        ``stored_exclusions`` is recorded inside the batch (defaults to the
        key's exclusion ids) so later readers know what was filtered out.
        """
        excluded = list(excluded_ids)
        batch = CachedMatchBatch(
            candidates=list(candidates),
            timestamp=self._clock(),
            excluded_ids=sorted(set(stored_exclusions if stored_exclusions is not None else excluded)),
        )
        return await self.redis.set_with_ttl(
            self.batch_key(user_id, excluded),
            json.dumps(batch.to_dict()),
            self.config.batch_ttl_s,
        )

    async def get_candidate_batch(
        self, user_id: str, excluded_ids: Iterable[str], max_age_s: float | None = None
    ) -> CachedMatchBatch | None:
        """
        Return the cached batch for this exclusion set if it is still fresh.

        Staleness is evaluated here, before the batch is handed to a caller.
        """
        key = self.batch_key(user_id, excluded_ids)
        batch = await self._load_batch(key)
        if batch is None:
            return None

        max_age = self.config.batch_ttl_s if max_age_s is None else max_age_s
        age = batch.age_seconds(self._clock())
        if age >= max_age:
            logger.debug("Cached candidate batch is stale", user_id=user_id, age_s=round(age, 1))
            if age >= self.config.batch_ttl_s:
                await self.redis.delete(key)
            return None
        return batch

    async def add_exclusion(self, user_id: str, excluded_id: str) -> int:
        """
        Propagate a like/pass into every batch the user owns.

        The excluded candidate is removed from each batch and recorded in its
        exclusion list; remaining TTLs are preserved. Returns batches updated.
        """
        keys = await self.redis.scan_keys(f"{self.config.key_prefix}matches:{user_id}:*")
        updated = 0
        for key in keys:
            batch = await self._load_batch(key)
            if batch is None:
                continue
            batch.candidates = [c for c in batch.candidates if c.id != excluded_id]
            if excluded_id not in batch.excluded_ids:
                batch.excluded_ids.append(excluded_id)

            ttl = await self.redis.ttl(key) or self.config.batch_ttl_s
            if await self.redis.set_with_ttl(key, json.dumps(batch.to_dict()), ttl):
                updated += 1
        return updated

    async def _load_batch(self, key: str) -> CachedMatchBatch | None:
        raw = await self.redis.get(key)
        if raw is None:
            return None
        try:
            return CachedMatchBatch.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as e:
            logger.warning("Dropping malformed candidate batch", key=key[:60], error=str(e))
            await self.redis.delete(key)
            return None

    # ------------------------------------------------------------------
    # Profiles and precomputation markers
    # ------------------------------------------------------------------
    async def cache_profile(self, user_id: str, profile: Profile) -> bool:
        return await self.redis.set_with_ttl(
            self.profile_key(user_id), json.dumps(profile.to_dict()), self.config.profile_ttl_s
        )

    async def get_profile(self, user_id: str) -> Profile | None:
        raw = await self.redis.get(self.profile_key(user_id))
        if raw is None:
            return None
        try:
            return Profile.from_dict(json.loads(raw))
        except (ValueError, TypeError) as e:
            logger.warning("Dropping malformed cached profile", user_id=user_id, error=str(e))
            return None

    async def mark_precomputed(self, user_id: str, at: float | None = None) -> bool:
        payload = json.dumps({"timestamp": at if at is not None else self._clock()})
        return await self.redis.set_with_ttl(
            self.precompute_marker_key(user_id), payload, self.config.precompute_marker_ttl_s
        )

    async def get_last_precomputed(self, user_id: str) -> float | None:
        raw = await self.redis.get(self.precompute_marker_key(user_id))
        if raw is None:
            return None
        try:
            return float(json.loads(raw)["timestamp"])
        except (ValueError, KeyError, TypeError):
            return None

    # ------------------------------------------------------------------
    # Invalidation
    # ------------------------------------------------------------------
    async def invalidate_user_matches(self, user_id: str) -> int:
        keys = await self.redis.scan_keys(f"{self.config.key_prefix}matches:{user_id}:*")
        removed = await self.redis.delete_many(keys)
        logger.debug("Invalidated candidate batches", user_id=user_id, removed=removed)
        return removed

    async def invalidate_scores_involving(self, user_id: str) -> int:
        prefix = self.config.key_prefix
        keys = await self.redis.scan_keys(f"{prefix}score:{user_id}:*")
        keys += await self.redis.scan_keys(f"{prefix}score:*:{user_id}")
        removed = await self.redis.delete_many(list(dict.fromkeys(keys)))
        logger.debug("Invalidated pairwise scores", user_id=user_id, removed=removed)
        return removed

    async def clear(self) -> int:
        """Remove every key under this service's prefix (never FLUSHDB)."""
        keys = await self.redis.scan_keys(f"{self.config.key_prefix}*")
        removed = 0
        for start in range(0, len(keys), 500):
            removed += await self.redis.delete_many(keys[start : start + 500])
        logger.info("Score cache cleared", removed=removed)
        return removed

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------
    async def is_healthy(self) -> bool:
        return await self.redis.ping()

    async def get_cache_stats(self) -> dict:
        stats = await self.redis.info("stats")
        memory = await self.redis.info("memory")
        keyspace = await self.redis.info("keyspace")

        hits = int(stats.get("keyspace_hits", 0) or 0)
        misses = int(stats.get("keyspace_misses", 0) or 0)
        lookups = hits + misses
        total_keys = sum(
            int(db.get("keys", 0)) for db in keyspace.values() if isinstance(db, dict)
        )

        return {
            "total_keys": total_keys,
            "memory_usage": memory.get("used_memory_human", "0B"),
            "hit_rate": round(hits / lookups, 4) if lookups else 0.0,
            "miss_rate": round(misses / lookups, 4) if lookups else 0.0,
        }
