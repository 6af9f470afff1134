"""
Per-requester candidate buffers with cursor semantics and background refill.

A buffer is an ordered list of scored candidates plus a read cursor. Pulls
advance the cursor and return immediately from memory; refills and
prefetches run on the shared BackgroundTaskRunner and append de-duplicated
pages fetched through the injected CandidateFetcher.

All mutation of a given user's buffer happens under that user's
asyncio.Lock. The network fetch of a refill runs outside the lock so pulls
stay fast while a page is loading.
"""

from __future__ import annotations

import asyncio
import time
from collections import OrderedDict
from collections.abc import Callable, Iterable, Sequence
from dataclasses import asdict, dataclass

from studymate.features.matching.cache import ScoreCache
from studymate.features.matching.domain.models import MatchBuffer, ScoredCandidate, SwipeAction
from studymate.features.matching.domain.ports import CandidateFetcher
from studymate.infrastructure.background import BackgroundTaskRunner
from studymate.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


@dataclass(slots=True)
class BufferConfig:
    buffer_size: int = 10
    refill_threshold: int = 3
    max_cache_size: int = 50
    batch_size: int = 15
    prefetch_cooldown_s: float = 30.0
    low_priority_delay_s: float = 1.0
    max_active_buffers: int = 1000
    cache_max_age_s: float = 300.0


@dataclass(slots=True)
class BufferMetrics:
    cache_hits: int = 0
    cache_misses: int = 0
    refills: int = 0
    prefetches: int = 0
    fetch_failures: int = 0
    evictions: int = 0
    candidates_appended: int = 0
    total_fetch_time_ms: float = 0.0

    def to_dict(self) -> dict:
        data = asdict(self)
        lookups = self.cache_hits + self.cache_misses
        fetches = self.refills + self.prefetches
        data["hit_rate"] = round(self.cache_hits / lookups, 4) if lookups else 0.0
        data["average_fetch_time_ms"] = (
            round(self.total_fetch_time_ms / fetches, 2) if fetches else 0.0
        )
        return data


class CandidateBufferManager:
    """Owns every live MatchBuffer in this process."""

    def __init__(
        self,
        cache: ScoreCache,
        fetcher: CandidateFetcher,
        task_runner: BackgroundTaskRunner,
        config: BufferConfig | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.cache = cache
        self.fetcher = fetcher
        self.task_runner = task_runner
        self.config = config or BufferConfig()
        self._clock = clock

        self._buffers: OrderedDict[str, MatchBuffer] = OrderedDict()
        self._locks: dict[str, asyncio.Lock] = {}
        self._refills_in_flight: set[str] = set()
        self.metrics = BufferMetrics()

    # ------------------------------------------------------------------
    # Buffer lifecycle
    # ------------------------------------------------------------------
    def _lock_for(self, user_id: str) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[user_id] = lock
        return lock

    def _get(self, user_id: str) -> MatchBuffer | None:
        buffer = self._buffers.get(user_id)
        if buffer is not None:
            self._buffers.move_to_end(user_id)
        return buffer

    def _store(self, user_id: str, buffer: MatchBuffer) -> None:
        self._buffers[user_id] = buffer
        self._buffers.move_to_end(user_id)

        while len(self._buffers) > self.config.max_active_buffers:
            evicted_id, _ = self._buffers.popitem(last=False)
            lock = self._locks.get(evicted_id)
            if lock is not None and not lock.locked():
                del self._locks[evicted_id]
            self.metrics.evictions += 1
            logger.debug("Evicted least recently used buffer", user_id=evicted_id)

    def _build_buffer(
        self,
        user_id: str,
        candidates: Sequence[ScoredCandidate],
        excluded_ids: Iterable[str],
    ) -> MatchBuffer:
        previous = self._buffers.get(user_id)
        processed = set(previous.processed_ids) if previous else set()
        history = previous.delivered_ids() if previous else []
        skip = processed | set(history)

        seen: set[str] = set()
        kept: list[ScoredCandidate] = []
        for candidate in candidates:
            if candidate.id in skip or candidate.id in seen:
                continue
            seen.add(candidate.id)
            kept.append(candidate)
            if len(kept) >= self.config.max_cache_size:
                break

        return MatchBuffer(
            candidates=kept,
            cursor=0,
            is_loading=False,
            has_more=True,
            last_fetch=self._clock(),
            seed_excluded_ids=list(dict.fromkeys(excluded_ids)),
            processed_ids=processed,
            delivered_history=history,
        )

    async def seed_buffer(
        self,
        user_id: str,
        candidates: Sequence[ScoredCandidate],
        excluded_ids: Iterable[str] = (),
    ) -> MatchBuffer:
        """Replace the user's buffer with an already-ranked candidate list."""
        async with self._lock_for(user_id):
            buffer = self._build_buffer(user_id, candidates, excluded_ids)
            self._store(user_id, buffer)

        logger.debug("Buffer seeded", user_id=user_id, candidates=len(buffer.candidates))
        return buffer

    async def seed_from_cache(
        self, user_id: str, excluded_ids: Iterable[str] = ()
    ) -> MatchBuffer | None:
        """Seed from a fresh cached batch; None when no usable batch exists."""
        excluded = list(excluded_ids)
        batch = await self.cache.get_candidate_batch(
            user_id, excluded, max_age_s=self.config.cache_max_age_s
        )
        if batch is None or not batch.candidates:
            self.metrics.cache_misses += 1
            return None

        async with self._lock_for(user_id):
            buffer = self._build_buffer(user_id, batch.candidates, excluded)
            if not buffer.candidates:
                # everything cached was already shown: keep the live buffer
                self.metrics.cache_misses += 1
                return None
            self._store(user_id, buffer)

        self.metrics.cache_hits += 1
        logger.debug("Buffer seeded from cache", user_id=user_id, candidates=len(buffer.candidates))
        return buffer

    async def initialize_buffer(
        self, user_id: str, excluded_ids: Iterable[str] = ()
    ) -> MatchBuffer:
        """
        Create the user's buffer, from the shared cache when possible.

        Without a fresh cached batch an empty buffer is created in the
        loading state and an initial refill is awaited.
        """
        excluded = list(excluded_ids)
        buffer = await self.seed_from_cache(user_id, excluded)
        if buffer is not None:
            logger.info("Buffer initialized from cache", user_id=user_id, candidates=len(buffer.candidates))
            return buffer

        async with self._lock_for(user_id):
            buffer = self._build_buffer(user_id, (), excluded)
            buffer.is_loading = True
            self._store(user_id, buffer)

        if user_id not in self._refills_in_flight:
            self._refills_in_flight.add(user_id)
            await self._refill(user_id, reason="initial")
        return buffer

    async def clear_buffer(self, user_id: str) -> bool:
        lock = self._lock_for(user_id)
        async with lock:
            removed = self._buffers.pop(user_id, None) is not None
        if not lock.locked() and self._locks.get(user_id) is lock:
            del self._locks[user_id]
        if removed:
            logger.debug("Buffer cleared", user_id=user_id)
        return removed

    # ------------------------------------------------------------------
    # Pulls
    # ------------------------------------------------------------------
    async def get_next_match(self, user_id: str) -> ScoredCandidate | None:
        matches = await self.get_matches(user_id, 1)
        return matches[0] if matches else None

    async def get_matches(self, user_id: str, count: int) -> list[ScoredCandidate]:
        """Slice up to ``count`` candidates from the cursor and advance past them."""
        async with self._lock_for(user_id):
            buffer = self._get(user_id)
            if buffer is None:
                return []

            matches = buffer.candidates[buffer.cursor : buffer.cursor + max(count, 0)]
            buffer.cursor += len(matches)

        if not self.check_and_refill(user_id):
            self.prefetch_matches(user_id)
        return matches

    # ------------------------------------------------------------------
    # Outcomes
    # ------------------------------------------------------------------
    async def process_action(
        self,
        user_id: str,
        target_id: str,
        action: SwipeAction,
        *,
        trigger_refill: bool = True,
    ) -> bool:
        """
        Drop ``target_id`` from the user's buffer and cached batches.

        Returns True when the target was present in the live buffer. The
        cursor only moves back when the removed entry had been delivered.
        """
        removed = False
        async with self._lock_for(user_id):
            buffer = self._get(user_id)
            if buffer is not None:
                buffer.processed_ids.add(target_id)
                for index, candidate in enumerate(buffer.candidates):
                    if candidate.id == target_id:
                        del buffer.candidates[index]
                        if index < buffer.cursor:
                            buffer.cursor -= 1
                        removed = True
                        break

        await self.cache.add_exclusion(user_id, target_id)
        logger.debug(
            "Buffer action processed",
            user_id=user_id,
            target_id=target_id,
            action=action.value,
            removed=removed,
        )

        if trigger_refill:
            self.check_and_refill(user_id)
        return removed

    # ------------------------------------------------------------------
    # Refill / prefetch dispatch
    # ------------------------------------------------------------------
    def check_and_refill(self, user_id: str, threshold: int | None = None) -> bool:
        """Dispatch a background refill if the buffer is running low."""
        buffer = self._buffers.get(user_id)
        if buffer is None or not buffer.has_more:
            return False

        low_water = self.config.refill_threshold if threshold is None else threshold
        if buffer.remaining > low_water:
            return False
        return self.request_refill(user_id)

    def prefetch_matches(self, user_id: str) -> bool:
        """Low-priority top-up, gated by the prefetch cooldown."""
        buffer = self._buffers.get(user_id)
        if buffer is None or not buffer.has_more:
            return False
        if buffer.remaining >= self.config.buffer_size:
            return False
        if self._clock() - buffer.last_fetch < self.config.prefetch_cooldown_s:
            return False

        return self.request_refill(
            user_id, reason="prefetch", delay_s=self.config.low_priority_delay_s
        )

    def request_refill(self, user_id: str, *, reason: str = "threshold", delay_s: float = 0.0) -> bool:
        """Schedule a refill unless one is already in flight for this user."""
        if user_id in self._refills_in_flight or user_id not in self._buffers:
            return False

        self._refills_in_flight.add(user_id)
        task = self.task_runner.submit(
            lambda: self._refill(user_id, reason=reason),
            name=f"buffer-{reason}:{user_id}",
            delay_s=delay_s,
        )
        if task is None:
            self._refills_in_flight.discard(user_id)
            return False
        return True

    async def _refill(self, user_id: str, reason: str) -> int:
        """Fetch one page and append its unseen candidates. Returns appended count."""
        try:
            async with self._lock_for(user_id):
                buffer = self._buffers.get(user_id)
                if buffer is None:
                    return 0
                buffer.is_loading = True
                exclude = list(
                    dict.fromkeys(
                        [
                            *buffer.seed_excluded_ids,
                            *(c.id for c in buffer.candidates),
                            *buffer.processed_ids,
                            *buffer.delivered_history,
                        ]
                    )
                )

            page_size = self.config.batch_size
            started = time.perf_counter()
            try:
                page = await self.fetcher(user_id, exclude, page_size)
            except Exception as e:
                self.metrics.fetch_failures += 1
                logger.error("Buffer refill fetch failed", user_id=user_id, reason=reason, error=str(e))
                async with self._lock_for(user_id):
                    buffer = self._buffers.get(user_id)
                    if buffer is not None:
                        buffer.is_loading = False
                        buffer.has_more = False
                return 0
            fetch_ms = (time.perf_counter() - started) * 1000

            async with self._lock_for(user_id):
                buffer = self._buffers.get(user_id)
                if buffer is None:
                    return 0

                known = buffer.buffered_ids() | buffer.processed_ids | set(buffer.delivered_history)
                room = max(self.config.max_cache_size - buffer.remaining, 0)
                fresh: list[ScoredCandidate] = []
                for candidate in page:
                    if len(fresh) >= room:
                        break
                    if candidate.id in known or candidate.id == user_id:
                        continue
                    known.add(candidate.id)
                    fresh.append(candidate)

                buffer.candidates.extend(fresh)
                buffer.has_more = len(page) == page_size
                buffer.last_fetch = self._clock()
                buffer.is_loading = False

                key_exclusions = list(buffer.seed_excluded_ids)
                stored_exclusions = [*key_exclusions, *buffer.delivered_ids(), *buffer.processed_ids]
                remainder = list(buffer.candidates[buffer.cursor :])
                has_more = buffer.has_more

            if reason == "prefetch":
                self.metrics.prefetches += 1
            else:
                self.metrics.refills += 1
            self.metrics.total_fetch_time_ms += fetch_ms
            self.metrics.candidates_appended += len(fresh)

            await self.cache.cache_candidate_batch(
                user_id, key_exclusions, remainder, stored_exclusions=stored_exclusions
            )

            logger.info(
                "Buffer refilled",
                user_id=user_id,
                reason=reason,
                page_size=len(page),
                appended=len(fresh),
                remaining=len(remainder),
                has_more=has_more,
                fetch_ms=round(fetch_ms, 2),
            )
            return len(fresh)
        finally:
            self._refills_in_flight.discard(user_id)

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------
    def remaining_count(self, user_id: str) -> int:
        buffer = self._buffers.get(user_id)
        return buffer.remaining if buffer else 0

    def has_buffer(self, user_id: str) -> bool:
        return user_id in self._buffers

    def processed_ids(self, user_id: str) -> set[str]:
        buffer = self._buffers.get(user_id)
        return set(buffer.processed_ids) if buffer else set()

    def delivered_ids(self, user_id: str) -> list[str]:
        buffer = self._buffers.get(user_id)
        return buffer.delivered_ids() if buffer else []

    def get_buffer_status(self, user_id: str) -> dict | None:
        buffer = self._buffers.get(user_id)
        if buffer is None:
            return None
        return {
            "user_id": user_id,
            "total": len(buffer.candidates),
            "cursor": buffer.cursor,
            "remaining": buffer.remaining,
            "is_loading": buffer.is_loading,
            "has_more": buffer.has_more,
            "last_fetch": buffer.last_fetch,
            "processed": len(buffer.processed_ids),
            "refill_in_flight": user_id in self._refills_in_flight,
        }

    def get_performance_metrics(self) -> dict:
        return {
            **self.metrics.to_dict(),
            "active_buffers": len(self._buffers),
            "refills_in_flight": len(self._refills_in_flight),
            "background_tasks": self.task_runner.pending,
        }
