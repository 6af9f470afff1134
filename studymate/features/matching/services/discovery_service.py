"""
Discovery orchestration - the request-time side of the matching pipeline.

Serves candidates from the live buffer or a fresh cached batch when
possible; otherwise queries the profile store, scores and re-ranks the pool,
writes it back to the shared cache and seeds the requester's buffer. Also
owns the outcome (like / pass) write path.
"""

import asyncio
import time
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass

from studymate.db.helpers import DatabaseError
from studymate.features.matching.buffer import BufferConfig, CandidateBufferManager
from studymate.features.matching.cache import ScoreCache
from studymate.features.matching.domain import (
    DB_EXCLUDED_STATUSES,
    DiscoveryResult,
    Outcome,
    OutcomeBatchResult,
    OutcomeResult,
    Profile,
    ProfileNotFoundError,
    RelationshipStatus,
    ScoredCandidate,
    SwipeAction,
)
from studymate.features.matching.domain.ports import ProfileStore, RelationshipStore, Reranker
from studymate.features.matching.pipeline.scoring import CompatibilityScorer
from studymate.infrastructure.background import BackgroundTaskRunner
from studymate.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

NO_MORE_USERS_MESSAGE = "No more users available. All users have been matched or blocked."
STORE_UNAVAILABLE_MESSAGE = "Candidates are temporarily unavailable. Please try again shortly."
MUTUAL_MATCH_MESSAGE = "It's a match! You can now message each other."


@dataclass(slots=True)
class DiscoveryConfig:
    candidate_pool_size: int = 30
    candidate_active_days: int = 60
    outcome_refill_threshold: int = 10
    store_timeout_s: float = 10.0


class DiscoveryService:
    """Coordinates buffer, cache, profile store and re-ranker per request."""

    def __init__(
        self,
        profile_store: ProfileStore,
        relationship_store: RelationshipStore,
        cache: ScoreCache,
        scorer: CompatibilityScorer,
        reranker: Reranker,
        task_runner: BackgroundTaskRunner,
        config: DiscoveryConfig | None = None,
        buffer_config: BufferConfig | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.profile_store = profile_store
        self.relationship_store = relationship_store
        self.cache = cache
        self.scorer = scorer
        self.reranker = reranker
        self.config = config or DiscoveryConfig()
        self.buffers = CandidateBufferManager(
            cache, self._fetch_page, task_runner, buffer_config, clock=clock
        )

    # ------------------------------------------------------------------
    # Read path
    # ------------------------------------------------------------------
    async def get_matches(
        self, user_id: str, limit: int = 10, exclude_ids: Iterable[str] = ()
    ) -> DiscoveryResult:
        """
        Return the next page of candidates for ``user_id``.

        Raises:
            ProfileNotFoundError: The requester has no profile
        """
        started = time.perf_counter()
        excluded = [i for i in dict.fromkeys(exclude_ids) if i]

        if self.buffers.remaining_count(user_id) == 0:
            await self.buffers.seed_from_cache(user_id, excluded)

        if self.buffers.remaining_count(user_id) > 0:
            matches = await self.buffers.get_matches(user_id, limit)
            remaining = self.buffers.remaining_count(user_id)
            logger.info(
                "Smart matches served from buffer",
                user_id=user_id,
                returned=len(matches),
                remaining=remaining,
            )
            return DiscoveryResult(
                matches=matches,
                total_available=len(matches) + remaining,
                remaining=remaining,
                source="cache",
                execution_time_ms=self._elapsed_ms(started),
            )

        try:
            return await asyncio.wait_for(
                self._load_from_store(user_id, limit, excluded, started),
                timeout=self.config.store_timeout_s,
            )
        except TimeoutError:
            logger.warning("Candidate store timed out", user_id=user_id)
        except DatabaseError as e:
            if not e.recoverable:
                raise
            logger.warning("Candidate store unavailable", user_id=user_id, error=str(e))

        return DiscoveryResult(
            matches=[],
            total_available=0,
            remaining=self.buffers.remaining_count(user_id),
            source="empty",
            execution_time_ms=self._elapsed_ms(started),
            message=STORE_UNAVAILABLE_MESSAGE,
        )

    async def _load_from_store(
        self, user_id: str, limit: int, excluded: list[str], started: float
    ) -> DiscoveryResult:
        requester = await self.profile_store.find_user_by_id(user_id)
        if requester is None:
            raise ProfileNotFoundError(user_id, operation="get_matches")

        related = await self.profile_store.find_related_user_ids(user_id, DB_EXCLUDED_STATUSES)
        seen = self.buffers.processed_ids(user_id) | set(self.buffers.delivered_ids(user_id))
        history = set(excluded) | seen
        exclusion = {user_id} | related | history

        candidates = await self.profile_store.find_candidates(
            sorted(exclusion), self.config.candidate_pool_size, self.config.candidate_active_days
        )

        if not candidates:
            logger.info(
                "No candidates with current exclusions, clearing history and retrying",
                user_id=user_id,
                excluded=len(exclusion),
            )
            await self.buffers.clear_buffer(user_id)
            await self.cache.invalidate_user_matches(user_id)

            excluded = []
            history = set()
            exclusion = {user_id} | related
            candidates = await self.profile_store.find_candidates(
                sorted(exclusion),
                self.config.candidate_pool_size,
                self.config.candidate_active_days,
            )

            if not candidates:
                logger.info("No candidates available after retry", user_id=user_id)
                return DiscoveryResult(
                    matches=[],
                    total_available=0,
                    remaining=0,
                    source="empty",
                    execution_time_ms=self._elapsed_ms(started),
                    message=NO_MORE_USERS_MESSAGE,
                )

        ranked = await self._rank(requester, candidates)
        await self.cache.cache_candidate_batch(
            user_id, excluded, ranked, stored_exclusions=exclusion - {user_id}
        )
        await self.buffers.seed_buffer(user_id, ranked, excluded)

        matches = await self.buffers.get_matches(user_id, limit)
        remaining = self.buffers.remaining_count(user_id)
        logger.info(
            "Smart matches computed",
            user_id=user_id,
            candidates=len(candidates),
            returned=len(matches),
            remaining=remaining,
        )
        return DiscoveryResult(
            matches=matches,
            total_available=len(ranked),
            remaining=remaining,
            source="miss",
            execution_time_ms=self._elapsed_ms(started),
            excluded_count=len(history),
        )

    async def _fetch_page(
        self, user_id: str, exclude_ids: list[str], limit: int
    ) -> list[ScoredCandidate]:
        """Buffer refill source: one ranked page beyond the given exclusions."""
        requester = await self.profile_store.find_user_by_id(user_id)
        if requester is None:
            raise ProfileNotFoundError(user_id, operation="refill")

        related = await self.profile_store.find_related_user_ids(user_id, DB_EXCLUDED_STATUSES)
        exclusion = {user_id} | related | set(exclude_ids)
        candidates = await self.profile_store.find_candidates(
            sorted(exclusion), limit, self.config.candidate_active_days
        )
        return await self._rank(requester, candidates)

    async def _rank(
        self, requester: Profile, candidates: Sequence[Profile]
    ) -> list[ScoredCandidate]:
        """Score with cached pairwise scores where present, then re-rank."""
        if not candidates:
            return []

        cached = await self.cache.batch_get_scores([(requester.id, c.id) for c in candidates])
        scored: dict[str, ScoredCandidate] = {}
        misses: list[tuple[str, str, int]] = []
        for candidate in candidates:
            cached_score = cached.get((requester.id, candidate.id))
            if cached_score is not None:
                scored[candidate.id] = ScoredCandidate(
                    profile=candidate,
                    score=cached_score,
                    is_online=self.scorer.is_online(candidate),
                )
            else:
                result = self.scorer.score_candidate(requester, candidate)
                scored[candidate.id] = result
                misses.append((requester.id, candidate.id, result.score))

        if misses:
            await self.cache.batch_cache_scores(misses)

        try:
            ranking = await self.reranker.rank(requester, candidates)
        except Exception as e:
            logger.warning("Reranker failed, using local scores", user_id=requester.id, error=str(e))
            return sorted(scored.values(), key=lambda c: c.score, reverse=True)

        ranked: list[ScoredCandidate] = []
        for entry in ranking:
            base = scored.pop(entry.candidate_id, None)
            if base is None:
                continue
            ranked.append(
                ScoredCandidate(
                    profile=base.profile,
                    score=int(round(entry.score)),
                    reasoning=entry.reasoning,
                    breakdown=base.breakdown,
                    is_online=base.is_online,
                    distance=base.distance,
                )
            )
        # anything the ranking omitted goes last, local order
        ranked.extend(sorted(scored.values(), key=lambda c: c.score, reverse=True))
        return ranked

    # ------------------------------------------------------------------
    # Write path
    # ------------------------------------------------------------------
    async def record_outcomes(
        self, user_id: str, outcomes: Sequence[Outcome]
    ) -> OutcomeBatchResult:
        """
        Persist a batch of like / pass outcomes.

        Each item succeeds or fails independently. At most one background
        refill is dispatched for the whole batch.
        """
        results: list[OutcomeResult] = []
        for outcome in outcomes:
            target_id = (outcome.target_id or "").strip()
            if not target_id or target_id == user_id:
                results.append(
                    OutcomeResult(
                        target_id=target_id,
                        action=outcome.action,
                        success=False,
                        error="Invalid target user",
                    )
                )
                continue

            try:
                result = await self._record_outcome(user_id, target_id, outcome.action)
            except Exception as e:
                logger.warning(
                    "Outcome processing failed",
                    user_id=user_id,
                    target_id=target_id,
                    action=outcome.action.value,
                    error=str(e),
                )
                result = OutcomeResult(
                    target_id=target_id, action=outcome.action, success=False, error=str(e)
                )
            results.append(result)

            await self.buffers.process_action(
                user_id, target_id, outcome.action, trigger_refill=False
            )

        remaining = self.buffers.remaining_count(user_id)
        refill_triggered = self.buffers.check_and_refill(
            user_id, threshold=self.config.outcome_refill_threshold
        )
        logger.info(
            "Outcomes recorded",
            user_id=user_id,
            processed=len(results),
            failed=sum(1 for r in results if not r.success),
            remaining=remaining,
            refill_triggered=refill_triggered,
        )
        return OutcomeBatchResult(
            results=results, remaining=remaining, refill_triggered=refill_triggered
        )

    async def _record_outcome(
        self, user_id: str, target_id: str, action: SwipeAction
    ) -> OutcomeResult:
        existing = await self.profile_store.find_relationship(user_id, target_id)

        if existing is not None:
            answers_request = (
                existing.sender_id == target_id and existing.status == RelationshipStatus.PENDING
            )
            if not answers_request:
                return OutcomeResult(
                    target_id=target_id,
                    action=action,
                    success=False,
                    message="Match already exists",
                    error="duplicate",
                )

            if action == SwipeAction.LIKE:
                await self.relationship_store.update_edge_status(
                    existing.id, RelationshipStatus.ACCEPTED
                )
                logger.info("Mutual match", user_id=user_id, target_id=target_id)
                return OutcomeResult(
                    target_id=target_id,
                    action=action,
                    success=True,
                    match=True,
                    message=MUTUAL_MATCH_MESSAGE,
                )

            await self.relationship_store.update_edge_status(
                existing.id, RelationshipStatus.REJECTED
            )
            return OutcomeResult(
                target_id=target_id, action=action, success=True, message="User passed"
            )

        status = (
            RelationshipStatus.PENDING if action == SwipeAction.LIKE else RelationshipStatus.REJECTED
        )
        await self.relationship_store.create_edge(user_id, target_id, status)
        return OutcomeResult(
            target_id=target_id,
            action=action,
            success=True,
            message="Like sent successfully" if action == SwipeAction.LIKE else "User passed",
        )

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------
    def get_buffer_status(self, user_id: str) -> dict:
        status = self.buffers.get_buffer_status(user_id)
        if status is None:
            return {"user_id": user_id, "initialized": False, "remaining": 0}
        return {**status, "initialized": True}

    @staticmethod
    def _elapsed_ms(started: float) -> float:
        return round((time.perf_counter() - started) * 1000, 2)
