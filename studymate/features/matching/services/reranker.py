"""
LLM re-ranking of a scored candidate pool.

Sends the requester and candidate profiles to an OpenAI chat model and
parses back an ordered list of ``{userId, score, reasoning}``. Any failure,
or a missing API key, degrades to the local compatibility ordering.
"""

import asyncio
import json
from collections.abc import Sequence

import openai
from openai import AsyncOpenAI

from studymate.features.matching.domain import Profile, RankedCandidate, RerankingError
from studymate.features.matching.pipeline.scoring import CompatibilityScorer
from studymate.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

MIN_AI_SCORE = 60
MAX_AI_SCORE = 99


class RerankingService:
    """Re-ranks candidates with an LLM, falling back to the local scorer."""

    def __init__(
        self,
        scorer: CompatibilityScorer,
        api_key: str | None = None,
        model: str = "gpt-4o-mini",
        timeout_s: float = 20.0,
        max_retries: int = 2,
        client: AsyncOpenAI | None = None,
    ):
        self.scorer = scorer
        self.model = model
        self.max_retries = max_retries
        self.client = client
        if self.client is None and api_key:
            self.client = AsyncOpenAI(api_key=api_key, timeout=timeout_s)

        logger.info("Reranking service initialized", model=model, ai_enabled=self.enabled)

    @property
    def enabled(self) -> bool:
        return self.client is not None

    async def rank(
        self, requester: Profile, candidates: Sequence[Profile]
    ) -> list[RankedCandidate]:
        """Return every candidate exactly once, best match first."""
        if not candidates:
            return []
        if not self.enabled:
            return self.fallback_ranking(requester, candidates, "AI reranking disabled")

        try:
            raw = await self._call_openai_with_retry(
                self._get_system_message(), self._build_user_message(requester, candidates)
            )
            ranked = self.parse_response(raw, candidates)
            logger.info(
                "AI reranking completed",
                requester_id=requester.id,
                candidates=len(candidates),
            )
            return ranked
        except RerankingError as e:
            logger.warning(
                "AI reranking failed, using local scores",
                requester_id=requester.id,
                error=str(e),
                operation=e.operation,
            )
            return self.fallback_ranking(requester, candidates, "AI error")

    def fallback_ranking(
        self, requester: Profile, candidates: Sequence[Profile], reason: str
    ) -> list[RankedCandidate]:
        ranked = self.scorer.recommend(requester, candidates, limit=len(candidates))
        return [
            RankedCandidate(
                candidate_id=c.id,
                score=c.score,
                reasoning=f"Compatibility score ({reason})",
            )
            for c in ranked
        ]

    def _get_system_message(self) -> str:
        return f"""You are a matching expert for StudyMate, a platform that pairs university students as study partners.

Sort the candidates by compatibility with the current user for study partnership.

Scoring criteria, in order of importance:
1. Major and academic alignment (30%): same or related majors, similar year
2. Shared interests (25%): common study topics and academic interests
3. Study time compatibility (20%): overlapping preferred study times
4. Skills complementarity (15%): skills that complement each other
5. University match (10%): same university for in-person sessions

Output: return ONLY a JSON array sorted from best to worst match, no prose:
[{{"userId": "candidate_id", "score": 95, "reasoning": "Same CS major, 4 shared interests"}}]

Scores must be integers between {MIN_AI_SCORE} and {MAX_AI_SCORE}. Keep reasoning brief and specific."""

    @staticmethod
    def _build_user_message(requester: Profile, candidates: Sequence[Profile]) -> str:
        def describe(profile: Profile) -> dict:
            return {
                "id": profile.id,
                "name": f"{profile.first_name} {profile.last_name}".strip(),
                "university": profile.university,
                "major": profile.major,
                "year": profile.year,
                "interests": profile.interests,
                "skills": profile.skills,
                "studyGoals": profile.study_goals,
                "preferredStudyTime": profile.preferred_study_time,
                "languages": profile.languages,
                "bio": profile.bio,
                "gpa": profile.gpa,
            }

        return (
            "### Current user\n"
            f"{json.dumps(describe(requester), indent=2)}\n\n"
            f"### Candidates ({len(candidates)})\n"
            f"{json.dumps([describe(c) for c in candidates], indent=2)}"
        )

    async def _call_openai_with_retry(self, system_message: str, user_message: str) -> str:
        last_error = None

        for attempt in range(self.max_retries):
            try:
                response = await self.client.chat.completions.create(
                    model=self.model,
                    messages=[
                        {"role": "system", "content": system_message},
                        {"role": "user", "content": user_message},
                    ],
                    temperature=0.3,
                )

                if not response.choices or not response.choices[0].message.content:
                    raise RerankingError("Empty response from OpenAI API", operation="rank")

                return response.choices[0].message.content.strip()

            except RerankingError:
                raise
            except openai.RateLimitError as e:
                last_error = e
                wait_time = min(2**attempt, 10)
                logger.warning("OpenAI rate limit hit, retrying", attempt=attempt + 1, wait_time=wait_time)
                if attempt < self.max_retries - 1:
                    await asyncio.sleep(wait_time)

            except openai.APITimeoutError as e:
                last_error = e
                logger.warning("OpenAI API timeout, retrying", attempt=attempt + 1, error=str(e))

            except openai.APIError as e:
                last_error = e
                status_code = getattr(e, "status_code", None)
                if status_code is not None and 400 <= status_code < 500:
                    logger.error("OpenAI client error (not retrying)", error=str(e))
                    break
                logger.warning("OpenAI API error, retrying", attempt=attempt + 1, error=str(e))

            except Exception as e:
                last_error = e
                logger.warning(
                    "Unexpected error calling OpenAI, retrying",
                    attempt=attempt + 1,
                    error=str(e),
                    error_type=type(e).__name__,
                )

        raise RerankingError(
            f"OpenAI API failed after {self.max_retries} attempts: {last_error}",
            operation="rank",
        ) from last_error

    @staticmethod
    def parse_response(raw: str, candidates: Sequence[Profile]) -> list[RankedCandidate]:
        """
        Parse the model output into a ranking covering every candidate.

        Markdown fences are tolerated, scores are clamped to 60-99, unknown or
        repeated ids are dropped and unranked candidates are appended with the
        minimum score.
        """
        text = raw.strip()
        if text.startswith("```"):
            text = text.removeprefix("```json").removeprefix("```")
            text = text.removesuffix("```").strip()

        try:
            parsed = json.loads(text)
        except json.JSONDecodeError as e:
            raise RerankingError("OpenAI returned invalid JSON", operation="parse") from e

        if isinstance(parsed, dict):
            parsed = parsed.get("matches", parsed.get("candidates"))
        if not isinstance(parsed, list):
            raise RerankingError("Ranking response is not an array", operation="parse")

        known = {c.id for c in candidates}
        ranked: list[RankedCandidate] = []
        seen: set[str] = set()
        for item in parsed:
            if not isinstance(item, dict):
                continue
            user_id = item.get("userId")
            score = item.get("score")
            if user_id not in known or user_id in seen:
                continue
            if isinstance(score, bool) or not isinstance(score, (int, float)):
                continue

            seen.add(user_id)
            ranked.append(
                RankedCandidate(
                    candidate_id=user_id,
                    score=min(MAX_AI_SCORE, max(MIN_AI_SCORE, score)),
                    reasoning=item.get("reasoning") or "No reasoning provided",
                )
            )

        for candidate in candidates:
            if candidate.id not in seen:
                ranked.append(
                    RankedCandidate(
                        candidate_id=candidate.id,
                        score=MIN_AI_SCORE,
                        reasoning="Not ranked by AI (fallback)",
                    )
                )
        return ranked
