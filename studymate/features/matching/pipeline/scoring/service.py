"""
Compatibility scoring - rates how well two student profiles fit as study partners.
"""

from __future__ import annotations

import math
from collections.abc import Iterable, Sequence
from datetime import UTC, datetime, timedelta

from studymate.features.matching.domain.models import (
    MatchScore,
    Profile,
    ScoreBreakdown,
    ScoredCandidate,
)

ONLINE_WINDOW = timedelta(minutes=5)


def _overlap_ratio(first: Sequence[str], second: Sequence[str]) -> float:
    """Shared entries normalised by the smaller set."""
    second_set = set(second)
    common = sum(1 for item in first if item in second_set)
    return common / min(len(first), len(second))


class CompatibilityScorer:
    """
    Weighted seven-factor compatibility score between two profiles.

    Pure and deterministic: missing optional data degrades to fixed default
    factor values, never to an error.
    """

    # Factor order matters: the weighted sum is accumulated in this order.
    WEIGHTS: dict[str, float] = {
        "university_match": 0.15,
        "major_match": 0.20,
        "year_compatibility": 0.10,
        "interests_match": 0.20,
        "skills_match": 0.15,
        "study_time_match": 0.15,
        "language_match": 0.05,
    }

    RELATED_MAJORS: dict[str, tuple[str, ...]] = {
        "Computer Science": ("Software Engineering", "Information Technology", "Data Science"),
        "Software Engineering": ("Computer Science", "Information Technology"),
        "Mathematics": ("Physics", "Computer Science", "Statistics"),
        "Physics": ("Mathematics", "Engineering"),
        "Business": ("Economics", "Marketing", "Finance"),
        "Marketing": ("Business", "Communications"),
        "Economics": ("Business", "Finance", "Mathematics"),
    }

    COMPLEMENTARY_SKILLS: dict[str, tuple[str, ...]] = {
        "Frontend": ("Backend", "Database", "API"),
        "Backend": ("Frontend", "Mobile", "UI/UX"),
        "Design": ("Development", "Frontend"),
        "Marketing": ("Analytics", "Data Science"),
        "Writing": ("Research", "Analysis"),
    }

    EMPTY_INTERESTS_SCORE = 0.3
    EMPTY_SKILLS_SCORE = 0.3
    EMPTY_STUDY_TIME_SCORE = 0.5
    EMPTY_LANGUAGE_SCORE = 0.5
    COMPLEMENTARY_WEIGHT = 0.8

    def calculate_match_score(self, current: Profile, target: Profile) -> MatchScore:
        """Compute the 0-100 compatibility score of ``target`` for ``current``."""
        breakdown = ScoreBreakdown(
            university_match=self.university_match(current, target),
            major_match=self.major_match(current, target),
            year_compatibility=self.year_compatibility(current, target),
            interests_match=self.interests_match(current, target),
            skills_match=self.skills_match(current, target),
            study_time_match=self.study_time_match(current, target),
            language_match=self.language_match(current, target),
        )

        total = 0.0
        for factor, weight in self.WEIGHTS.items():
            total += getattr(breakdown, factor) * weight

        return MatchScore(
            candidate_id=target.id,
            score=math.floor(total * 100 + 0.5),
            breakdown=breakdown,
        )

    @staticmethod
    def university_match(first: Profile, second: Profile) -> float:
        # TODO: partial credit for sister campuses once the campus directory exposes them
        if first.university == second.university:
            return 1.0
        return 0.3

    @classmethod
    def major_match(cls, first: Profile, second: Profile) -> float:
        if first.major == second.major:
            return 1.0

        first_related = cls.RELATED_MAJORS.get(first.major, ())
        second_related = cls.RELATED_MAJORS.get(second.major, ())
        if second.major in first_related or first.major in second_related:
            return 0.7

        return 0.2

    @staticmethod
    def year_compatibility(first: Profile, second: Profile) -> float:
        year_diff = abs(first.year - second.year)
        if year_diff == 0:
            return 1.0
        if year_diff == 1:
            return 0.8
        if year_diff == 2:
            return 0.5
        return 0.2

    @classmethod
    def interests_match(cls, first: Profile, second: Profile) -> float:
        if not first.interests or not second.interests:
            return cls.EMPTY_INTERESTS_SCORE
        return _overlap_ratio(first.interests, second.interests)

    @classmethod
    def skills_match(cls, first: Profile, second: Profile) -> float:
        """Best of direct overlap and (discounted) complementary coverage."""
        if not first.skills or not second.skills:
            return cls.EMPTY_SKILLS_SCORE

        overlap = _overlap_ratio(first.skills, second.skills)
        complementary = cls.complementary_skills_ratio(first.skills, second.skills)
        return max(overlap, complementary * cls.COMPLEMENTARY_WEIGHT)

    @classmethod
    def complementary_skills_ratio(cls, first: Sequence[str], second: Sequence[str]) -> float:
        """
        Fraction of complementary pairs suggested by ``first`` that ``second``
        actually covers. Zero when ``first`` has no catalogued skill.
        """
        second_set = set(second)
        matched = 0
        considered = 0
        for skill in first:
            for complement in cls.COMPLEMENTARY_SKILLS.get(skill, ()):
                considered += 1
                if complement in second_set:
                    matched += 1
        return matched / considered if considered else 0.0

    @classmethod
    def study_time_match(cls, first: Profile, second: Profile) -> float:
        if not first.preferred_study_time or not second.preferred_study_time:
            return cls.EMPTY_STUDY_TIME_SCORE
        return _overlap_ratio(first.preferred_study_time, second.preferred_study_time)

    @classmethod
    def language_match(cls, first: Profile, second: Profile) -> float:
        if not first.languages or not second.languages:
            return cls.EMPTY_LANGUAGE_SCORE
        return 1.0 if set(first.languages) & set(second.languages) else 0.3

    @staticmethod
    def is_online(profile: Profile, now: datetime | None = None) -> bool:
        """Presence derived from the profile's last activity timestamp."""
        if profile.last_active is None:
            return False
        now = now or datetime.now(UTC)
        last_active = profile.last_active
        if last_active.tzinfo is None:
            last_active = last_active.replace(tzinfo=UTC)
        return now - last_active <= ONLINE_WINDOW

    def score_candidate(self, current: Profile, candidate: Profile) -> ScoredCandidate:
        match = self.calculate_match_score(current, candidate)
        return ScoredCandidate(
            profile=candidate,
            score=match.score,
            breakdown=match.breakdown,
            is_online=self.is_online(candidate),
        )

    def recommend(
        self,
        current: Profile,
        candidates: Iterable[Profile],
        exclude_ids: Iterable[str] = (),
        limit: int = 10,
    ) -> list[ScoredCandidate]:
        """
        Rank candidates for ``current`` by compatibility.

        The requester and excluded ids are dropped; ties keep input order.
        """
        excluded = set(exclude_ids)
        scored = [
            self.score_candidate(current, candidate)
            for candidate in candidates
            if candidate.id != current.id and candidate.id not in excluded
        ]
        scored.sort(key=lambda c: c.score, reverse=True)
        return scored[:limit]


compatibility_scorer = CompatibilityScorer()
