"""
Tests for the compatibility scorer.
"""

from datetime import UTC, datetime, timedelta

import pytest

from studymate.features.matching.domain import Profile
from studymate.features.matching.pipeline.scoring import CompatibilityScorer

scorer = CompatibilityScorer()


def test_weighted_score_matches_hand_computation():
    first = Profile(
        id="a",
        university="State University",
        major="Computer Science",
        year=2,
        interests=["AI", "Databases", "Networks"],
        skills=["Python", "SQL", "Go"],
        languages=["English", "Spanish"],
    )
    second = Profile(
        id="b",
        university="City College",
        major="Computer Science",
        year=3,
        interests=["Networks", "AI", "Databases"],
        skills=["Go", "Python", "SQL"],
        languages=["English"],
    )

    result = scorer.calculate_match_score(first, second)

    # 0.15*0.3 + 0.20*1 + 0.10*0.8 + 0.20*1 + 0.15*1 + 0.15*0.5 + 0.05*1 = 0.80
    assert result.score == 80
    assert result.candidate_id == "b"
    assert result.breakdown.university_match == 0.3
    assert result.breakdown.year_compatibility == 0.8
    assert result.breakdown.study_time_match == 0.5


def test_empty_sets_fall_back_to_fixed_defaults():
    first = Profile(id="a", university="U", major="History", year=1)
    second = Profile(id="b", university="U", major="History", year=1)

    breakdown = scorer.calculate_match_score(first, second).breakdown

    assert breakdown.interests_match == 0.3
    assert breakdown.skills_match == 0.3
    assert breakdown.study_time_match == 0.5
    assert breakdown.language_match == 0.5


def test_score_is_symmetric_for_symmetric_factors():
    first = Profile(id="a", major="Physics", year=1, interests=["x", "y"])
    second = Profile(id="b", major="Mathematics", year=4, interests=["y"])

    assert (
        scorer.calculate_match_score(first, second).score
        == scorer.calculate_match_score(second, first).score
    )


@pytest.mark.parametrize(
    "first_major, second_major, expected",
    [
        ("Computer Science", "Computer Science", 1.0),
        ("Computer Science", "Data Science", 0.7),
        ("Statistics", "Mathematics", 0.7),
        ("Art", "Biology", 0.2),
    ],
)
def test_major_match(first_major, second_major, expected):
    assert scorer.major_match(Profile(id="a", major=first_major), Profile(id="b", major=second_major)) == expected


@pytest.mark.parametrize("diff, expected", [(0, 1.0), (1, 0.8), (2, 0.5), (3, 0.2), (5, 0.2)])
def test_year_compatibility(diff, expected):
    assert scorer.year_compatibility(Profile(id="a", year=1), Profile(id="b", year=1 + diff)) == expected


def test_complementary_skills_are_discounted():
    frontend = Profile(id="a", skills=["Frontend"])
    backend = Profile(id="b", skills=["Backend", "Database", "API"])

    # no direct overlap, every suggested complement covered
    assert scorer.skills_match(frontend, backend) == pytest.approx(0.8)


def test_duplicate_entries_do_not_inflate_overlap():
    first = Profile(id="a", interests=["AI", "AI", "AI"])
    second = Profile(id="b", interests=["AI", "Robotics"])

    assert first.interests == ["AI"]
    assert scorer.interests_match(first, second) == 1.0


def test_score_stays_within_bounds(make_profile):
    best = scorer.calculate_match_score(make_profile("a"), make_profile("b"))
    worst = scorer.calculate_match_score(
        Profile(id="a", university="U1", major="Art", year=1, languages=["French"]),
        Profile(id="b", university="U2", major="Law", year=6, languages=["German"]),
    )

    assert best.score == 100
    assert 0 <= worst.score <= 100


def test_recommend_filters_sorts_and_limits(make_profile):
    requester = make_profile("me")
    strong = make_profile("strong")
    weak = make_profile("weak", major="Art", university="Elsewhere", year=6)
    excluded = make_profile("excluded")

    ranked = scorer.recommend(requester, [weak, requester, strong, excluded], exclude_ids=["excluded"], limit=5)

    assert [c.id for c in ranked] == ["strong", "weak"]
    assert ranked[0].score > ranked[1].score
    assert ranked[0].distance is None


def test_is_online_uses_last_activity():
    now = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)
    recent = Profile(id="a", last_active=now - timedelta(minutes=2))
    stale = Profile(id="b", last_active=now - timedelta(hours=1))

    assert scorer.is_online(recent, now=now) is True
    assert scorer.is_online(stale, now=now) is False
    assert scorer.is_online(Profile(id="c"), now=now) is False
