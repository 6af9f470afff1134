import json
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

from studymate.features.matching.domain import RerankingError
from studymate.features.matching.services import RerankingService


def _completion(content: str):
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


def _client(create: AsyncMock):
    return SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create)))


@pytest.fixture
def pool(make_profile):
    return [
        make_profile("c1"),
        make_profile("c2", major="Art"),
        make_profile("c3", year=5),
    ]


def test_parse_response_clamps_and_fills_gaps(pool):
    raw = "```json\n" + json.dumps(
        [
            {"userId": "c2", "score": 120, "reasoning": "Great fit"},
            {"userId": "unknown", "score": 90, "reasoning": "?"},
            {"userId": "c1", "score": 10},
            {"userId": "c2", "score": 70, "reasoning": "duplicate"},
        ]
    ) + "\n```"

    ranked = RerankingService.parse_response(raw, pool)

    assert [(r.candidate_id, r.score) for r in ranked] == [("c2", 99), ("c1", 60), ("c3", 60)]
    assert ranked[0].reasoning == "Great fit"
    assert ranked[1].reasoning == "No reasoning provided"
    assert ranked[2].reasoning == "Not ranked by AI (fallback)"


def test_parse_response_accepts_wrapped_object(pool):
    raw = json.dumps({"matches": [{"userId": "c3", "score": 88, "reasoning": "Same goals"}]})

    ranked = RerankingService.parse_response(raw, pool)

    assert ranked[0].candidate_id == "c3"
    assert len(ranked) == 3


def test_parse_response_skips_boolean_scores(pool):
    raw = json.dumps([{"userId": "c1", "score": True}])

    ranked = RerankingService.parse_response(raw, pool)

    assert ranked[0].reasoning == "Not ranked by AI (fallback)"


@pytest.mark.parametrize("raw", ["not json", json.dumps({"foo": 1}), json.dumps("text")])
def test_parse_response_rejects_unusable_output(raw, pool):
    with pytest.raises(RerankingError):
        RerankingService.parse_response(raw, pool)


@pytest.mark.asyncio
async def test_disabled_service_uses_local_scores(scorer, make_profile, pool):
    service = RerankingService(scorer, api_key=None)

    ranked = await service.rank(make_profile("me"), pool)

    assert service.enabled is False
    assert ranked[0].candidate_id == "c1"
    assert ranked[0].reasoning == "Compatibility score (AI reranking disabled)"
    assert {r.candidate_id for r in ranked} == {"c1", "c2", "c3"}


@pytest.mark.asyncio
async def test_model_ranking_is_used(scorer, make_profile, pool):
    create = AsyncMock(
        return_value=_completion(
            json.dumps(
                [
                    {"userId": "c3", "score": 91, "reasoning": "Shared goals"},
                    {"userId": "c1", "score": 80, "reasoning": "Same major"},
                    {"userId": "c2", "score": 65, "reasoning": "Different field"},
                ]
            )
        )
    )
    service = RerankingService(scorer, client=_client(create))

    ranked = await service.rank(make_profile("me"), pool)

    assert [r.candidate_id for r in ranked] == ["c3", "c1", "c2"]
    assert create.await_count == 1
    assert create.await_args.kwargs["model"] == "gpt-4o-mini"


@pytest.mark.asyncio
async def test_failures_fall_back_after_retries(scorer, make_profile, pool):
    create = AsyncMock(side_effect=RuntimeError("connection reset"))
    service = RerankingService(scorer, client=_client(create), max_retries=2)

    ranked = await service.rank(make_profile("me"), pool)

    assert create.await_count == 2
    assert all(r.reasoning == "Compatibility score (AI error)" for r in ranked)


@pytest.mark.asyncio
async def test_empty_model_reply_falls_back(scorer, make_profile, pool):
    create = AsyncMock(return_value=_completion(""))
    service = RerankingService(scorer, client=_client(create))

    ranked = await service.rank(make_profile("me"), pool)

    assert create.await_count == 1
    assert ranked[0].reasoning == "Compatibility score (AI error)"
