"""
Discovery routes.

HTTP surface for smart matches, outcome submission, buffer diagnostics and
on-demand precomputation. Services come from the ServiceContainer stored on
``app.state`` by the lifespan.
"""

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from studymate.auth.verify import current_user_id
from studymate.features.matching.domain import Outcome, ProfileNotFoundError
from studymate.features.matching.jobs import MatchPrecomputationService
from studymate.features.matching.services import DiscoveryService
from studymate.infrastructure.observability.logging import get_logger
from studymate.models.api.discovery_request import PrecomputeRequest, SmartMatchActionRequest
from studymate.models.api.discovery_response import (
    ActionResultResponse,
    BufferStatusResponse,
    CandidateResponse,
    PrecomputationJobResponse,
    PrecomputeCancelResponse,
    PrecomputeScheduledResponse,
    SmartMatchActionResponse,
    SmartMatchesResponse,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/discover", tags=["discover"])


def get_discovery_service(request: Request) -> DiscoveryService:
    return request.app.state.container.discovery_service


def get_precomputation_service(request: Request) -> MatchPrecomputationService:
    return request.app.state.container.precomputation_service


@router.get("/smart-matches", response_model=SmartMatchesResponse)
async def get_smart_matches(
    user_id: str = Depends(current_user_id),
    discovery: DiscoveryService = Depends(get_discovery_service),
    limit: int = Query(default=10, ge=1, le=50, description="Candidates to return (1-50)"),
    exclude_ids: str | None = Query(default=None, description="Comma-separated user ids to skip"),
):
    """Next page of ranked study-partner candidates."""
    excluded = [i.strip() for i in (exclude_ids or "").split(",") if i.strip()]

    try:
        result = await discovery.get_matches(user_id, limit=limit, exclude_ids=excluded)
    except ProfileNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User profile not found")
    except Exception as e:
        logger.error("Error getting smart matches", user_id=user_id, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to get matches"
        )

    return SmartMatchesResponse(
        matches=[CandidateResponse.from_candidate(c) for c in result.matches],
        total_available=result.total_available,
        remaining=result.remaining,
        source=result.source,
        execution_time_ms=result.execution_time_ms,
        excluded_count=result.excluded_count,
        message=result.message,
    )


@router.post("/smart-matches", response_model=SmartMatchActionResponse)
async def submit_smart_match_actions(
    body: SmartMatchActionRequest,
    user_id: str = Depends(current_user_id),
    discovery: DiscoveryService = Depends(get_discovery_service),
):
    """Record one like / pass, or a batch of them."""
    if body.actions is not None:
        outcomes = [Outcome(target_id=a.target_user_id, action=a.action) for a in body.actions]
    elif body.target_user_id and body.action is not None:
        outcomes = [Outcome(target_id=body.target_user_id, action=body.action)]
    else:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid action or target user"
        )

    try:
        batch = await discovery.record_outcomes(user_id, outcomes)
    except Exception as e:
        logger.error("Error recording match actions", user_id=user_id, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to record actions"
        )

    return SmartMatchActionResponse(
        success=all(r.success for r in batch.results),
        results=[ActionResultResponse.from_result(r) for r in batch.results],
        processed=batch.processed,
        remaining=batch.remaining,
        prefetch_triggered=batch.refill_triggered,
    )


@router.get("/buffer-status", response_model=BufferStatusResponse)
async def get_buffer_status(
    user_id: str = Depends(current_user_id),
    discovery: DiscoveryService = Depends(get_discovery_service),
):
    """Diagnostics for the caller's live candidate buffer."""
    return BufferStatusResponse(**discovery.get_buffer_status(user_id))


@router.post("/precompute", response_model=PrecomputeScheduledResponse, status_code=202)
async def request_precomputation(
    body: PrecomputeRequest | None = None,
    user_id: str = Depends(current_user_id),
    precomputation: MatchPrecomputationService = Depends(get_precomputation_service),
):
    """Schedule a score precomputation for the authenticated user."""
    priority = (body or PrecomputeRequest()).priority
    job_id = await precomputation.schedule_precomputation(user_id, priority)
    return PrecomputeScheduledResponse(job_id=job_id, priority=priority.value)


@router.get("/precompute/stats")
async def get_precomputation_stats(
    user_id: str = Depends(current_user_id),
    precomputation: MatchPrecomputationService = Depends(get_precomputation_service),
) -> dict:
    return precomputation.get_performance_stats()


@router.get("/precompute/{job_id}", response_model=PrecomputationJobResponse)
async def get_precomputation_job(
    job_id: str,
    user_id: str = Depends(current_user_id),
    precomputation: MatchPrecomputationService = Depends(get_precomputation_service),
):
    job = precomputation.get_job_status(job_id)
    if job is None or job.user_id != user_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    return PrecomputationJobResponse.from_job(job)


@router.delete("/precompute/{job_id}", response_model=PrecomputeCancelResponse)
async def cancel_precomputation_job(
    job_id: str,
    user_id: str = Depends(current_user_id),
    precomputation: MatchPrecomputationService = Depends(get_precomputation_service),
):
    """Cancel a job that has not started yet."""
    job = precomputation.get_job_status(job_id)
    if job is None or job.user_id != user_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")

    if not precomputation.cancel_job(job_id):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT, detail=f"Job is already {job.status.value}"
        )
    return PrecomputeCancelResponse(job_id=job_id, cancelled=True)
