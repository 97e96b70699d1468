from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException, Query, status

from registry_discovery.schemas.candidates import (
    CandidateEnqueueRequest,
    CandidateEnqueueResponse,
    CandidateOut,
    QueueSummaryOut,
)
from registry_discovery.services.models import CandidateStatus
from registry_discovery.services.queue import DiscoveryQueue, QueueValidationError
from registry_discovery.services.repository import (
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    get_repository,
)

router = APIRouter()


def get_queue(repository=Depends(get_repository)) -> DiscoveryQueue:
    return DiscoveryQueue(repository)


@router.post("", response_model=CandidateEnqueueResponse, status_code=status.HTTP_202_ACCEPTED)
async def enqueue_candidate(
    payload: CandidateEnqueueRequest,
    queue: DiscoveryQueue = Depends(get_queue),
) -> CandidateEnqueueResponse:
    try:
        candidate_id = await queue.enqueue(
            payload.repository_url,
            payload.source_type,
            payload.priority,
            payload.metadata,
        )
        candidate = await queue.store.get_candidate(candidate_id)
    except QueueValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc

    return CandidateEnqueueResponse(candidate_id=candidate_id, repository_url=candidate.repository_url)


@router.get("", response_model=list[CandidateOut])
async def list_candidates(
    repository=Depends(get_repository),
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    candidate_status: CandidateStatus | None = Query(default=None, alias="status"),
) -> list[CandidateOut]:
    try:
        rows = await repository.list_candidates(status=candidate_status, limit=limit, offset=offset)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return [CandidateOut(**asdict(row)) for row in rows]


@router.get("/summary", response_model=QueueSummaryOut)
async def queue_summary(repository=Depends(get_repository)) -> QueueSummaryOut:
    try:
        summary = await repository.summarize_queue()
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return QueueSummaryOut(**summary)


@router.get("/{candidate_id}", response_model=CandidateOut)
async def get_candidate(candidate_id: str, repository=Depends(get_repository)) -> CandidateOut:
    try:
        row = await repository.get_candidate(candidate_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    return CandidateOut(**asdict(row))
