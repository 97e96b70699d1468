from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException, status

from registry_discovery.api.routes.candidates import get_queue
from registry_discovery.schemas.submissions import SubmissionCreateRequest, SubmissionOut
from registry_discovery.services.queue import DiscoveryQueue, QueueValidationError
from registry_discovery.services.repository import (
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    get_repository,
)

router = APIRouter()


@router.post("", response_model=SubmissionOut, status_code=status.HTTP_202_ACCEPTED)
async def create_submission(
    payload: SubmissionCreateRequest,
    queue: DiscoveryQueue = Depends(get_queue),
) -> SubmissionOut:
    try:
        submission = await queue.submit(
            payload.repository_url,
            submitter_name=payload.submitter_name,
            submitter_email=payload.submitter_email,
            submitter_github=payload.submitter_github,
            description=payload.description,
            suggested_category=payload.suggested_category,
            suggested_tags=payload.suggested_tags,
        )
    except QueueValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc

    return SubmissionOut(**asdict(submission))


@router.get("/{submission_id}", response_model=SubmissionOut)
async def get_submission(submission_id: str, repository=Depends(get_repository)) -> SubmissionOut:
    try:
        submission = await repository.get_submission(submission_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    return SubmissionOut(**asdict(submission))
