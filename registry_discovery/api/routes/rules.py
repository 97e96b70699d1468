from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException, Response, status

from registry_discovery.schemas.rules import RuleCreateRequest, RuleOut, RulePatchRequest
from registry_discovery.services.repository import (
    RepositoryConflictError,
    RepositoryError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    RepositoryValidationError,
    get_repository,
)

router = APIRouter()


def _raise_http(exc: RepositoryError) -> None:
    if isinstance(exc, RepositoryUnavailableError):
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    if isinstance(exc, RepositoryNotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    if isinstance(exc, RepositoryConflictError):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    if isinstance(exc, RepositoryValidationError):
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    raise exc


@router.get("", response_model=list[RuleOut])
async def list_rules(repository=Depends(get_repository), enabled_only: bool = False) -> list[RuleOut]:
    try:
        rules = await repository.list_rules(enabled_only=enabled_only)
    except RepositoryError as exc:
        _raise_http(exc)

    return [RuleOut(**asdict(rule)) for rule in rules]


@router.post("", response_model=RuleOut, status_code=status.HTTP_201_CREATED)
async def create_rule(payload: RuleCreateRequest, repository=Depends(get_repository)) -> RuleOut:
    try:
        rule = await repository.create_rule(**payload.model_dump())
    except RepositoryError as exc:
        _raise_http(exc)

    return RuleOut(**asdict(rule))


@router.get("/{rule_id}", response_model=RuleOut)
async def get_rule(rule_id: str, repository=Depends(get_repository)) -> RuleOut:
    try:
        rule = await repository.get_rule(rule_id)
    except RepositoryError as exc:
        _raise_http(exc)

    return RuleOut(**asdict(rule))


@router.patch("/{rule_id}", response_model=RuleOut)
async def patch_rule(rule_id: str, payload: RulePatchRequest, repository=Depends(get_repository)) -> RuleOut:
    try:
        rule = await repository.update_rule(rule_id, payload.model_dump(exclude_unset=True))
    except RepositoryError as exc:
        _raise_http(exc)

    return RuleOut(**asdict(rule))


@router.delete("/{rule_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_rule(rule_id: str, repository=Depends(get_repository)) -> Response:
    try:
        await repository.delete_rule(rule_id)
    except RepositoryError as exc:
        _raise_http(exc)

    return Response(status_code=status.HTTP_204_NO_CONTENT)
