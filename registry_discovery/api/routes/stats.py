from dataclasses import asdict
from datetime import date

from fastapi import APIRouter, Depends, HTTPException, status

from registry_discovery.schemas.stats import DailyStatsOut
from registry_discovery.services.repository import (
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    get_repository,
)
from registry_discovery.services.stats import DailyStatsAggregator

router = APIRouter()


@router.get("/daily/{day}", response_model=DailyStatsOut)
async def get_daily_stats(day: date, repository=Depends(get_repository)) -> DailyStatsOut:
    try:
        stats = await repository.get_daily_stats(day)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    return DailyStatsOut(**asdict(stats))


@router.post("/daily/{day}/refresh", response_model=DailyStatsOut)
async def refresh_daily_stats(day: date, repository=Depends(get_repository)) -> DailyStatsOut:
    try:
        stats = await DailyStatsAggregator(repository).refresh(day)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return DailyStatsOut(**asdict(stats))
