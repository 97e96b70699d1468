from datetime import date, datetime

from pydantic import BaseModel, Field


class DailyStatsOut(BaseModel):
    date: date
    discovered: int
    validated: int
    added: int
    rejected: int
    pass_rate: float | None = None
    avg_validation_latency_ms: int | None = None
    source_breakdown: dict[str, int] = Field(default_factory=dict)
    updated_at: datetime | None = None
