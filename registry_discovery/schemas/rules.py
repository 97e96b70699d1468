from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from registry_discovery.services.models import RuleKind


class RuleCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    kind: RuleKind
    enabled: bool = True
    required: bool = True
    criteria: dict[str, Any] = Field(default_factory=dict)
    weight: int = Field(default=1, gt=0)


class RulePatchRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=100)
    kind: RuleKind | None = None
    enabled: bool | None = None
    required: bool | None = None
    criteria: dict[str, Any] | None = None
    weight: int | None = Field(default=None, gt=0)


class RuleOut(BaseModel):
    id: str
    name: str
    kind: str
    enabled: bool
    required: bool
    criteria: dict[str, Any] = Field(default_factory=dict)
    weight: int
    created_at: datetime | None = None
    updated_at: datetime | None = None
