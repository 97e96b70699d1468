from datetime import datetime

from pydantic import BaseModel, Field

from registry_discovery.services.models import SubmissionStatus


class SubmissionCreateRequest(BaseModel):
    repository_url: str = Field(min_length=1)
    submitter_name: str | None = Field(default=None, max_length=255)
    submitter_email: str | None = Field(default=None, max_length=255)
    submitter_github: str | None = Field(default=None, max_length=255)
    description: str | None = None
    suggested_category: str | None = Field(default=None, max_length=100)
    suggested_tags: list[str] = Field(default_factory=list)


class SubmissionOut(BaseModel):
    id: str
    repository_url: str
    candidate_id: str
    status: SubmissionStatus
    registry_entry_id: str | None = None
    submitter_name: str | None = None
    submitter_github: str | None = None
    description: str | None = None
    suggested_category: str | None = None
    suggested_tags: list[str] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime | None = None
