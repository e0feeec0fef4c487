"""Typed records describing jobs and their life cycle."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


def utc_now() -> datetime:
    """Return a timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


class RecordModel(BaseModel):
    """Base Pydantic model with strict field handling; records never change once accepted."""

    model_config = ConfigDict(extra="forbid", frozen=True)


class JobState(str, Enum):
    """Top-level states of the job state machine."""

    INITIALIZING = "INITIALIZING"
    GATHERING_CONTEXT = "GATHERING_CONTEXT"
    ITERATING = "ITERATING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


class JobStatus(str, Enum):
    """Terminal outcome reported to callers."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"


class RepairStatus(str, Enum):
    """Outcome of a single repair stage."""

    SUCCESS = "success"
    NO_CHANGES = "no_changes"
    SKIPPED = "skipped"
    FAILED = "failed"


class ProjectRef(RecordModel):
    """Target repository: a local path or a remote URL, plus optional upstream."""

    local_path: Optional[str] = None
    repository_url: Optional[str] = None
    github_repo: Optional[str] = None
    base_branch: Optional[str] = None

    @model_validator(mode="after")
    def _require_source(self) -> "ProjectRef":
        if not (self.local_path or self.repository_url):
            raise ValueError("project requires either local_path or repository_url")
        return self


class Job(RecordModel):
    """A single change request against one repository."""

    id: str = Field(min_length=1)
    prompt: str = Field(min_length=1)
    project: ProjectRef
    submitted_at: datetime = Field(default_factory=utc_now)


__all__ = [
    "Job",
    "JobState",
    "JobStatus",
    "ProjectRef",
    "RecordModel",
    "RepairStatus",
    "utc_now",
]
