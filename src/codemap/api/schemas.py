"""
Request/response models for the HTTP job service.

The job payload embeds the full :class:`~codemap.core.contracts.codemap.Codemap`
(stage context included), so a client can later drive retries from it.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, Field, field_validator

from codemap.core.contracts.codemap import Codemap
from codemap.core.settings import DetailLevel, Mode


class JobStatus(str, Enum):
    """Lifecycle of one generation job."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


FINISHED_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})


class CodemapRequest(BaseModel):
    """Body of ``POST /codemaps``."""

    query: str = Field(min_length=1, description="Question about the codebase.")
    workspace: str = Field(description="Absolute path of the workspace root.")
    mode: Mode | None = None
    detail_level: DetailLevel | None = None

    @field_validator("query")
    @classmethod
    def _strip_query(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("query must not be blank")
        return value

    def workspace_root(self) -> Path:
        """Return the resolved workspace, raising ``ValueError`` if it is not a directory."""
        root = Path(self.workspace).expanduser()
        if not root.is_dir():
            raise ValueError(f"Workspace is not a directory: {self.workspace}")
        return root.resolve()


class SuggestionRequest(BaseModel):
    """Body of ``POST /suggestions``."""

    recent_files: list[str] = Field(default_factory=list)


class JobInfo(BaseModel):
    """Public state of a job, as returned by the API."""

    job_id: str
    status: JobStatus
    created_at: datetime
    query: str = ""
    phase: str | None = None
    error: str | None = None
    result: Codemap | None = None


__all__ = [
    "FINISHED_STATUSES",
    "CodemapRequest",
    "JobInfo",
    "JobStatus",
    "SuggestionRequest",
]
