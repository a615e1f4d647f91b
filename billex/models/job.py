"""
Async job model
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class JobStatus(str, Enum):
    """Job execution status"""
    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


class AsyncJob(BaseModel):
    """Snapshot of one deferred unit of work"""
    job_id: str
    kind: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    progress: int = Field(0, ge=0, le=100)
    status: JobStatus = JobStatus.QUEUED

    result_artifact_path: Optional[str] = None
    scheduled_cleanup_at: Optional[datetime] = None
    error: Optional[str] = None
    attempts: int = 0

    created_at: Optional[datetime] = None
    run_after: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def finished(self) -> bool:
        return self.status in (JobStatus.SUCCEEDED, JobStatus.FAILED)


class JobOutcome(BaseModel):
    """What a job handler returns"""
    artifact_path: Optional[str] = None
    summary: Dict[str, Any] = Field(default_factory=dict)
