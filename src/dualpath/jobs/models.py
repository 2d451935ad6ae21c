"""Domain models for the background job queue."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

DEEP_PROCESSING_JOB_TYPE = "deep-processing"


class JobStatus(str, Enum):
    """Durable job lifecycle states."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in {JobStatus.COMPLETED, JobStatus.FAILED}


class ErrorClass(str, Enum):
    """Normalized failure classes used by handlers and callers."""

    TRANSIENT = "transient"
    PERMANENT = "permanent"
    UNKNOWN = "unknown"


@dataclass(slots=True)
class JobView:
    """Readable job view for workers, publishers and the CLI."""

    job_id: str
    job_type: str
    status: JobStatus
    payload: dict[str, Any]
    output_content: str | None
    output_metadata: dict[str, Any] | None
    error_message: str | None
    error_code: str | None
    user_id: str | None
    thread_id: str | None
    worker_id: str | None
    attempt: int
    created_at: datetime
    started_at: datetime | None
    completed_at: datetime | None
    updated_at: datetime


@dataclass(slots=True)
class JobEventView:
    """Job event entry for audit trail."""

    event_id: int
    job_id: str
    event_type: str
    status_from: JobStatus | None
    status_to: JobStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class JobDetails:
    """Job details with event stream."""

    job: JobView
    events: list[JobEventView]


@dataclass(slots=True)
class StaleCleanupResult:
    """Outcome of one stale-job sweep."""

    requeued: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.requeued) + len(self.failed)


@dataclass(slots=True)
class FastReplyWrite:
    """Fast reply record persisted next to the job it promises."""

    user_id: str
    thread_id: str
    job_id: str | None
    content: str
    response_type: str
    has_follow_up: bool


@dataclass(slots=True)
class FastReplyView:
    """Stored fast reply."""

    reply_id: str
    user_id: str
    thread_id: str
    job_id: str | None
    content: str
    response_type: str
    has_follow_up: bool
    follow_up_arrived: bool
    created_at: datetime
