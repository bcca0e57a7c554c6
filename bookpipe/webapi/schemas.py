"""Request and response payloads for the job API."""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..alignment import WordTimestamp
from ..jobs.models import JobKind, JobRecord, JobStatus, StatusSnapshot, TargetType


class JobCreateRequest(BaseModel):
    """Body of ``POST /jobs``."""

    model_config = ConfigDict(extra="forbid")

    target_type: TargetType
    target_id: str = Field(min_length=1)
    kind: JobKind = JobKind.NARRATE
    options: Dict[str, Any] = Field(default_factory=dict)


class JobCreatedResponse(BaseModel):
    job_id: str
    status: JobStatus
    total_tasks: int

    @classmethod
    def from_job(cls, job: JobRecord) -> "JobCreatedResponse":
        return cls(job_id=job.job_id, status=job.status, total_tasks=job.total_tasks)


class JobStatusResponse(BaseModel):
    """Counters and derived progress of one job."""

    status: JobStatus
    progress: int
    total_tasks: int
    completed_tasks: int
    failed_tasks: int

    @classmethod
    def from_snapshot(cls, snapshot: StatusSnapshot) -> "JobStatusResponse":
        return cls(**snapshot.to_dict())


class JobResponse(BaseModel):
    """Full job record."""

    job_id: str
    target_type: TargetType
    target_id: str
    kind: JobKind
    status: JobStatus
    phase: str
    progress: int
    cancel_requested: bool
    total_tasks: int
    completed_tasks: int
    failed_tasks: int
    created_at: float
    updated_at: float
    started_at: Optional[float] = None
    completed_at: Optional[float] = None
    error_message: Optional[str] = None
    options: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_job(cls, job: JobRecord) -> "JobResponse":
        return cls(**job.to_public_dict())


class JobListResponse(BaseModel):
    jobs: List[JobResponse]


class JobLogEntry(BaseModel):
    id: int
    job_id: str
    timestamp: float
    level: str
    message: str
    metadata: Optional[Dict[str, Any]] = None


class JobLogsResponse(BaseModel):
    job_id: str
    logs: List[JobLogEntry]


class WordTimestampPayload(BaseModel):
    word: str
    start_time: float
    end_time: float

    @classmethod
    def from_timestamp(cls, timestamp: WordTimestamp) -> "WordTimestampPayload":
        return cls(word=timestamp.word, start_time=timestamp.start_time, end_time=timestamp.end_time)


class WordTimestampsResponse(BaseModel):
    passage_id: str
    words: List[WordTimestampPayload]
