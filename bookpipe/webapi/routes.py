"""Routes for job lifecycle and read access."""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from ..jobs.models import JobFilter, JobKind, JobStatus, TargetType
from ..runtime import Runtime
from .schemas import (
    JobCreateRequest,
    JobCreatedResponse,
    JobListResponse,
    JobLogEntry,
    JobLogsResponse,
    JobResponse,
    JobStatusResponse,
    WordTimestampPayload,
    WordTimestampsResponse,
)

router = APIRouter()


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


@router.post("/jobs", response_model=JobCreatedResponse, status_code=status.HTTP_201_CREATED)
def create_job(payload: JobCreateRequest, runtime: Runtime = Depends(get_runtime)):
    """Resolve the target into tasks, then create and start a job for it."""

    job = runtime.orchestrator.submit(
        payload.target_type,
        payload.target_id,
        kind=payload.kind,
        options=payload.options,
    )
    return JobCreatedResponse.from_job(job)


@router.get("/jobs", response_model=JobListResponse)
def list_jobs(
    status_filter: Optional[JobStatus] = Query(None, alias="status"),
    target_type: Optional[TargetType] = None,
    kind: Optional[JobKind] = None,
    skip: int = Query(0, ge=0),
    take: Optional[int] = Query(None, ge=1, le=500),
    runtime: Runtime = Depends(get_runtime),
):
    """Return jobs matching the filters, newest first."""

    job_filter = JobFilter(status=status_filter, target_type=target_type, kind=kind, skip=skip, take=take)
    return JobListResponse(jobs=[JobResponse.from_job(job) for job in runtime.query.list(job_filter)])


@router.get("/jobs/target/{target_type}/{target_id}", response_model=JobResponse)
def get_job_for_target(target_type: TargetType, target_id: str, runtime: Runtime = Depends(get_runtime)):
    """Return the most recent job for a target."""

    job = runtime.query.get_by_target(target_type, target_id)
    if job is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No job for {target_type.value} {target_id}",
        )
    return JobResponse.from_job(job)


@router.get("/jobs/{job_id}", response_model=JobResponse)
def get_job(job_id: str, runtime: Runtime = Depends(get_runtime)):
    return JobResponse.from_job(runtime.query.get(job_id))


@router.get("/jobs/{job_id}/status", response_model=JobStatusResponse)
def get_job_status(job_id: str, runtime: Runtime = Depends(get_runtime)):
    return JobStatusResponse.from_snapshot(runtime.orchestrator.get_status(job_id))


@router.get("/jobs/{job_id}/logs", response_model=JobLogsResponse)
def get_job_logs(
    job_id: str,
    level: Optional[str] = None,
    limit: int = Query(100, ge=1, le=1000),
    runtime: Runtime = Depends(get_runtime),
):
    """Return the job's log entries, newest first."""

    entries = runtime.query.logs(job_id, level=level.upper() if level else None, limit=limit)
    return JobLogsResponse(job_id=job_id, logs=[JobLogEntry(**entry) for entry in entries])


@router.delete("/jobs/{job_id}", response_model=JobResponse)
def cancel_job(job_id: str, runtime: Runtime = Depends(get_runtime)):
    """Request cancellation; running tasks finish and are still counted."""

    return JobResponse.from_job(runtime.orchestrator.cancel(job_id))


@router.get("/passages/{passage_id}/timestamps", response_model=WordTimestampsResponse)
def get_word_timestamps(passage_id: str, runtime: Runtime = Depends(get_runtime)):
    """Return the word timestamps produced by the passage's last narration."""

    runtime.catalog.get_passage(passage_id)
    words = runtime.query.word_timestamps(passage_id)
    return WordTimestampsResponse(
        passage_id=passage_id,
        words=[WordTimestampPayload.from_timestamp(word) for word in words],
    )
