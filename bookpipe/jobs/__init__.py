"""
Job orchestration for document pipelines.

A job runs one task per chapter, scene or passage of its target on a shared
worker pool. Jobs are persisted to SQLite, tolerate individual task failures
and can be cancelled cooperatively.

Key Components:
- JobOrchestrator: Create, start, cancel and track jobs
- JobQueryService: Read-only access to jobs, logs and word timestamps
- JobStorage: SQLite persistence layer
- JobLogger: Structured per-job logging
- WorkerPool: Threads executing queued tasks

Example Usage:
    from bookpipe.jobs import JobOrchestrator, JobStorage, TargetType

    orchestrator = JobOrchestrator(JobStorage(), executors=executors)
    job = orchestrator.create(TargetType.CHAPTER, chapter_id, task_count=3)
    orchestrator.start(job.job_id, specs)

    # Check status
    print(f"Progress: {orchestrator.get_status(job.job_id).progress}%")
"""

from .models import (
    JobRecord,
    JobStatus,
    JobKind,
    TargetType,
    TaskOutcome,
    TaskSpec,
    TaskDescriptor,
    StatusSnapshot,
    JobFilter,
    JobID
)

from .storage import JobStorage, MemoryJobStorage, JobStore
from .logger import JobLogger
from .manager import JobOrchestrator
from .query import JobQueryService, JobListing
from .worker import (
    CancellationToken,
    TaskExecutor,
    SpeechTaskExecutor,
    ImageTaskExecutor,
    WorkerPool
)

__all__ = [
    # Data models
    'JobRecord',
    'JobStatus',
    'JobKind',
    'TargetType',
    'TaskOutcome',
    'TaskSpec',
    'TaskDescriptor',
    'StatusSnapshot',
    'JobFilter',
    'JobID',

    # Core components
    'JobStorage',
    'MemoryJobStorage',
    'JobStore',
    'JobLogger',
    'JobOrchestrator',
    'JobQueryService',
    'JobListing',

    # Execution
    'CancellationToken',
    'TaskExecutor',
    'SpeechTaskExecutor',
    'ImageTaskExecutor',
    'WorkerPool',
]
