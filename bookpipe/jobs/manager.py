"""
Job orchestration.

``JobOrchestrator`` owns every write to a job's counters and status. It
creates jobs, feeds their tasks to the worker pool, folds task outcomes into
the counters and decides when a job is finished.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional, Protocol, Sequence

from ..errors import (
    ConflictError,
    InvalidStateError,
    NotFoundError,
    PersistenceError,
    ValidationError
)
from .locking import JobLockManager
from .logger import JobLogger
from .models import (
    JobKind,
    JobRecord,
    JobStatus,
    StatusSnapshot,
    TargetType,
    TaskDescriptor,
    TaskOutcome,
    TaskSpec,
    JobID,
    can_transition,
    parse_enum,
    resolve_terminal_status
)
from .storage import JobStore
from .worker import CancellationToken, TaskExecutor, TaskResult, WorkerPool, execute_task

logger = logging.getLogger(__name__)


class TargetResolver(Protocol):
    def resolve_tasks(self, target_type: TargetType, target_id: str, kind: JobKind) -> Sequence[TaskSpec]: ...


@dataclass
class _JobRun:
    """In-process bookkeeping for a job that may still have work queued."""
    token: CancellationToken = field(default_factory=CancellationToken)
    in_flight: int = 0
    finished: threading.Event = field(default_factory=threading.Event)


@dataclass
class _QueuedTask:
    task: TaskDescriptor
    run: _JobRun


class JobOrchestrator:
    """
    Create, run, cancel and track jobs.

    Every counter update for a job happens under that job's lock and goes
    through the store's atomic increment, so concurrent workers never lose
    an update.

    Example:
        orchestrator = JobOrchestrator(storage, executors={JobKind.NARRATE: speech})
        job = orchestrator.create(TargetType.CHAPTER, chapter_id, task_count=12)
        orchestrator.start(job.job_id, specs)
        orchestrator.get_status(job.job_id).progress
    """

    def __init__(
        self,
        storage: JobStore,
        executors: Optional[Mapping[JobKind, TaskExecutor]] = None,
        resolver: Optional[TargetResolver] = None,
        max_workers: int = 4,
        task_timeout: float = 120.0,
        persist_retries: int = 3,
        persist_backoff: float = 0.05
    ):
        """
        Initialize the orchestrator and start its worker pool.

        Args:
            storage: Job store (SQLite or in-memory)
            executors: Executor for each job kind
            resolver: Expands targets into task specs for ``submit``
            max_workers: Worker pool size
            task_timeout: Seconds before a running task counts as failed
            persist_retries: Attempts for each counter or status write
            persist_backoff: Base delay between write attempts
        """
        self.storage = storage
        self.executors: Dict[JobKind, TaskExecutor] = dict(executors or {})
        self.resolver = resolver
        self.task_timeout = task_timeout
        self.persist_retries = max(1, persist_retries)
        self.persist_backoff = persist_backoff

        self._locks = JobLockManager()
        self._runs: Dict[JobID, _JobRun] = {}
        self._runs_lock = threading.Lock()
        self._submit_lock = threading.Lock()

        self._calls = ThreadPoolExecutor(max_workers, thread_name_prefix="bookpipe-call")
        self._pool = WorkerPool(max_workers, self._dispatch)
        self._pool.start()

    @classmethod
    def from_config(cls, config, storage: JobStore, executors=None, resolver=None) -> 'JobOrchestrator':
        """Build an orchestrator from a PipelineConfig."""
        return cls(
            storage,
            executors=executors,
            resolver=resolver,
            max_workers=config.max_workers,
            task_timeout=config.task_timeout,
            persist_retries=config.persist_retries,
            persist_backoff=config.persist_backoff
        )

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.shutdown()

    # Public API

    def create(
        self,
        target_type,
        target_id: str,
        task_count: int,
        kind=JobKind.NARRATE,
        options: Optional[Dict[str, Any]] = None
    ) -> JobRecord:
        """
        Persist a new job.

        Args:
            target_type: document, chapter or scene
            target_id: Identifier of the target
            task_count: Number of tasks the job will run
            kind: Pipeline to run (narrate or illustrate)
            options: Free-form parameters recorded with the job

        Returns:
            The new job; ``completed`` already when ``task_count`` is 0

        Raises:
            ValidationError: If any argument is malformed
        """
        target_type = parse_enum(TargetType, target_type, "target type")
        kind = parse_enum(JobKind, kind, "job kind")
        if isinstance(task_count, bool) or not isinstance(task_count, int):
            raise ValidationError(f"task_count must be an integer, got {task_count!r}")
        if task_count < 0:
            raise ValidationError(f"task_count must not be negative, got {task_count}")
        if not target_id or not str(target_id).strip():
            raise ValidationError("target_id is required")

        now = time.time()
        job = JobRecord(
            target_type=target_type,
            target_id=str(target_id),
            kind=kind,
            total_tasks=task_count,
            created_at=now,
            updated_at=now,
            options=dict(options or {})
        )

        if task_count == 0:
            job.status = JobStatus.COMPLETED
            job.phase = "Finished"
            job.started_at = now
            job.completed_at = now

        self.storage.save_new(job)

        self._job_logger(job.job_id).info(
            f"Job created for {target_type.value} {job.target_id}",
            metadata={
                'kind': kind.value,
                'total_tasks': task_count,
                'status': job.status.value
            }
        )
        return job

    def start(self, job_id: JobID, tasks: Optional[Sequence[TaskSpec]] = None) -> JobRecord:
        """
        Move a pending job to ``in_progress`` and queue its tasks.

        Args:
            job_id: Job to start
            tasks: One spec per task; defaults to anonymous numbered tasks

        Raises:
            NotFoundError: If the job does not exist
            InvalidStateError: If the job is not pending
            ValidationError: If the number of specs differs from total_tasks
        """
        with self._locks.job_lock(job_id):
            job = self._require(job_id)
            if job.status != JobStatus.PENDING:
                raise InvalidStateError(
                    f"Job {job_id} cannot be started from status {job.status.value}",
                    job_id=job_id,
                    status=job.status.value
                )

            specs = list(tasks) if tasks is not None else [
                TaskSpec(subject_id=str(index)) for index in range(job.total_tasks)
            ]
            if len(specs) != job.total_tasks:
                raise ValidationError(
                    f"Job {job_id} expects {job.total_tasks} tasks, got {len(specs)}"
                )

            run = self._run_for(job_id)
            job.status = JobStatus.IN_PROGRESS
            job.phase = "Dispatching"
            job.started_at = job.updated_at = time.time()
            self._persist(self.storage.update_job, job)

            for index, spec in enumerate(specs):
                descriptor = TaskDescriptor(
                    job_id=job_id,
                    index=index,
                    kind=job.kind,
                    subject_id=spec.subject_id,
                    payload=dict(spec.payload)
                )
                self._pool.submit(_QueuedTask(descriptor, run))

        self._job_logger(job_id).info(
            f"Job started with {job.total_tasks} task(s)",
            metadata={'queued_behind': self._pool.pending()}
        )
        return job

    def submit(
        self,
        target_type,
        target_id: str,
        kind=JobKind.NARRATE,
        options: Optional[Dict[str, Any]] = None
    ) -> JobRecord:
        """
        Resolve a target into tasks, then create and start a job for it.

        Raises:
            NotFoundError: If the target does not exist
            ConflictError: If a job for the same target and kind is active
            ValidationError: If the target type or kind is unknown
        """
        if self.resolver is None:
            raise RuntimeError("No target resolver configured")

        target_type = parse_enum(TargetType, target_type, "target type")
        kind = parse_enum(JobKind, kind, "job kind")
        specs = list(self.resolver.resolve_tasks(target_type, target_id, kind))

        with self._submit_lock:
            active = self.storage.find_active(target_type, target_id, kind)
            if active is not None:
                raise ConflictError(
                    f"A {kind.value} job is already running for {target_type.value} {target_id}",
                    job_id=active.job_id,
                    status=active.status.value
                )
            job = self.create(target_type, target_id, len(specs), kind=kind, options=options)
            if job.total_tasks > 0:
                job = self.start(job.job_id, specs)

        return job

    def report_task_outcome(
        self,
        job_id: JobID,
        outcome,
        error: Optional[str] = None
    ) -> JobRecord:
        """
        Fold one task outcome into the job's counters.

        Outcomes arriving after the job reached a terminal status are
        discarded and the stored job is returned unchanged.

        Args:
            job_id: Job the task belongs to
            outcome: success or failure
            error: Failure message kept on the job for display

        Raises:
            NotFoundError: If the job does not exist
            InvalidStateError: If the job has not been started
            PersistenceError: If the counter write keeps failing
        """
        outcome = parse_enum(TaskOutcome, outcome, "task outcome")
        with self._locks.job_lock(job_id):
            return self._apply_outcome(job_id, outcome, error)

    def cancel(self, job_id: JobID) -> JobRecord:
        """
        Request cancellation of a job.

        Queued tasks are dropped without running. Tasks already running
        finish and are still counted. The job becomes ``cancelled`` once
        nothing is left running, immediately if nothing is.

        Raises:
            NotFoundError: If the job does not exist
            InvalidStateError: If the job is terminal or already cancelling
        """
        with self._locks.job_lock(job_id):
            job = self._require(job_id)
            if not job.can_be_cancelled():
                if job.is_terminal():
                    message = f"Job {job_id} already finished with status {job.status.value}"
                else:
                    message = f"Cancellation of job {job_id} was already requested"
                raise InvalidStateError(message, job_id=job_id, status=job.status.value)

            run = self._run_for(job_id)
            run.token.cancel()
            job.cancel_requested = True
            job.phase = "Cancelling"
            job.updated_at = time.time()

            if run.in_flight == 0:
                self._finalize(job, JobStatus.CANCELLED)
            else:
                self._persist(self.storage.update_job, job)

        self._job_logger(job_id).warning(
            "Job cancellation requested",
            metadata={'in_flight': run.in_flight, 'status': job.status.value}
        )
        return job

    def get_status(self, job_id: JobID) -> StatusSnapshot:
        """
        Current counters and derived progress of a job.

        Raises:
            NotFoundError: If the job does not exist
        """
        return self._require(job_id).snapshot()

    def wait(self, job_id: JobID, timeout: Optional[float] = None, poll_interval: float = 0.05) -> JobRecord:
        """
        Block until a job is terminal.

        Raises:
            NotFoundError: If the job does not exist
            TimeoutError: If the job is still running after ``timeout``
        """
        deadline = None if timeout is None else time.monotonic() + timeout

        while True:
            job = self._require(job_id)
            if job.is_terminal():
                return job

            remaining = None if deadline is None else deadline - time.monotonic()
            if remaining is not None and remaining <= 0:
                raise TimeoutError(f"Job {job_id} still {job.status.value} after {timeout}s")

            with self._runs_lock:
                run = self._runs.get(job_id)
            step = poll_interval if remaining is None else min(poll_interval, remaining)
            if run is not None:
                run.finished.wait(step)
            else:
                time.sleep(step)

    def shutdown(self, wait: bool = True):
        """Stop the worker pool and the provider call threads."""
        self._pool.shutdown(wait=wait)
        self._calls.shutdown(wait=wait)

    # Worker side

    def _dispatch(self, item: _QueuedTask):
        """Worker pool callback: run one queued task unless its job was cancelled."""
        task = item.task
        if not self._claim(item):
            logger.debug("Dropped %s of cancelled job %s", task.describe(), task.job_id)
            return

        job_logger = self._job_logger(task.job_id)
        job_logger.log_task_start(task)

        result = execute_task(self.executors.get(task.kind), task, self.task_timeout, self._calls)

        if result.succeeded:
            job_logger.log_task_complete(task, result.duration_seconds, result.artifact)
        else:
            job_logger.error(
                f"Failed {task.describe()}: {result.error}",
                metadata={'task_index': task.index, 'subject_id': task.subject_id}
            )

        self._finish(item, result)

    def _claim(self, item: _QueuedTask) -> bool:
        """Mark a task as running, unless its job was cancelled first."""
        if item.run.token.is_cancelled():
            return False
        with self._locks.job_lock(item.task.job_id):
            if item.run.token.is_cancelled():
                return False
            item.run.in_flight += 1
            return True

    def _finish(self, item: _QueuedTask, result: TaskResult):
        job_id = item.task.job_id
        with self._locks.job_lock(job_id):
            item.run.in_flight -= 1
            try:
                self._apply_outcome(job_id, result.outcome, result.error)
            except PersistenceError as e:
                self._abandon(item, f"Lost {result.outcome.value} outcome of {item.task.describe()}: {e}")

    def _abandon(self, item: _QueuedTask, reason: str):
        """
        End a job whose counters could not be written.

        Remaining queued tasks are dropped and the job is closed as
        ``completed_with_errors`` (or ``cancelled``) with ``reason`` as its
        error message, so waiters are released instead of seeing a job stuck
        in progress.
        """
        job_id = item.task.job_id
        item.run.token.cancel()
        logger.error("Job %s abandoned: %s", job_id, reason)

        try:
            job = self._require(job_id)
            if not job.is_terminal():
                self._job_logger(job_id).error(reason)
                job.error_message = reason
                status = JobStatus.CANCELLED if job.cancel_requested else JobStatus.COMPLETED_WITH_ERRORS
                self._finalize(job, status)
        except PersistenceError as e:
            logger.error("Could not record the end of job %s: %s", job_id, e)
        finally:
            with self._runs_lock:
                if self._runs.get(job_id) is item.run:
                    del self._runs[job_id]
            item.run.finished.set()

    # Internals; callers hold the job lock

    def _apply_outcome(self, job_id: JobID, outcome: TaskOutcome, error: Optional[str]) -> JobRecord:
        job = self._require(job_id)

        if job.is_terminal():
            self._job_logger(job_id).warning(
                f"Discarded {outcome.value} outcome for finished job",
                metadata={'status': job.status.value}
            )
            return job
        if job.status == JobStatus.PENDING:
            raise InvalidStateError(
                f"Job {job_id} has not been started",
                job_id=job_id,
                status=job.status.value
            )
        if job.accounted_tasks >= job.total_tasks:
            return job

        field_name = 'completed_tasks' if outcome == TaskOutcome.SUCCESS else 'failed_tasks'
        job = self._persist(self.storage.atomic_increment, job_id, field_name)

        self._job_logger(job_id).log_progress(
            job.completed_tasks, job.failed_tasks, job.total_tasks, job.progress
        )

        with self._runs_lock:
            run = self._runs.get(job_id)
        in_flight = run.in_flight if run is not None else 0

        if outcome == TaskOutcome.FAILURE and error:
            job.error_message = error

        if job.accounted_tasks == job.total_tasks:
            self._finalize(job, resolve_terminal_status(job.failed_tasks, job.cancel_requested))
        elif job.cancel_requested and in_flight == 0:
            self._finalize(job, JobStatus.CANCELLED)
        elif outcome == TaskOutcome.FAILURE and error:
            self._persist(self.storage.update_job, job)

        return job

    def _finalize(self, job: JobRecord, status: JobStatus):
        if not can_transition(job.status, status):
            raise InvalidStateError(
                f"Job {job.job_id} cannot move from {job.status.value} to {status.value}",
                job_id=job.job_id,
                status=job.status.value
            )

        job.status = status
        job.phase = "Cancelled" if status == JobStatus.CANCELLED else "Finished"
        job.completed_at = job.updated_at = time.time()
        self._persist(self.storage.update_job, job)

        with self._runs_lock:
            run = self._runs.pop(job.job_id, None)
        if run is not None:
            run.finished.set()

        self._job_logger(job.job_id).info(
            f"Job finished: {job.format_status_message()}",
            metadata={
                'status': status.value,
                'completed_tasks': job.completed_tasks,
                'failed_tasks': job.failed_tasks,
                'total_tasks': job.total_tasks
            }
        )

    def _persist(self, operation: Callable[..., Any], *args) -> Any:
        """Run a storage write, retrying transient PersistenceErrors."""
        for attempt in range(1, self.persist_retries + 1):
            try:
                return operation(*args)
            except PersistenceError as e:
                if attempt == self.persist_retries:
                    raise
                logger.warning(
                    "Storage write failed (attempt %d/%d): %s",
                    attempt, self.persist_retries, e
                )
                time.sleep(self.persist_backoff * attempt)

    def _require(self, job_id: JobID) -> JobRecord:
        job = self.storage.load_by_id(job_id)
        if job is None:
            raise NotFoundError("job", job_id)
        return job

    def _run_for(self, job_id: JobID) -> _JobRun:
        with self._runs_lock:
            run = self._runs.get(job_id)
            if run is None:
                run = _JobRun()
                self._runs[job_id] = run
            return run

    def _job_logger(self, job_id: JobID) -> JobLogger:
        return JobLogger(job_id, self.storage)
