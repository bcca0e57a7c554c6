"""
Data models for the job orchestration core.

All models support dictionary round-trips for storage in SQLite.
"""

import json
import time
import uuid
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Optional, Dict, Any

from ..errors import ValidationError


class JobStatus(str, Enum):
    """Job execution status."""
    PENDING = "pending"                              # Created, nothing dispatched yet
    IN_PROGRESS = "in_progress"                      # Tasks dispatched
    COMPLETED = "completed"                          # Every task succeeded
    COMPLETED_WITH_ERRORS = "completed_with_errors"  # At least one task failed
    CANCELLED = "cancelled"                          # Cancelled by user

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    JobStatus.COMPLETED,
    JobStatus.COMPLETED_WITH_ERRORS,
    JobStatus.CANCELLED,
})

ACTIVE_STATUSES = frozenset({JobStatus.PENDING, JobStatus.IN_PROGRESS})

# Legal status moves; terminal states have none.
_TRANSITIONS = {
    JobStatus.PENDING: frozenset({JobStatus.IN_PROGRESS, JobStatus.COMPLETED, JobStatus.CANCELLED}),
    JobStatus.IN_PROGRESS: TERMINAL_STATUSES,
    JobStatus.COMPLETED: frozenset(),
    JobStatus.COMPLETED_WITH_ERRORS: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    """Check whether ``current -> target`` is a legal status move."""
    return target in _TRANSITIONS[current]


class TargetType(str, Enum):
    """Kind of entity a job operates on."""
    DOCUMENT = "document"
    CHAPTER = "chapter"
    SCENE = "scene"


class JobKind(str, Enum):
    """Which pipeline a job runs over its target."""
    ILLUSTRATE = "illustrate"  # Image generation
    NARRATE = "narrate"        # Speech synthesis with word timestamps


class TaskOutcome(str, Enum):
    """Result of executing one task."""
    SUCCESS = "success"
    FAILURE = "failure"


def parse_enum(enum_cls, value, label: str):
    """
    Coerce a raw value into ``enum_cls``.

    Raises:
        ValidationError: If the value is not a member
    """
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise ValidationError(f"Invalid {label} '{value}' (expected one of: {allowed})") from None


def compute_progress(completed: int, failed: int, total: int) -> int:
    """Percentage of accounted-for tasks, clamped to [0, 100]."""
    if total <= 0:
        return 100
    percentage = round(100 * (completed + failed) / total)
    return max(0, min(100, percentage))


def resolve_terminal_status(failed: int, cancel_requested: bool) -> JobStatus:
    """
    Terminal status for a job whose tasks are all accounted for.

    Cancellation wins over the failure count.
    """
    if cancel_requested:
        return JobStatus.CANCELLED
    if failed == 0:
        return JobStatus.COMPLETED
    return JobStatus.COMPLETED_WITH_ERRORS


@dataclass(frozen=True)
class TaskSpec:
    """Work item produced by target resolution, before it belongs to a job."""
    subject_id: str
    payload: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class TaskDescriptor:
    """
    One unit of work within a job.

    ``subject_id`` names the chapter, scene or passage the task works on;
    ``payload`` carries whatever the executor needs (text, prompt).
    """
    job_id: str
    index: int
    kind: JobKind
    subject_id: str
    payload: Dict[str, Any] = field(default_factory=dict)

    def describe(self) -> str:
        return f"{self.kind.value} task {self.index + 1} ({self.subject_id})"


@dataclass
class StatusSnapshot:
    """Read-only view of a job's counters."""
    status: JobStatus
    progress: int
    total_tasks: int
    completed_tasks: int
    failed_tasks: int

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['status'] = self.status.value
        return data


@dataclass
class JobFilter:
    """Filter for job listings."""
    status: Optional[JobStatus] = None
    target_type: Optional[TargetType] = None
    kind: Optional[JobKind] = None
    skip: int = 0
    take: Optional[int] = None


@dataclass
class JobRecord:
    """
    Persisted state of one pipeline run.

    ``progress`` is derived from the counters and cannot be set directly.
    """
    # Identity
    target_type: TargetType = TargetType.DOCUMENT
    target_id: str = ""
    kind: JobKind = JobKind.NARRATE
    job_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    # Status
    status: JobStatus = JobStatus.PENDING
    phase: str = "Initialization"
    cancel_requested: bool = False

    # Counters
    total_tasks: int = 0
    completed_tasks: int = 0
    failed_tasks: int = 0

    # Timestamps
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    started_at: Optional[float] = None
    completed_at: Optional[float] = None

    # Last task failure, for display only
    error_message: Optional[str] = None

    # Free-form parameters (voice, style) recorded at submission
    options: Dict[str, Any] = field(default_factory=dict)

    @property
    def progress(self) -> int:
        return compute_progress(self.completed_tasks, self.failed_tasks, self.total_tasks)

    @property
    def accounted_tasks(self) -> int:
        return self.completed_tasks + self.failed_tasks

    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def can_be_cancelled(self) -> bool:
        """Check if this job can still be cancelled."""
        return self.status in ACTIVE_STATUSES and not self.cancel_requested

    def snapshot(self) -> StatusSnapshot:
        return StatusSnapshot(
            status=self.status,
            progress=self.progress,
            total_tasks=self.total_tasks,
            completed_tasks=self.completed_tasks,
            failed_tasks=self.failed_tasks
        )

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert to dictionary for database storage.

        Enums become their values and ``options`` becomes a JSON string.
        """
        return {
            'job_id': self.job_id,
            'target_type': self.target_type.value,
            'target_id': self.target_id,
            'kind': self.kind.value,
            'status': self.status.value,
            'phase': self.phase,
            'cancel_requested': int(self.cancel_requested),
            'total_tasks': self.total_tasks,
            'completed_tasks': self.completed_tasks,
            'failed_tasks': self.failed_tasks,
            'created_at': self.created_at,
            'updated_at': self.updated_at,
            'started_at': self.started_at,
            'completed_at': self.completed_at,
            'error_message': self.error_message,
            'options': json.dumps(self.options),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'JobRecord':
        """Create from dictionary loaded from database."""
        options = data.get('options')
        if isinstance(options, str):
            options = json.loads(options) if options else {}

        return cls(
            job_id=data['job_id'],
            target_type=TargetType(data['target_type']),
            target_id=data['target_id'],
            kind=JobKind(data['kind']),
            status=JobStatus(data['status']),
            phase=data.get('phase') or "",
            cancel_requested=bool(data.get('cancel_requested')),
            total_tasks=data['total_tasks'],
            completed_tasks=data['completed_tasks'],
            failed_tasks=data['failed_tasks'],
            created_at=data['created_at'],
            updated_at=data['updated_at'],
            started_at=data.get('started_at'),
            completed_at=data.get('completed_at'),
            error_message=data.get('error_message'),
            options=options or {},
        )

    def to_public_dict(self) -> Dict[str, Any]:
        """Dictionary for API responses, including derived progress."""
        data = self.to_dict()
        data['cancel_requested'] = self.cancel_requested
        data['options'] = dict(self.options)
        data['progress'] = self.progress
        return data

    def format_status_message(self) -> str:
        """Format a user-friendly status message."""
        if self.status == JobStatus.PENDING:
            return "Waiting to start..."
        elif self.status == JobStatus.IN_PROGRESS:
            if self.cancel_requested:
                return f"Cancelling ({self.accounted_tasks}/{self.total_tasks} tasks done)"
            return f"{self.phase} ({self.progress}%)"
        elif self.status == JobStatus.COMPLETED:
            return "Completed successfully"
        elif self.status == JobStatus.COMPLETED_WITH_ERRORS:
            return f"Completed with {self.failed_tasks} failed task(s)"
        elif self.status == JobStatus.CANCELLED:
            return "Cancelled by user"
        raise ValueError(f"Unhandled status: {self.status}")


# Type aliases for clarity
JobID = str
