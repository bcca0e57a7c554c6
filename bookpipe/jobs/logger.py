"""
Structured logging system for jobs.

Provides thread-safe logging with persistence to the job store.
"""

import logging
import threading
from typing import Optional, Dict, Any

from .models import JobID, TaskDescriptor
from .storage import JobStore


class JobLogger:
    """
    Logger for job-specific structured logging.

    Features:
    - Thread-safe logging operations
    - Persistence through the job store
    - Structured metadata support
    - Standard Python logging integration
    """

    # Log levels
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"

    def __init__(self, job_id: JobID, storage: JobStore):
        """
        Initialize logger for a specific job.

        Args:
            job_id: Job ID to log for
            storage: Job store used for persistence
        """
        self.job_id = job_id
        self.storage = storage
        self._lock = threading.Lock()
        self._py_logger = logging.getLogger(f"bookpipe.job.{job_id}")

    def _log(
        self,
        level: str,
        message: str,
        metadata: Optional[Dict[str, Any]] = None
    ):
        """
        Internal logging method.

        Args:
            level: Log level
            message: Log message
            metadata: Optional structured metadata
        """
        py_level = self._level_to_py_level(level)

        with self._lock:
            self.storage.add_log(
                job_id=self.job_id,
                level=level,
                message=message,
                metadata=metadata
            )

        if self._py_logger.isEnabledFor(py_level):
            extra_msg = f" [{metadata}]" if metadata else ""
            self._py_logger.log(py_level, f"{message}{extra_msg}")

    @staticmethod
    def _level_to_py_level(level: str) -> int:
        """Convert string level to Python logging level."""
        return {
            "DEBUG": logging.DEBUG,
            "INFO": logging.INFO,
            "WARNING": logging.WARNING,
            "ERROR": logging.ERROR,
            "CRITICAL": logging.CRITICAL,
        }.get(level, logging.INFO)

    def debug(self, message: str, metadata: Optional[Dict[str, Any]] = None):
        """Log debug message."""
        self._log(self.DEBUG, message, metadata)

    def info(self, message: str, metadata: Optional[Dict[str, Any]] = None):
        """Log info message."""
        self._log(self.INFO, message, metadata)

    def warning(self, message: str, metadata: Optional[Dict[str, Any]] = None):
        """Log warning message."""
        self._log(self.WARNING, message, metadata)

    def error(self, message: str, metadata: Optional[Dict[str, Any]] = None):
        """Log error message."""
        self._log(self.ERROR, message, metadata)

    def log_progress(self, completed: int, failed: int, total: int, progress: int):
        """Log a counter update."""
        self.debug(
            f"Progress: {completed + failed}/{total} tasks ({progress}%)",
            metadata={
                "completed_tasks": completed,
                "failed_tasks": failed,
                "total_tasks": total,
                "progress": progress
            }
        )

    def log_task_start(self, task: TaskDescriptor):
        """Log start of a task."""
        self.debug(
            f"Starting {task.describe()}",
            metadata={"task_index": task.index, "subject_id": task.subject_id}
        )

    def log_task_complete(self, task: TaskDescriptor, duration_seconds: float, artifact: Optional[str] = None):
        """Log successful completion of a task."""
        self.info(
            f"Completed {task.describe()} in {duration_seconds:.1f}s",
            metadata={
                "task_index": task.index,
                "subject_id": task.subject_id,
                "duration_seconds": duration_seconds,
                "artifact": artifact
            }
        )
