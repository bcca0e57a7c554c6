"""Read side of the job system."""

from typing import Any, Dict, Iterator, List, Optional

from ..alignment import WordTimestamp
from ..errors import NotFoundError
from .models import JobFilter, JobRecord, TargetType, JobID, parse_enum
from .storage import JobStore


class JobListing:
    """
    Lazy view over the jobs matching a filter.

    Nothing is read until iteration starts, and every iteration queries the
    store again, so a listing held across a run shows current state.
    """

    def __init__(self, storage: JobStore, job_filter: JobFilter):
        self._storage = storage
        self.filter = job_filter

    def __iter__(self) -> Iterator[JobRecord]:
        return iter(self._storage.list_by_filter(self.filter))

    def all(self) -> List[JobRecord]:
        return list(self)


class JobQueryService:
    """Fetch jobs, their logs and the word timestamps produced by narration."""

    def __init__(self, storage: JobStore):
        self.storage = storage

    def get(self, job_id: JobID) -> JobRecord:
        """
        Load a job.

        Raises:
            NotFoundError: If the job does not exist
        """
        job = self.storage.load_by_id(job_id)
        if job is None:
            raise NotFoundError("job", job_id)
        return job

    def get_by_target(self, target_type, target_id: str) -> Optional[JobRecord]:
        """Most recent job for a target, or None when it never had one."""
        target_type = parse_enum(TargetType, target_type, "target type")
        return self.storage.load_by_target(target_type, target_id)

    def list(self, job_filter: Optional[JobFilter] = None) -> JobListing:
        return JobListing(self.storage, job_filter or JobFilter())

    def logs(self, job_id: JobID, level: Optional[str] = None, limit: Optional[int] = 100) -> List[Dict[str, Any]]:
        """
        Log entries of a job, newest first.

        Raises:
            NotFoundError: If the job does not exist
        """
        self.get(job_id)
        return self.storage.get_logs(job_id, level=level, limit=limit)

    def word_timestamps(self, passage_id: str) -> List[WordTimestamp]:
        return self.storage.get_word_timestamps(passage_id)
