"""Per-job locks serializing counter and status updates."""

import threading
from contextlib import contextmanager
from typing import Dict, Iterator, List

from .models import JobID


class JobLockManager:
    """
    Hand out one re-entrant lock per job id.

    Updates for different jobs proceed in parallel; updates for the same job
    are applied one at a time. A lock is only kept while some thread holds
    or waits for it, so finished jobs leave nothing behind and a late update
    simply gets a fresh lock.

    Usage:
        locks = JobLockManager()
        with locks.job_lock(job_id):
            ...
    """

    def __init__(self):
        # job id -> [lock, number of threads holding or waiting]
        self._job_locks: Dict[JobID, List] = {}
        self._registry_lock = threading.Lock()

    def _acquire_entry(self, job_id: JobID) -> threading.RLock:
        with self._registry_lock:
            entry = self._job_locks.get(job_id)
            if entry is None:
                entry = [threading.RLock(), 0]
                self._job_locks[job_id] = entry
            entry[1] += 1
            return entry[0]

    def _release_entry(self, job_id: JobID):
        with self._registry_lock:
            entry = self._job_locks[job_id]
            entry[1] -= 1
            if entry[1] == 0:
                del self._job_locks[job_id]

    @contextmanager
    def job_lock(self, job_id: JobID) -> Iterator[None]:
        """Hold the lock for ``job_id`` for the duration of the block."""
        lock = self._acquire_entry(job_id)
        try:
            with lock:
                yield
        finally:
            self._release_entry(job_id)
