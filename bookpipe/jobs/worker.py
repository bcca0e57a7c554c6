"""
Task execution and the worker pool that drives it.

A ``WorkerPool`` owns a fixed number of threads pulling queued items from a
single FIFO queue. Each item is handed to a callback supplied by the
orchestrator, which runs the matching ``TaskExecutor`` and records the
outcome.

Provider calls run on a separate bounded call pool so they can be timed out.
Everything a task writes (artifacts, word timestamps) happens back on the
worker thread, and only when the call returned in time.
"""

import logging
import queue
import threading
import time
from concurrent import futures
from dataclasses import dataclass
from typing import Any, Callable, List, Optional

from ..alignment import map_alignment
from ..errors import ProviderError, TaskTimeoutError
from ..providers import ArtifactStore, ImageProvider, SpeechProvider, SpeechResult
from .models import TaskDescriptor, TaskOutcome
from .storage import JobStore

logger = logging.getLogger(__name__)


class CancellationToken:
    """
    Cooperative cancellation flag shared by the orchestrator and the pool.

    Setting it never interrupts a running task; it only stops queued tasks
    of the same job from starting.
    """

    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        self._event.set()

    def is_cancelled(self) -> bool:
        return self._event.is_set()


@dataclass
class TaskResult:
    """What happened when one task ran."""
    outcome: TaskOutcome
    duration_seconds: float
    artifact: Optional[str] = None
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.outcome == TaskOutcome.SUCCESS


def run_with_timeout(
    calls: futures.Executor,
    func: Callable[..., Any],
    args: tuple,
    timeout: float,
    label: str
) -> Any:
    """
    Run ``func(*args)`` on the call pool and wait at most ``timeout``.

    The timeout counts from submission, so time spent waiting for a free
    call thread is included. A call that overruns is not interrupted; its
    result is dropped when it eventually arrives.

    Raises:
        TaskTimeoutError: If ``func`` has not returned after ``timeout``
        Exception: Whatever ``func`` raised
    """
    future = calls.submit(func, *args)
    try:
        return future.result(timeout)
    except futures.TimeoutError:
        future.cancel()
        raise TaskTimeoutError(label, timeout) from None


class TaskExecutor:
    """
    Runs one task against an external provider.

    Executors hold no per-job state and may run on several threads at once.
    A task goes through up to three steps:

    - ``cached`` runs on the worker thread and may return an artifact that
      already exists, skipping the provider call
    - ``execute`` makes the provider call on a call thread; it must not
      write anything
    - ``store`` runs on the worker thread with what ``execute`` returned and
      persists it, returning the artifact reference

    ``execute`` and ``store`` raise ``ProviderError`` on failure.
    """

    name = "task"

    def cached(self, task: TaskDescriptor) -> Optional[str]:
        return None

    def execute(self, task: TaskDescriptor) -> Any:
        raise NotImplementedError

    def store(self, task: TaskDescriptor, produced: Any) -> Optional[str]:
        return produced


class SpeechTaskExecutor(TaskExecutor):
    """Synthesize one passage and persist its word timestamps."""

    name = "speech"

    def __init__(
        self,
        provider: SpeechProvider,
        artifacts: ArtifactStore,
        storage: JobStore,
        skip_existing: bool = False
    ):
        """
        Args:
            provider: Speech provider returning audio plus alignment
            artifacts: Where the audio is written
            storage: Store receiving the word timestamps
            skip_existing: Reuse audio and timestamps already present for a
                passage instead of synthesizing again
        """
        self.provider = provider
        self.artifacts = artifacts
        self.storage = storage
        self.skip_existing = skip_existing

    @staticmethod
    def artifact_name(passage_id: str) -> str:
        return f"passage_{passage_id}.mp3"

    @staticmethod
    def _text(task: TaskDescriptor) -> str:
        text = (task.payload.get('text') or "").strip()
        if not text:
            raise ProviderError("speech", f"passage {task.subject_id} has no text")
        return text

    def cached(self, task: TaskDescriptor) -> Optional[str]:
        name = self.artifact_name(task.subject_id)
        if self.skip_existing and self.artifacts.exists(name):
            if self.storage.get_word_timestamps(task.subject_id):
                return self.artifacts.reference(name)
        return None

    def execute(self, task: TaskDescriptor) -> SpeechResult:
        return self.provider.synthesize(self._text(task))

    def store(self, task: TaskDescriptor, produced: SpeechResult) -> Optional[str]:
        passage_id = task.subject_id
        reference = self.artifacts.put(self.artifact_name(passage_id), produced.audio)

        timestamps = map_alignment(self._text(task), produced.alignment, passage_id=passage_id)
        self.storage.replace_word_timestamps(passage_id, timestamps)

        return reference


class ImageTaskExecutor(TaskExecutor):
    """Generate one illustration from a prepared prompt."""

    name = "image"

    def __init__(self, provider: ImageProvider, artifacts: ArtifactStore):
        self.provider = provider
        self.artifacts = artifacts

    def execute(self, task: TaskDescriptor) -> bytes:
        prompt = (task.payload.get('prompt') or "").strip()
        if not prompt:
            raise ProviderError(self.name, f"no prompt for {task.subject_id}")
        return self.provider.generate(prompt, negative_prompt=task.payload.get('negative_prompt'))

    def store(self, task: TaskDescriptor, produced: bytes) -> Optional[str]:
        return self.artifacts.put(f"{task.subject_id}.png", produced)


def execute_task(
    executor: Optional[TaskExecutor],
    task: TaskDescriptor,
    timeout: float,
    calls: futures.Executor
) -> TaskResult:
    """
    Run a task and fold every way it can end into a TaskResult.

    Provider errors, timeouts and unexpected executor errors all become
    failures so that every task is accounted for. Nothing is stored for a
    task whose provider call timed out.
    """
    start = time.monotonic()

    if executor is None:
        return TaskResult(
            outcome=TaskOutcome.FAILURE,
            duration_seconds=0.0,
            error=f"No executor registered for {task.kind.value} tasks"
        )

    try:
        artifact = executor.cached(task)
        if artifact is None:
            produced = run_with_timeout(calls, executor.execute, (task,), timeout, task.describe())
            artifact = executor.store(task, produced)
    except ProviderError as e:
        return TaskResult(TaskOutcome.FAILURE, time.monotonic() - start, error=str(e))
    except Exception as e:
        logger.exception("Executor %s crashed on %s", executor.name, task.describe())
        return TaskResult(
            TaskOutcome.FAILURE,
            time.monotonic() - start,
            error=f"{type(e).__name__}: {e}"
        )

    return TaskResult(TaskOutcome.SUCCESS, time.monotonic() - start, artifact=artifact)


class WorkerPool:
    """
    Fixed-size thread pool fed by one FIFO queue.

    Features:
    - Items start in submission order; completion order is not guaranteed
    - A handler exception is logged and the worker keeps going
    - Shutdown lets items already queued run before the threads exit
    """

    _STOP = object()

    def __init__(self, size: int, handler: Callable[[Any], None], name: str = "bookpipe-worker"):
        """
        Initialize pool.

        Args:
            size: Number of worker threads
            handler: Called with each queued item on a worker thread
            name: Thread name prefix
        """
        if size < 1:
            raise ValueError(f"Worker pool size must be at least 1, got {size}")

        self.size = size
        self.name = name
        self._handler = handler
        self._queue: "queue.Queue[Any]" = queue.Queue()
        self._threads: List[threading.Thread] = []
        self._lock = threading.Lock()
        self.running = False

    def start(self):
        """Start the worker threads."""
        with self._lock:
            if self.running:
                return
            self.running = True
            for index in range(self.size):
                thread = threading.Thread(
                    target=self._run,
                    name=f"{self.name}-{index + 1}",
                    daemon=True
                )
                thread.start()
                self._threads.append(thread)
        logger.info("Worker pool started with %d thread(s)", self.size)

    def submit(self, item: Any):
        """Queue an item for a worker."""
        if not self.running:
            raise RuntimeError("Worker pool is not running")
        self._queue.put(item)

    def pending(self) -> int:
        """Approximate number of items waiting in the queue."""
        return self._queue.qsize()

    def _run(self):
        while True:
            item = self._queue.get()
            try:
                if item is self._STOP:
                    return
                self._handler(item)
            except Exception:
                logger.exception("Worker handler failed")
            finally:
                self._queue.task_done()

    def join(self):
        """Block until every queued item has been handled."""
        self._queue.join()

    def shutdown(self, wait: bool = True, timeout: Optional[float] = None):
        """
        Stop the worker threads.

        Args:
            wait: Wait for the threads to exit
            timeout: Per-thread join timeout when waiting
        """
        with self._lock:
            if not self.running:
                return
            self.running = False
            for _ in self._threads:
                self._queue.put(self._STOP)
            threads = list(self._threads)
            self._threads.clear()

        if wait:
            for thread in threads:
                thread.join(timeout)
        logger.info("Worker pool stopped")
