"""Bounded thread pool for running collection jobs."""

import logging
import queue
import threading
from typing import Callable, List, Optional
from .errors import JobError, PoolError

logger = logging.getLogger(__name__)

Job = Callable[[], object]

_STOP = object()


def default_threads(cpus: Optional[int]) -> int:
    """Half the available CPUs, never fewer than 2."""
    return max((cpus or 0) // 2, 2)


class WorkerPool:
    """Runs submitted jobs on a fixed number of worker threads.

    Jobs signal failure by raising. A failure is logged and recorded, the
    remaining jobs keep running, and ``wait`` raises a single ``PoolError``
    once everything has finished.

    Pass ``job_queue_size`` when the number of jobs is known up front, as
    with profile downloads; otherwise the queue is unbounded.
    """

    def __init__(self, number_threads: int, job_queue_size: int = 0):
        if number_threads < 1:
            raise ValueError("number_threads must be at least 1")
        self.number_threads = number_threads
        self._jobs: "queue.Queue" = queue.Queue(maxsize=max(job_queue_size, 0))
        self._errors: List[JobError] = []
        self._lock = threading.Lock()
        self._closed = False
        self._threads = []
        for worker_id in range(1, number_threads + 1):
            t = threading.Thread(target=self._run, args=(worker_id,), name=f"ddc-worker-{worker_id}", daemon=True)
            t.start()
            self._threads.append(t)

    def add_job(self, job: Job, name: Optional[str] = None) -> None:
        """Queue a job for execution."""
        if self._closed:
            raise RuntimeError("cannot add jobs to a pool that is waiting or finished")
        self._jobs.put((name or getattr(job, "__name__", "job"), job))

    def wait(self) -> None:
        """Block until every queued job has run.

        Raises:
            PoolError: at least one job raised
        """
        self._closed = True
        self._jobs.join()
        for _ in self._threads:
            self._jobs.put(_STOP)
        for t in self._threads:
            t.join()
        with self._lock:
            errors = list(self._errors)
        if errors:
            raise PoolError(errors)

    @property
    def errors(self) -> List[JobError]:
        with self._lock:
            return list(self._errors)

    def _run(self, worker_id: int) -> None:
        while True:
            item = self._jobs.get()
            try:
                if item is _STOP:
                    return
                name, job = item
                self._execute(worker_id, name, job)
            finally:
                self._jobs.task_done()

    def _execute(self, worker_id: int, name: str, job: Job) -> None:
        logger.debug("[Worker %d] Processing job %s", worker_id, name)
        try:
            job()
        except Exception as e:
            logger.error("[Worker %d] Job %s failed: %s", worker_id, name, e)
            with self._lock:
                self._errors.append(JobError(name, e))
        else:
            logger.debug("[Worker %d] Job %s completed successfully", worker_id, name)
