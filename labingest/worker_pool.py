from __future__ import annotations

import logging
import queue
import threading
import time
from typing import Callable

from labingest.errors import PipelineBusy

logger = logging.getLogger(__name__)

Job = Callable[[], None]


class WorkerPool:
    """Bounded queue drained by a fixed set of daemon threads.

    A full queue is reported to the caller instead of growing without limit;
    ``shutdown(wait=True)`` drains queued jobs before the workers exit.
    """

    def __init__(self, worker_count: int = 2, queue_size: int = 32, name: str = "pipeline-worker"):
        if worker_count < 1:
            raise ValueError("worker_count must be at least 1.")
        if queue_size < 1:
            raise ValueError("queue_size must be at least 1.")
        self.worker_count = worker_count
        self.name = name
        self._queue: queue.Queue[Job] = queue.Queue(maxsize=queue_size)
        self._stop_event = threading.Event()
        self._accepting = False
        self._threads: list[threading.Thread] = []

    @property
    def running(self) -> bool:
        return self._accepting

    def start(self) -> None:
        if self._threads:
            return
        self._stop_event.clear()
        for index in range(self.worker_count):
            thread = threading.Thread(target=self._run, name=f"{self.name}-{index}", daemon=True)
            thread.start()
            self._threads.append(thread)
        self._accepting = True
        logger.info("Started %d %s threads (queue size %d)", self.worker_count, self.name, self._queue.maxsize)

    def submit(self, job: Job, timeout: float = 0.0) -> None:
        if not self._accepting:
            raise PipelineBusy("The processing queue is not accepting new work.")
        try:
            if timeout > 0:
                self._queue.put(job, timeout=timeout)
            else:
                self._queue.put_nowait(job)
        except queue.Full as exc:
            logger.warning("Processing queue full (%d pending jobs)", self._queue.qsize())
            raise PipelineBusy("The processing queue is full; try again later.") from exc

    def pending(self) -> int:
        return self._queue.unfinished_tasks

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until every submitted job has finished; False on timeout."""

        deadline = None if timeout is None else time.monotonic() + timeout
        with self._queue.all_tasks_done:
            while self._queue.unfinished_tasks:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return False
                self._queue.all_tasks_done.wait(remaining)
        return True

    def shutdown(self, wait: bool = True, timeout: float = 30.0) -> None:
        self._accepting = False
        if wait and not self.wait_idle(timeout):
            logger.warning("Shutting down with %d unfinished jobs", self.pending())
        self._stop_event.set()
        for thread in self._threads:
            thread.join(timeout=5)
        self._threads = []
        logger.info("%s threads stopped", self.name)

    def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                job = self._queue.get(timeout=1)
            except queue.Empty:
                continue

            try:
                job()
            except Exception:
                logger.exception("Background job failed")
            finally:
                self._queue.task_done()
