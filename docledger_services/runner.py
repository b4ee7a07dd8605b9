"""
docledger_services.runner -- Job dispatch.

Responsibility:
    Hand a job id to the pipeline's ``process`` callable, either inline or
    on a worker pool.  Each job runs independently; a job that raises is
    logged and never affects siblings.

Architecture position:
    Services.  The pipeline binds itself as the handler at construction.

Invariants enforced:
    - No exception escapes a runner.  ``process`` already converts stage
      failures into ``error`` status; anything left (lost connection,
      missing job) is logged as ``job_runner_task_failed``.
    - No cancellation of in-flight jobs.
"""

from __future__ import annotations

import threading
from collections import deque
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Any, Protocol
from uuid import UUID

from docledger_kernel.logging_config import LogContext, get_logger

logger = get_logger("services.runner")

JobHandler = Callable[[UUID], Any]


class JobRunner(Protocol):
    def bind(self, handler: JobHandler) -> None: ...

    def dispatch(self, job_id: UUID) -> None: ...


def _run_safely(handler: JobHandler | None, job_id: UUID) -> None:
    if handler is None:
        raise RuntimeError("runner has no handler bound")
    with LogContext.bind(job_id=str(job_id)):
        try:
            handler(job_id)
        except Exception:
            logger.exception("job_runner_task_failed", extra={"job_id": str(job_id)})


class InlineJobRunner:
    """
    Runs the job synchronously inside ``dispatch``.

    ``dispatched`` holds the most recent ``history`` job ids, oldest first.
    """

    def __init__(self, handler: JobHandler | None = None, history: int = 1000):
        self._handler = handler
        self.dispatched: deque[UUID] = deque(maxlen=history)

    def bind(self, handler: JobHandler) -> None:
        self._handler = handler

    def dispatch(self, job_id: UUID) -> None:
        self.dispatched.append(job_id)
        _run_safely(self._handler, job_id)

    def wait(self, timeout: float | None = None) -> bool:
        return True

    def shutdown(self, wait: bool = True) -> None:
        pass


class ThreadPoolJobRunner:
    """
    Runs jobs on a ``ThreadPoolExecutor``.

    ``wait`` blocks until every job dispatched so far has finished; jobs
    that spawn children (split parents) dispatch them from the worker, so
    ``wait`` keeps draining until the pending set is empty.
    """

    def __init__(self, max_workers: int = 4, handler: JobHandler | None = None):
        self._handler = handler
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="docledger-job")
        self._pending: set[Future] = set()
        self._lock = threading.Lock()

    def bind(self, handler: JobHandler) -> None:
        self._handler = handler

    def dispatch(self, job_id: UUID) -> None:
        future = self._executor.submit(_run_safely, self._handler, job_id)
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._discard)
        logger.debug("job_dispatched", extra={"job_id": str(job_id)})

    def _discard(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)

    def wait(self, timeout: float | None = None) -> bool:
        """Returns False when ``timeout`` elapsed with jobs still running."""
        while True:
            with self._lock:
                pending = set(self._pending)
            if not pending:
                return True
            _, not_done = wait(pending, timeout=timeout)
            if not_done:
                return False

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
        logger.info("job_runner_stopped")
