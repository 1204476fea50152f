"""Worker pool for CPU-bound playlist rewriting.

Rewriting a large playlist is pure CPU work, so it runs on a
``concurrent.futures`` executor instead of the event loop.  The pool puts
a fixed number of asyncio "slots" in front of that executor:

* jobs wait in a FIFO ``asyncio.Queue`` until a slot is free;
* each slot runs exactly one job at a time on the executor;
* a job that raises is reported to its submitter as ``RewriteFailed`` and
  the slot goes straight back to work.

Executor auto-recovery
~~~~~~~~~~~~~~~~~~~~~~
A job that exceeds ``job_timeout`` is abandoned and the executor is
replaced with a fresh one, so a runaway job can never hold a slot (and
with it, pool capacity) forever.  The same happens when a process worker
dies and the ``ProcessPoolExecutor`` reports itself broken.  Python cannot
kill a running thread, so in thread mode the stuck thread is left to finish
on the old executor.

All bookkeeping (queue, busy count, counters) is touched only from the
event loop thread, which is what makes ``stats()`` race-free.
"""

import asyncio
import logging
from concurrent.futures import Executor, ProcessPoolExecutor, ThreadPoolExecutor
from concurrent.futures.process import BrokenProcessPool
from dataclasses import dataclass
from typing import Callable

from shinra.errors import PoolExhausted, RewriteFailed
from shinra.proxy.models import RewriteJob, WorkerPoolStats
from shinra.proxy.rewriter import rewrite_job

logger = logging.getLogger("workers")

_MODES = ("process", "thread")


@dataclass
class _QueuedJob:
    job: RewriteJob
    future: asyncio.Future
    queued: bool = True


class WorkerPool:
    def __init__(
        self,
        size: int,
        max_queue_depth: int = 256,
        mode: str = "process",
        job_timeout: float = 10.0,
        task: Callable[[RewriteJob], str] = rewrite_job,
    ):
        if size < 1:
            raise ValueError("Worker pool size must be at least 1")
        if mode not in _MODES:
            raise ValueError(f"Unknown worker pool mode '{mode}' (expected one of {_MODES})")
        self.size = size
        self.max_queue_depth = max_queue_depth
        self.mode = mode
        self.job_timeout = job_timeout
        self._task = task
        self._queue: asyncio.Queue[_QueuedJob] | None = None
        self._slots: list[asyncio.Task] = []
        self._executor: Executor | None = None
        self._busy = 0
        # Jobs waiting in the queue whose submitter is still interested.
        self._pending = 0
        self._completed = 0
        self._failed = 0
        self._closed = False

    # -- Executor helpers ----------------------------------------------------

    def _new_executor(self) -> Executor:
        if self.mode == "process":
            return ProcessPoolExecutor(max_workers=self.size)
        return ThreadPoolExecutor(max_workers=self.size, thread_name_prefix="rewrite")

    def _replace_executor(self, broken: Executor):
        """Swap out a stuck or broken executor for a fresh one.

        Several slots can notice the same broken executor; only the first
        one replaces it.
        """
        if broken is not self._executor:
            return
        self._executor = self._new_executor()
        try:
            broken.shutdown(wait=False, cancel_futures=True)
        except Exception:
            logger.exception("Failed to shut down replaced executor")
        logger.warning("Rewrite executor replaced (mode=%s)", self.mode)

    def _release(self, item: _QueuedJob):
        """Stop counting ``item`` as pending; safe to call more than once."""
        if item.queued:
            item.queued = False
            self._pending -= 1

    async def _execute(self, job: RewriteJob) -> str:
        executor = self._executor
        loop = asyncio.get_running_loop()
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(executor, self._task, job),
                timeout=self.job_timeout,
            )
        except asyncio.TimeoutError:
            logger.error("Rewrite job timed out after %.1fs, replacing executor", self.job_timeout)
            self._replace_executor(executor)
            raise RewriteFailed("Playlist rewrite timed out") from None
        except BrokenProcessPool:
            logger.error("Rewrite worker process died, replacing executor")
            self._replace_executor(executor)
            raise RewriteFailed("Rewrite worker crashed") from None

    # -- Lifecycle -----------------------------------------------------------

    async def start(self):
        """Create the executor and worker slots.  Call once at startup."""
        if self._queue is not None:
            return
        self._queue = asyncio.Queue()
        self._executor = self._new_executor()
        self._slots = [
            asyncio.create_task(self._slot(i), name=f"rewrite-slot-{i}")
            for i in range(self.size)
        ]
        logger.info(
            "Worker pool started (size=%d, mode=%s, max_queue=%d)",
            self.size, self.mode, self.max_queue_depth,
        )

    async def close(self, timeout: float = 10.0):
        """Stop accepting jobs, drain the queue, then release the executor.

        Jobs still running or queued after ``timeout`` are abandoned and
        their submitters see ``RewriteFailed``.
        """
        if self._closed:
            return
        self._closed = True
        if self._queue is None:
            return

        try:
            await asyncio.wait_for(self._queue.join(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Worker pool drain timed out after %.1fs (queued=%d, busy=%d)",
                timeout, self._pending, self._busy,
            )

        for slot in self._slots:
            slot.cancel()
        await asyncio.gather(*self._slots, return_exceptions=True)
        self._slots = []

        while not self._queue.empty():
            item = self._queue.get_nowait()
            self._release(item)
            if not item.future.done():
                item.future.set_exception(RewriteFailed("Worker pool shut down"))
            self._queue.task_done()

        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None
        logger.info("Worker pool closed (completed=%d, failed=%d)", self._completed, self._failed)

    @property
    def closed(self) -> bool:
        return self._closed

    # -- Submission ----------------------------------------------------------

    async def submit(self, job: RewriteJob) -> str:
        """Queue a rewrite job and wait for its result.

        Raises ``PoolExhausted`` when the pool is closed or the queue is
        full, ``RewriteFailed`` when the job itself fails.  Cancelling the
        caller abandons the job: a queued job is skipped, a running one
        finishes and its result is dropped.
        """
        if self._closed or self._queue is None:
            raise PoolExhausted("Worker pool is not accepting jobs")
        if self._pending >= self.max_queue_depth:
            logger.warning("Rewrite queue full (%d queued), rejecting job", self._pending)
            raise PoolExhausted()

        item = _QueuedJob(job, asyncio.get_running_loop().create_future())
        self._queue.put_nowait(item)
        self._pending += 1
        try:
            return await item.future
        finally:
            # A cancelled submitter frees its queue slot straight away.
            self._release(item)

    async def _slot(self, index: int):
        while True:
            item = await self._queue.get()
            self._release(item)
            try:
                if item.future.done():
                    logger.debug("Slot %d skipping abandoned job", index)
                    continue
                self._busy += 1
                try:
                    result = await self._execute(item.job)
                except asyncio.CancelledError:
                    if not item.future.done():
                        item.future.set_exception(RewriteFailed("Worker pool shut down"))
                    raise
                except RewriteFailed as e:
                    self._failed += 1
                    if not item.future.done():
                        item.future.set_exception(e)
                except Exception as e:
                    self._failed += 1
                    logger.warning("Rewrite job failed on slot %d: %r", index, e)
                    if not item.future.done():
                        item.future.set_exception(RewriteFailed(f"Playlist rewrite failed: {e}"))
                else:
                    self._completed += 1
                    if not item.future.done():
                        item.future.set_result(result)
                    else:
                        logger.debug("Slot %d discarding result of abandoned job", index)
                finally:
                    self._busy -= 1
            finally:
                self._queue.task_done()

    # -- Status --------------------------------------------------------------

    def stats(self) -> WorkerPoolStats:
        available = 0 if self._closed else max(0, self.size - self._busy)
        return WorkerPoolStats(
            threads_total=self.size,
            threads_available=min(available, self.size),
            queue_depth=self._pending,
            jobs_completed=self._completed,
            jobs_failed=self._failed,
        )
