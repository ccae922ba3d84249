"""
Bounded asyncio worker pool with per-job timeout, linear retry backoff and
fail-fast backpressure.
"""
from __future__ import annotations
import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Type

from .errors import JobTimeout, PoolStopped, QueueFull, RetryableError, UnhandledJobType
from .models import utc_now

logger = logging.getLogger(__name__)

JOB_TYPE_ANALYZE_URL = "analyze_url"


@dataclass
class Job:
    id: str
    type: str
    payload: Any = None
    retry: int = 0
    max_retry: int = 0
    created_at: datetime = field(default_factory=utc_now)


@dataclass
class JobResult:
    job: Job
    error: Optional[BaseException] = None
    data: Any = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class PoolStats:
    worker_count: int
    jobs_in_queue: int
    queue_capacity: int


JobHandler = Callable[[Job], Awaitable[Any]]


class WorkerPool:
    """Fixed set of worker tasks consuming one bounded job queue.

    Handlers are registered before `start()` and never change afterwards, so
    dispatch needs no locking. `add_job` never waits: a full queue raises
    QueueFull and the caller decides what to do.

    Failed jobs whose error is one of `retry_on` are re-enqueued on the same
    queue after `retry * retry_interval` seconds, so under load retries compete
    with fresh submissions for a worker.
    """

    def __init__(
        self,
        worker_count: int = 10,
        queue_size: int = 100,
        job_timeout: float = 30.0,
        retry_interval: float = 1.0,
        retry_on: Tuple[Type[BaseException], ...] = (RetryableError,),
        on_result: Optional[Callable[[JobResult], None]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if worker_count < 1:
            raise ValueError("worker_count must be at least 1")
        if queue_size < 1:
            raise ValueError("queue_size must be at least 1")
        self.worker_count = worker_count
        self.queue_size = queue_size
        self.job_timeout = job_timeout
        self.retry_interval = retry_interval
        self.retry_on = retry_on
        self.on_result = on_result
        self._sleep = sleep
        self._queue: asyncio.Queue[Job] = asyncio.Queue(maxsize=queue_size)
        self._handlers: Dict[str, JobHandler] = {}
        self._workers: List[asyncio.Task] = []
        self._started = False
        self._stopping = False

    # ------------------ setup ------------------

    def register_handler(self, job_type: str, handler: JobHandler) -> None:
        if self._started:
            raise RuntimeError("handlers must be registered before the pool starts")
        self._handlers[job_type] = handler

    def start(self) -> None:
        if self._started:
            return
        self._started = True
        logger.info("Starting worker pool",
                    extra={"fields": {"workers": self.worker_count, "queue_size": self.queue_size}})
        for i in range(self.worker_count):
            self._workers.append(asyncio.create_task(self._worker(i), name=f"siteprobe-worker-{i}"))

    async def stop(self) -> None:
        """Refuse new jobs, cancel in-flight work and wait for every worker to exit."""
        if self._stopping:
            return
        self._stopping = True
        logger.info("Stopping worker pool")

        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers.clear()

        dropped = 0
        while True:
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            self._queue.task_done()
            dropped += 1
        if dropped:
            logger.warning("Dropped pending jobs on shutdown", extra={"fields": {"count": dropped}})
        logger.info("Worker pool stopped")

    async def __aenter__(self) -> "WorkerPool":
        self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.stop()

    # ------------------ submission ------------------

    def add_job(self, job: Job) -> None:
        """Enqueue `job` or fail immediately; never blocks."""
        if self._stopping:
            raise PoolStopped("worker pool is stopping")
        try:
            self._queue.put_nowait(job)
        except asyncio.QueueFull:
            raise QueueFull(f"job queue is full ({self.queue_size} pending)") from None
        logger.debug("Job added to queue", extra={"fields": {"job_id": job.id, "job_type": job.type}})

    async def join(self) -> None:
        """Wait until every queued job, retries included, has finished."""
        await self._queue.join()

    def stats(self) -> PoolStats:
        return PoolStats(
            worker_count=self.worker_count,
            jobs_in_queue=self._queue.qsize(),
            queue_capacity=self.queue_size,
        )

    # ------------------ execution ------------------

    async def _worker(self, worker_id: int) -> None:
        logger.debug("Worker started", extra={"fields": {"worker_id": worker_id}})
        try:
            while True:
                job = await self._queue.get()
                try:
                    await self._process_job(worker_id, job)
                finally:
                    self._queue.task_done()
        except asyncio.CancelledError:
            logger.debug("Worker stopping", extra={"fields": {"worker_id": worker_id}})
            raise

    async def _process_job(self, worker_id: int, job: Job) -> None:
        fields = {"worker_id": worker_id, "job_id": job.id, "job_type": job.type}

        handler = self._handlers.get(job.type)
        if handler is None:
            logger.error("No handler registered for job type", extra={"fields": fields})
            self._emit(JobResult(job, error=UnhandledJobType(f"no handler registered for job type: {job.type}")))
            return

        logger.debug("Processing job", extra={"fields": fields})
        start = time.monotonic()
        try:
            data = await asyncio.wait_for(handler(job), timeout=self.job_timeout)
        except asyncio.TimeoutError:
            error: BaseException = JobTimeout(f"job {job.id} exceeded {self.job_timeout}s")
        except Exception as e:
            error = e
        else:
            logger.debug("Job processed successfully",
                         extra={"fields": {**fields, "duration": time.monotonic() - start}})
            self._emit(JobResult(job, data=data))
            return

        logger.error("Job processing failed",
                     extra={"fields": {**fields, "error": str(error), "duration": time.monotonic() - start}})

        if isinstance(error, self.retry_on) and job.retry < job.max_retry:
            job.retry += 1
            delay = job.retry * self.retry_interval
            logger.info("Retrying job",
                        extra={"fields": {**fields, "retry": job.retry, "max_retry": job.max_retry, "delay": delay}})
            await self._sleep(delay)
            try:
                self._queue.put_nowait(job)
                return
            except asyncio.QueueFull:
                logger.error("Job queue full, abandoning retry", extra={"fields": fields})
                error = QueueFull(f"job queue is full, retry {job.retry} of {job.id} abandoned")

        self._emit(JobResult(job, error=error))

    def _emit(self, result: JobResult) -> None:
        if result.error is not None:
            logger.error("Job failed", extra={"fields": {
                "job_id": result.job.id, "job_type": result.job.type, "error": str(result.error)}})
        else:
            logger.debug("Job completed successfully",
                         extra={"fields": {"job_id": result.job.id, "job_type": result.job.type}})
        if self.on_result is None:
            return
        try:
            self.on_result(result)
        except Exception:
            logger.exception("Job result callback failed", extra={"fields": {"job_id": result.job.id}})
