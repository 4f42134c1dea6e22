"""
Background Import Worker.

============================================================
PURPOSE
============================================================
Asynchronous queue in front of the Import Engine.

- Jobs run the (synchronous) engine in a worker thread
- A job that raises is retried with exponential backoff, up to
  sync_import_max_attempts attempts in total
- append jobs are never retried: they always insert, so a blind
  retry would duplicate rows
- Per-record errors inside a batch do not count as a failure;
  they are reported in the job's result

============================================================
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from sqlalchemy.exc import SQLAlchemyError

from core.clock import get_clock
from core.exceptions import SyncException
from core.settings import SyncConfig
from sync_data.data_importer import DataImporter
from sync_data.types import ConflictStrategy, ImportResult


logger = logging.getLogger(__name__)


# ============================================================
# RETRY POLICY
# ============================================================

@dataclass
class RetryPolicy:
    """Bounded exponential backoff."""

    max_attempts: int = 3
    """Total attempts including the first one."""

    initial_delay_seconds: float = 1.0
    max_delay_seconds: float = 30.0
    backoff_multiplier: float = 2.0

    def delay_after(self, attempt: int) -> float:
        """Delay before attempt ``attempt + 1``."""
        delay = self.initial_delay_seconds * (self.backoff_multiplier ** (attempt - 1))
        return min(delay, self.max_delay_seconds)


# ============================================================
# JOBS
# ============================================================

class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    RETRYING = "retrying"
    DONE = "done"
    FAILED = "failed"


@dataclass
class ImportJob:
    """One batch waiting to be imported."""

    table: str
    records: List[Mapping[str, Any]]
    strategy: ConflictStrategy
    job_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: JobStatus = JobStatus.QUEUED
    attempts: int = 0
    result: Optional[ImportResult] = None
    error: Optional[str] = None
    submitted_at: datetime = field(default_factory=lambda: get_clock().now())
    finished_at: Optional[datetime] = None

    @property
    def finished(self) -> bool:
        return self.status in (JobStatus.DONE, JobStatus.FAILED)


# ============================================================
# WORKER
# ============================================================

class ImportWorker:
    """
    Queue of import jobs served by a fixed number of tasks.

    Usage:
        worker = ImportWorker(importer, config)
        await worker.start()
        job = await worker.submit("users", records, "merge")
        await worker.join()
        await worker.stop()
    """

    def __init__(
        self,
        importer: DataImporter,
        config: Optional[SyncConfig] = None,
        retry: Optional[RetryPolicy] = None,
        concurrency: int = 1,
        on_finished: Optional[Callable[[ImportJob], None]] = None,
    ):
        config = config or SyncConfig()
        self._importer = importer
        self._retry = retry or RetryPolicy(max_attempts=config.sync_import_max_attempts)
        self._concurrency = max(1, concurrency)
        self._on_finished = on_finished
        self._queue: asyncio.Queue = asyncio.Queue()
        self._tasks: List[asyncio.Task] = []
        self._jobs: Dict[str, ImportJob] = {}

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    @property
    def queued(self) -> int:
        return self._queue.qsize()

    def get_job(self, job_id: str) -> Optional[ImportJob]:
        return self._jobs.get(job_id)

    def stats(self) -> Dict[str, int]:
        counts = {s.value: 0 for s in JobStatus}
        for job in self._jobs.values():
            counts[job.status.value] += 1
        return counts

    # ---------------------------------------------------------
    # LIFECYCLE
    # ---------------------------------------------------------

    async def start(self) -> None:
        if self._tasks:
            return
        self._tasks = [
            asyncio.create_task(self._run(), name=f"import-worker-{i}")
            for i in range(self._concurrency)
        ]
        logger.info(f"Import worker started ({self._concurrency} task(s))")

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Import worker stopped")

    async def join(self) -> None:
        """Wait until every submitted job has finished."""
        await self._queue.join()

    async def submit(
        self,
        table: str,
        records: List[Mapping[str, Any]],
        strategy: Union[ConflictStrategy, str] = ConflictStrategy.SKIP,
    ) -> ImportJob:
        job = ImportJob(table=table, records=list(records), strategy=ConflictStrategy.parse(strategy))
        self._jobs[job.job_id] = job
        await self._queue.put(job)
        logger.debug(f"Queued import job {job.job_id}: {len(job.records)} records into {table}")
        return job

    # ---------------------------------------------------------
    # EXECUTION
    # ---------------------------------------------------------

    async def _run(self) -> None:
        while True:
            job = await self._queue.get()
            try:
                await self.process(job)
            finally:
                self._queue.task_done()

    async def process(self, job: ImportJob) -> ImportJob:
        """Run one job to completion, retrying as allowed."""
        while True:
            job.attempts += 1
            job.status = JobStatus.RUNNING
            try:
                job.result = await asyncio.to_thread(
                    self._importer.import_records, job.table, job.records, job.strategy,
                )
            except (SyncException, SQLAlchemyError) as e:
                job.error = str(e)
                if not job.strategy.retry_safe:
                    logger.error(f"Import job {job.job_id} ({job.strategy.value}) failed, not retried: {e}")
                    break
                if job.attempts >= self._retry.max_attempts:
                    logger.error(f"Import job {job.job_id} failed after {job.attempts} attempts: {e}")
                    break

                delay = self._retry.delay_after(job.attempts)
                job.status = JobStatus.RETRYING
                logger.warning(
                    f"Import job {job.job_id} attempt {job.attempts}/{self._retry.max_attempts} "
                    f"failed: {e}. Retrying in {delay:.1f}s..."
                )
                await asyncio.sleep(delay)
                continue

            job.status = JobStatus.DONE
            job.error = None
            break

        if job.status is not JobStatus.DONE:
            job.status = JobStatus.FAILED
        job.finished_at = get_clock().now()
        if self._on_finished is not None:
            self._on_finished(job)
        return job
