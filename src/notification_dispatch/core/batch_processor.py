"""
Batch Processor Module
Accumulates items into keyed batches and executes them as rate-limited jobs
"""

import asyncio
import inspect
import logging
from collections.abc import Mapping
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

from ..config.settings import BatchConfig, Settings, get_settings
from ..events import EventEmitter
from ..exceptions import EngineStateError, ProcessorNotConfiguredError, ValidationError
from ..models import (
    BatchJob,
    JobError,
    JobProgress,
    JobStatus,
    NotificationPriority,
    coerce_priority,
    generate_id,
)
from .rate_limiting import TokenBucket

logger = logging.getLogger(__name__)

DEFAULT_BATCH_KEY = "default"

# Statuses a job can no longer leave
FINISHED_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


def _item_id(item: Any) -> Optional[str]:
    if isinstance(item, Mapping):
        value = item.get('id')
    else:
        value = getattr(item, 'id', None)
    return str(value) if value is not None else None


class BatchProcessor(EventEmitter):
    """Bulk ingress with bounded job concurrency and token-bucket throttling

    Items inside one job run sequentially. Up to ``max_concurrent`` jobs run
    at the same time, and every item waits for a rate-limit token before the
    processor is called.
    """

    def __init__(self, config: Optional[BatchConfig] = None,
                 processor: Optional[Callable] = None,
                 clock: Callable[[], datetime] = datetime.now):
        """Initialize Batch Processor

        Args:
            config: Batch configuration
            processor: Per-item callback, sync or async
            clock: Time source for job timestamps
        """
        super().__init__()
        self.config = config or BatchConfig()
        self._processor = processor
        self._clock = clock

        self._batches: Dict[str, List[Any]] = {}
        self._jobs: Dict[str, BatchJob] = {}
        self._active: Dict[str, asyncio.Task] = {}
        self._ticks: List[asyncio.Task] = []
        self.is_running = False

        self.rate_limiter = TokenBucket(self.config.rate_limit) if self.config.enable_rate_limit else None

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None,
                      processor: Optional[Callable] = None) -> "BatchProcessor":
        """Build a processor from the ``batch`` settings section"""
        settings = settings or get_settings()
        return cls(settings.get_batch_config(), processor=processor)

    def set_processor(self, processor: Callable):
        """Set the per-item processor callback"""
        self._processor = processor

    async def start(self):
        """Start the processing and auto-flush ticks"""
        if self.is_running:
            raise EngineStateError("BatchProcessor is already running")

        if self._processor is None:
            raise ProcessorNotConfiguredError("No processor configured")

        self.is_running = True
        self._ticks = [
            asyncio.create_task(self._processing_loop()),
            asyncio.create_task(self._flush_loop()),
        ]

        logger.info(f"Batch processor started: max_concurrent={self.config.max_concurrent}, "
                    f"rate_limit={self.config.rate_limit if self.rate_limiter else 'off'}")
        self.emit('processor:started')

    async def stop(self):
        """Stop ticking and wait for processing jobs to drain"""
        if not self.is_running:
            return

        self.is_running = False

        for task in self._ticks:
            task.cancel()
        await asyncio.gather(*self._ticks, return_exceptions=True)
        self._ticks = []

        await self.drain()

        logger.info("Batch processor stopped")
        self.emit('processor:stopped')

    async def drain(self):
        """Wait until no job is processing"""
        while self._active:
            await asyncio.gather(*list(self._active.values()), return_exceptions=True)

    def add(self, item: Any, batch_key: str = DEFAULT_BATCH_KEY) -> Optional[BatchJob]:
        """Add item to a batch

        Returns:
            The job created when the batch reached ``max_batch_size``
        """
        if item is None:
            raise ValidationError("Cannot batch a None item")

        batch = self._batches.setdefault(batch_key, [])
        batch.append(item)
        self.emit('item:added', item, batch_key)

        if len(batch) >= self.config.max_batch_size:
            return self.flush(batch_key)
        return None

    def add_batch(self, items: Iterable[Any], batch_key: str = DEFAULT_BATCH_KEY) -> List[BatchJob]:
        """Add items to a batch, returning any jobs flushed on the way"""
        jobs = []
        for item in items:
            job = self.add(item, batch_key)
            if job is not None:
                jobs.append(job)
        return jobs

    def flush(self, batch_key: str = DEFAULT_BATCH_KEY) -> Optional[BatchJob]:
        """Turn the accumulated batch into a pending job"""
        batch = self._batches.get(batch_key)
        if not batch:
            return None

        self._batches[batch_key] = []
        job = self.create_job(batch, batch_key=batch_key)
        logger.debug(f"Flushed batch '{batch_key}' into job {job.id} ({len(batch)} items)")
        self.emit('batch:flushed', job)
        return job

    def flush_all_batches(self) -> List[BatchJob]:
        jobs = []
        for batch_key in list(self._batches.keys()):
            job = self.flush(batch_key)
            if job is not None:
                jobs.append(job)
        return jobs

    def create_job(self, items: Iterable[Any], priority: Any = None,
                   batch_key: Optional[str] = None) -> BatchJob:
        """Create a pending job from items

        Args:
            items: Items to process
            priority: Job priority, defaults to normal
            batch_key: Originating batch, if any
        """
        items = list(items)
        if not items:
            raise ValidationError("A job needs at least one item")

        job = BatchJob(
            id=generate_id("job"),
            items=items,
            priority=coerce_priority(priority, NotificationPriority.NORMAL),
            progress=JobProgress(total=len(items)),
            batch_key=batch_key,
            created_at=self._clock(),
        )
        self._jobs[job.id] = job

        logger.info(f"Job {job.id} created with {len(items)} items, priority {job.priority.value}")
        self.emit('job:created', job)
        return job

    def get_job(self, job_id: str) -> Optional[BatchJob]:
        return self._jobs.get(job_id)

    def cancel_job(self, job_id: str) -> bool:
        """Cancel a job that has not started yet"""
        job = self._jobs.get(job_id)
        if job is None or job.status != JobStatus.PENDING:
            return False

        job.status = JobStatus.CANCELLED
        job.completed_at = self._clock()
        logger.info(f"Job {job_id} cancelled")
        self.emit('job:cancelled', job)
        return True

    def active_job_count(self) -> int:
        return sum(1 for job in self._jobs.values() if job.status == JobStatus.PROCESSING)

    def process_pending_jobs(self) -> int:
        """Start pending jobs by priority until the concurrency cap is reached

        Returns:
            Number of jobs started
        """
        if self._processor is None:
            return 0

        active = self.active_job_count()
        if active >= self.config.max_concurrent:
            return 0

        # sorted() is stable, so equal priorities keep creation order
        pending = sorted(
            (job for job in self._jobs.values() if job.status == JobStatus.PENDING),
            key=lambda job: job.priority.rank,
        )

        started = 0
        for job in pending:
            if active >= self.config.max_concurrent:
                break
            self._start_job(job)
            active += 1
            started += 1

        return started

    def _start_job(self, job: BatchJob):
        job.status = JobStatus.PROCESSING
        job.started_at = self._clock()

        task = asyncio.create_task(self._run_job(job))
        self._active[job.id] = task

        def _done(t: asyncio.Task, job_id: str = job.id):
            self._active.pop(job_id, None)
            if not t.cancelled() and t.exception() is not None:
                logger.error(f"Job {job_id} crashed: {t.exception()}")
                self.emit('error', t.exception())

        task.add_done_callback(_done)

    async def _run_job(self, job: BatchJob):
        """Process items sequentially, isolating per-item failures"""
        logger.info(f"Job {job.id} started")
        self.emit('job:started', job)

        for index, item in enumerate(job.items):
            if self.rate_limiter is not None:
                await self.rate_limiter.acquire()

            try:
                await self._invoke(item)
                job.progress.successful += 1
                self.emit('job:item:success', job, item)
            except Exception as e:
                job.progress.failed += 1
                job.errors.append(JobError(item_index=index, item_id=_item_id(item), error=str(e)))
                logger.warning(f"Job {job.id} item {index} failed: {str(e)}")
                self.emit('job:item:failed', job, item, e)

            job.progress.processed += 1
            self.emit('job:progress', job)

        job.status = JobStatus.COMPLETED if job.progress.failed == 0 else JobStatus.FAILED
        job.completed_at = self._clock()

        logger.info(f"Job {job.id} {job.status.value}: {job.progress.successful}/"
                    f"{job.progress.total} succeeded")
        self.emit('job:completed', job)

    async def _invoke(self, item: Any):
        if self.config.run_sync_in_executor and not asyncio.iscoroutinefunction(self._processor):
            # Opt-in for blocking processors that never touch loop-owned state
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(None, self._processor, item)

        result = self._processor(item)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def _processing_loop(self):
        while self.is_running:
            try:
                self.process_pending_jobs()
            except Exception as e:
                logger.error(f"Batch processing tick failed: {str(e)}", exc_info=True)
                self.emit('error', e)
            await asyncio.sleep(self.config.processing_interval)

    async def _flush_loop(self):
        while self.is_running:
            await asyncio.sleep(self.config.auto_flush_interval)
            try:
                self.flush_all_batches()
            except Exception as e:
                logger.error(f"Auto-flush tick failed: {str(e)}", exc_info=True)
                self.emit('error', e)

    def get_stats(self) -> Dict[str, Any]:
        """Batch and job counts by status"""
        jobs = {status.value: 0 for status in JobStatus}
        for job in self._jobs.values():
            jobs[job.status.value] += 1
        jobs['total'] = len(self._jobs)

        return {
            'batches': len(self._batches),
            'pending_items': sum(len(batch) for batch in self._batches.values()),
            'jobs': jobs,
            'rate_limit': self.rate_limiter.get_status() if self.rate_limiter else None,
        }

    def clear_completed_jobs(self, older_than: Optional[datetime] = None) -> int:
        """Forget finished jobs, optionally only those completed before a cutoff"""
        cleared = 0
        for job_id, job in list(self._jobs.items()):
            if job.status not in FINISHED_STATUSES:
                continue
            if older_than is None or (job.completed_at and job.completed_at < older_than):
                del self._jobs[job_id]
                cleared += 1
        return cleared
