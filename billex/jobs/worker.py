"""
Async Job Worker

Polls the jobs table for due work and executes it.
Supports:
- Concurrency control
- Per-job timeout
- Retries with exponential backoff
- Coarse, non-blocking progress reporting
- Result delivery and delayed artifact cleanup
"""

import asyncio
import inspect
import logging
import signal
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from billex.config.billex_config import BillexConfig
from billex.exceptions import (
    BatchStateError,
    GenerationRejected,
    JobError,
    ParseError,
    ValidationError,
)
from billex.models.job import AsyncJob, JobOutcome
from billex.utils.progress import ProgressReporter

from .queue import ARTIFACT_CLEANUP, JobQueue

logger = logging.getLogger(__name__)

JobHandler = Callable[[AsyncJob, Callable[[int], Any]], Awaitable[JobOutcome]]
DeliveryCallback = Callable[[AsyncJob, Optional[JobOutcome]], Any]

# Retrying cannot change the outcome of these
PERMANENT_ERRORS = (BatchStateError, GenerationRejected, ValidationError, ParseError, JobError)


@dataclass
class WorkerConfig:
    """Worker configuration"""
    # Polling
    poll_interval: float = 1.0  # seconds
    batch_size: int = 10

    # Concurrency
    max_concurrent: int = 3

    # Retries
    max_attempts: int = 3
    retry_delay_base: float = 2.0  # seconds
    retry_delay_max: float = 60.0  # seconds

    # Timeouts
    job_timeout: float = 1800.0  # seconds
    # RUNNING longer than this means the worker died
    stale_after: float = 3600.0  # seconds

    # Results
    artifact_retention: float = 7200.0  # seconds
    progress_step: int = 10

    # Graceful shutdown
    shutdown_timeout: float = 30.0

    @classmethod
    def from_config(cls, config: Optional[BillexConfig] = None) -> 'WorkerConfig':
        config = config or BillexConfig()
        return cls(
            poll_interval=float(config.get('jobs.poll_interval_seconds', 1.0)),
            batch_size=int(config.get('jobs.batch_size', 10)),
            max_concurrent=int(config.get('jobs.max_concurrent', 3)),
            max_attempts=int(config.get('jobs.max_attempts', 3)),
            retry_delay_base=float(config.get('jobs.retry_base_delay_seconds', 2.0)),
            retry_delay_max=float(config.get('jobs.retry_max_delay_seconds', 60.0)),
            job_timeout=float(config.get('jobs.job_timeout_seconds', 1800)),
            stale_after=float(config.get('jobs.stale_after_seconds', 3600)),
            artifact_retention=float(config.get('jobs.artifact_retention_seconds', 7200)),
            progress_step=int(config.get('jobs.progress_step', 10)),
            shutdown_timeout=float(config.get('jobs.shutdown_timeout_seconds', 30))
        )


class Worker:
    """
    Async job worker.

    Claims due jobs from the queue and executes them using registered
    handlers. A handler receives the job and a progress callable and
    returns a JobOutcome.

    Usage:
        worker = Worker(queue, config, delivery_callback=notify_user)

        worker.register_handler('batch_generation', batch_handler)
        worker.register_handler('artifact_cleanup', cleanup_artifact)

        await worker.run()
    """

    def __init__(
        self,
        queue: JobQueue,
        config: Optional[WorkerConfig] = None,
        delivery_callback: Optional[DeliveryCallback] = None
    ):
        self.queue = queue
        self.config = config or WorkerConfig()
        self.delivery_callback = delivery_callback

        self._handlers: Dict[str, JobHandler] = {}
        self._single_attempt_kinds: Set[str] = set()

        # State
        self._running = False
        self._shutdown_event = asyncio.Event()
        self._active_jobs: Set[str] = set()
        self._semaphore: Optional[asyncio.Semaphore] = None

        # Metrics
        self._processed_count = 0
        self._failed_count = 0
        self._retried_count = 0
        self._start_time: Optional[datetime] = None

    def register_handler(self, kind: str, handler: JobHandler, retryable: bool = True) -> None:
        """
        Register a handler for a job kind.

        Args:
            kind: Job kind
            handler: Async function (job, progress) -> JobOutcome
            retryable: False for handlers with external side effects that
                must not be repeated; any failure then fails the job for good
        """
        self._handlers[kind] = handler
        if retryable:
            self._single_attempt_kinds.discard(kind)
        else:
            self._single_attempt_kinds.add(kind)
        logger.info(f"Registered handler for job kind: {kind}")

    async def run(self) -> None:
        """
        Run the worker.

        Polls for due jobs and executes them until stop() is called.
        """
        logger.info("Starting worker...")

        self._running = True
        self._start_time = datetime.now(timezone.utc)
        self._shutdown_event = asyncio.Event()

        self._setup_signal_handlers()

        try:
            while self._running and not self._shutdown_event.is_set():
                try:
                    await self.run_once()

                    try:
                        await asyncio.wait_for(
                            self._shutdown_event.wait(),
                            timeout=self.config.poll_interval
                        )
                    except asyncio.TimeoutError:
                        pass

                except Exception as e:
                    logger.exception(f"Worker loop error: {e}")
                    await asyncio.sleep(self.config.poll_interval)

        finally:
            if self._active_jobs:
                logger.info(f"Waiting for {len(self._active_jobs)} active jobs to complete...")
                try:
                    await asyncio.wait_for(
                        self._wait_for_active_jobs(),
                        timeout=self.config.shutdown_timeout
                    )
                except asyncio.TimeoutError:
                    logger.warning("Shutdown timeout - some jobs may not have completed")

            self._running = False
            logger.info(
                f"Worker stopped. Processed: {self._processed_count}, Failed: {self._failed_count}"
            )

    async def run_once(self) -> int:
        """
        Claim and process one round of due jobs

        Returns:
            Number of jobs processed
        """
        if self._semaphore is None:
            self._semaphore = asyncio.Semaphore(self.config.max_concurrent)

        self.queue.recover_stale(
            self.config.stale_after,
            requeue_kinds=[k for k in self._handlers if k not in self._single_attempt_kinds],
            fail_kinds=self._single_attempt_kinds
        )

        jobs = self.queue.claim_due(self.config.batch_size, kinds=list(self._handlers.keys()))
        if not jobs:
            return 0

        await asyncio.gather(*(self._process_job(job) for job in jobs), return_exceptions=True)
        return len(jobs)

    async def stop(self) -> None:
        """Stop the worker gracefully"""
        logger.info("Stopping worker...")
        self._running = False
        self._shutdown_event.set()

    def _progress_for(self, job: AsyncJob) -> ProgressReporter:
        return ProgressReporter(
            callback=lambda percent: self.queue.update_progress(job.job_id, percent),
            step=self.config.progress_step
        )

    async def _process_job(self, job: AsyncJob) -> None:
        """Process a single claimed job"""
        async with self._semaphore:
            self._active_jobs.add(job.job_id)

            try:
                handler = self._handlers.get(job.kind)
                if not handler:
                    logger.error(f"No handler for job kind: {job.kind}")
                    await self._fail(job, f"No handler registered for {job.kind}")
                    return

                reporter = self._progress_for(job)

                def progress(percent: int) -> None:
                    # Handlers report raw percentages; only milestones reach the queue
                    reporter.report(percent, 100)

                try:
                    outcome = await asyncio.wait_for(
                        handler(job, progress),
                        timeout=self.config.job_timeout
                    )
                except asyncio.TimeoutError:
                    await self._handle_failure(job, f"Job timed out after {self.config.job_timeout:g}s")
                    return
                except PERMANENT_ERRORS as e:
                    await self._fail(job, str(e))
                    return
                except Exception as e:
                    logger.exception(f"Job {job.job_id} ({job.kind}) raised: {e}")
                    await self._handle_failure(job, str(e))
                    return

                await reporter.drain()
                await self._succeed(job, outcome or JobOutcome())

            finally:
                self._active_jobs.discard(job.job_id)

    async def _succeed(self, job: AsyncJob, outcome: JobOutcome) -> None:
        self.queue.mark_succeeded(job.job_id, outcome.artifact_path, outcome.summary)
        self._processed_count += 1

        if outcome.artifact_path and job.kind != ARTIFACT_CLEANUP:
            self.queue.schedule_cleanup(job.job_id, outcome.artifact_path, self.config.artifact_retention)

        await self._deliver(self.queue.get(job.job_id) or job, outcome)

    async def _fail(self, job: AsyncJob, error: str) -> None:
        self.queue.mark_failed(job.job_id, error)
        self._failed_count += 1
        await self._deliver(self.queue.get(job.job_id) or job, None)

    async def _handle_failure(self, job: AsyncJob, error: str) -> None:
        """Retry with backoff until max_attempts, then fail for good"""
        if job.kind in self._single_attempt_kinds:
            await self._fail(job, error)
            return

        if job.attempts >= self.config.max_attempts:
            await self._fail(job, f"Max attempts exceeded. Last error: {error}")
            return

        delay = min(
            self.config.retry_delay_base * (2 ** (job.attempts - 1)),
            self.config.retry_delay_max
        )
        self.queue.schedule_retry(job.job_id, error, delay)
        self._retried_count += 1
        logger.info(
            f"Job {job.job_id} scheduled for retry "
            f"({job.attempts}/{self.config.max_attempts}) in {delay:g}s"
        )

    async def _deliver(self, job: AsyncJob, outcome: Optional[JobOutcome]) -> None:
        if self.delivery_callback is None:
            return
        try:
            result = self.delivery_callback(job, outcome)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(f"Delivery of job {job.job_id} failed: {e}")

    async def _wait_for_active_jobs(self) -> None:
        """Wait for all active jobs to complete"""
        while self._active_jobs:
            await asyncio.sleep(0.5)

    def _setup_signal_handlers(self) -> None:
        """Set up signal handlers for graceful shutdown"""
        try:
            loop = asyncio.get_running_loop()

            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.add_signal_handler(
                    sig,
                    lambda: asyncio.create_task(self.stop())
                )
        except (NotImplementedError, RuntimeError):
            # Signal handling not available (e.g., Windows)
            pass

    def get_stats(self) -> Dict[str, Any]:
        """Get worker statistics"""
        uptime = None
        if self._start_time:
            uptime = (datetime.now(timezone.utc) - self._start_time).total_seconds()

        return {
            'running': self._running,
            'active_jobs': len(self._active_jobs),
            'processed_count': self._processed_count,
            'failed_count': self._failed_count,
            'retried_count': self._retried_count,
            'uptime_seconds': uptime,
            'handlers_registered': list(self._handlers.keys()),
            'queue': self.queue.stats()
        }


async def run_worker(
    queue: JobQueue,
    handlers: Dict[str, JobHandler],
    config: Optional[WorkerConfig] = None,
    delivery_callback: Optional[DeliveryCallback] = None
) -> None:
    """
    Convenience function to run a worker.

    Args:
        queue: Job queue
        handlers: Dict of job kind -> handler function
        config: Optional worker configuration
        delivery_callback: Receives (job, outcome) on success, (job, None) on failure
    """
    worker = Worker(queue, config, delivery_callback)

    for kind, handler in handlers.items():
        worker.register_handler(kind, handler)

    await worker.run()
