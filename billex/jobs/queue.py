"""
Job Queue

Persists deferred work in the jobs table. Enqueueing only writes a row; the
worker claims due rows with a conditional update so two workers polling the
same table never run the same job.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional
from uuid import uuid4

from sqlalchemy import and_, delete, func, select, update

from billex.db.connection import Database
from billex.db.models import JobRecord
from billex.models.job import AsyncJob, JobStatus

logger = logging.getLogger(__name__)

ARTIFACT_CLEANUP = 'artifact_cleanup'


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _to_job(record: JobRecord) -> AsyncJob:
    return AsyncJob(
        job_id=record.id,
        kind=record.kind,
        payload=record.payload or {},
        progress=record.progress or 0,
        status=JobStatus(record.status),
        result_artifact_path=record.result_artifact_path,
        scheduled_cleanup_at=record.scheduled_cleanup_at,
        error=record.error,
        attempts=record.attempts or 0,
        created_at=record.created_at,
        run_after=record.run_after,
        completed_at=record.completed_at
    )


class JobQueue:
    """
    Queue of async jobs backed by the database

    Usage:
        queue = JobQueue(db)

        job_id = queue.enqueue('batch_generation', {'owner_id': 'u1', 'batch_id': 'b1'})
        job = queue.get(job_id)
        print(job.status, job.progress)
    """

    def __init__(self, db: Database):
        self.db = db

    def enqueue(self, kind: str, payload: Optional[Dict[str, Any]] = None, delay_seconds: float = 0) -> str:
        """
        Enqueue a job; returns immediately

        Args:
            kind: Handler name
            payload: JSON-serializable handler input
            delay_seconds: Earliest start, relative to now

        Returns:
            Job ID
        """
        job_id = f"job_{uuid4().hex}"
        now = _now()

        with self.db.transaction() as session:
            session.add(JobRecord(
                id=job_id,
                kind=kind,
                status=JobStatus.QUEUED.value,
                payload=payload or {},
                progress=0,
                attempts=0,
                created_at=now,
                run_after=now + timedelta(seconds=max(0.0, delay_seconds))
            ))

        if delay_seconds > 0:
            logger.info(f"Enqueued {kind} job {job_id} to run in {delay_seconds:g}s")
        else:
            logger.info(f"Enqueued {kind} job {job_id}")
        return job_id

    def get(self, job_id: str) -> Optional[AsyncJob]:
        """Current snapshot of a job, or None if unknown"""
        with self.db.session() as session:
            record = session.get(JobRecord, job_id)
            return _to_job(record) if record else None

    def claim_due(self, limit: int = 10, kinds: Optional[Iterable[str]] = None) -> List[AsyncJob]:
        """
        Move up to limit due QUEUED jobs to RUNNING and return them

        Each job is claimed with UPDATE ... WHERE status = 'QUEUED'; a job
        another worker claimed first is skipped.
        """
        now = _now()
        claimed: List[AsyncJob] = []

        with self.db.transaction() as session:
            query = select(JobRecord.id).where(
                and_(
                    JobRecord.status == JobStatus.QUEUED.value,
                    JobRecord.run_after <= now
                )
            )
            if kinds is not None:
                query = query.where(JobRecord.kind.in_(list(kinds)))
            query = query.order_by(JobRecord.run_after, JobRecord.created_at).limit(limit)

            for job_id in session.execute(query).scalars().all():
                result = session.execute(
                    update(JobRecord)
                    .where(and_(JobRecord.id == job_id, JobRecord.status == JobStatus.QUEUED.value))
                    .values(
                        status=JobStatus.RUNNING.value,
                        started_at=now,
                        attempts=JobRecord.attempts + 1,
                        error=None
                    )
                )
                if result.rowcount == 1:
                    claimed.append(job_id)

        return [job for job in (self.get(job_id) for job_id in claimed) if job is not None]

    def update_progress(self, job_id: str, percent: int) -> None:
        """Raise a running job's progress; progress never goes backwards"""
        percent = max(0, min(100, int(percent)))
        with self.db.transaction() as session:
            session.execute(
                update(JobRecord)
                .where(and_(JobRecord.id == job_id, JobRecord.progress < percent))
                .values(progress=percent)
            )

    def mark_running(self, job_id: str) -> None:
        with self.db.transaction() as session:
            session.execute(
                update(JobRecord)
                .where(JobRecord.id == job_id)
                .values(status=JobStatus.RUNNING.value, started_at=_now())
            )

    def mark_succeeded(
        self,
        job_id: str,
        artifact_path: Optional[str] = None,
        result: Optional[Dict[str, Any]] = None
    ) -> None:
        with self.db.transaction() as session:
            session.execute(
                update(JobRecord)
                .where(JobRecord.id == job_id)
                .values(
                    status=JobStatus.SUCCEEDED.value,
                    progress=100,
                    result_artifact_path=artifact_path,
                    result=result,
                    error=None,
                    completed_at=_now()
                )
            )
        logger.info(f"Job {job_id} succeeded")

    def mark_failed(self, job_id: str, error: str) -> None:
        with self.db.transaction() as session:
            session.execute(
                update(JobRecord)
                .where(JobRecord.id == job_id)
                .values(status=JobStatus.FAILED.value, error=error, completed_at=_now())
            )
        logger.warning(f"Job {job_id} failed: {error}")

    def schedule_retry(self, job_id: str, error: str, delay_seconds: float) -> None:
        """Put a failed attempt back in the queue after a delay"""
        with self.db.transaction() as session:
            session.execute(
                update(JobRecord)
                .where(JobRecord.id == job_id)
                .values(
                    status=JobStatus.QUEUED.value,
                    error=error,
                    run_after=_now() + timedelta(seconds=delay_seconds)
                )
            )

    def recover_stale(
        self,
        older_than_seconds: float,
        requeue_kinds: Iterable[str] = (),
        fail_kinds: Iterable[str] = ()
    ) -> Dict[str, int]:
        """
        Reclaim jobs left RUNNING by a worker that died

        A job RUNNING for longer than the cutoff has outlived any worker's
        timeout. Jobs of requeue_kinds go back to the queue; jobs of
        fail_kinds are failed, since their side effects may already have
        happened. Other kinds are left alone.

        Returns:
            {'requeued': n, 'failed': m}
        """
        cutoff = _now() - timedelta(seconds=older_than_seconds)
        stale = and_(JobRecord.status == JobStatus.RUNNING.value, JobRecord.started_at < cutoff)
        error = f"Worker lost: job was still running after {older_than_seconds:g}s"

        with self.db.transaction() as session:
            failed = session.execute(
                update(JobRecord)
                .where(and_(stale, JobRecord.kind.in_(list(fail_kinds))))
                .values(status=JobStatus.FAILED.value, error=error, completed_at=_now())
            ).rowcount
            requeued = session.execute(
                update(JobRecord)
                .where(and_(stale, JobRecord.kind.in_(list(requeue_kinds))))
                .values(status=JobStatus.QUEUED.value, error=error, run_after=_now())
            ).rowcount

        if failed or requeued:
            logger.warning(f"Recovered stale jobs: {requeued} requeued, {failed} failed")
        return {'requeued': requeued, 'failed': failed}

    def schedule_cleanup(self, job_id: str, artifact_path: str, delay_seconds: float) -> str:
        """
        Enqueue deletion of a job's artifact after the retention window

        Returns:
            The cleanup job's ID
        """
        cleanup_id = self.enqueue(
            ARTIFACT_CLEANUP,
            {'path': artifact_path, 'source_job_id': job_id},
            delay_seconds=delay_seconds
        )
        with self.db.transaction() as session:
            session.execute(
                update(JobRecord)
                .where(JobRecord.id == job_id)
                .values(scheduled_cleanup_at=_now() + timedelta(seconds=delay_seconds))
            )
        return cleanup_id

    def stats(self) -> Dict[str, int]:
        """Job counts by status"""
        counts = {status.value: 0 for status in JobStatus}
        with self.db.session() as session:
            rows = session.execute(
                select(JobRecord.status, func.count(JobRecord.id)).group_by(JobRecord.status)
            ).all()
        for status, count in rows:
            counts[status] = count
        counts['total'] = sum(counts.values())
        return counts

    def clear_finished(self, older_than_seconds: float = 86400) -> int:
        """
        Delete finished jobs completed before the cutoff

        Returns:
            Number of rows deleted
        """
        cutoff = _now() - timedelta(seconds=older_than_seconds)
        with self.db.transaction() as session:
            result = session.execute(
                delete(JobRecord).where(
                    and_(
                        JobRecord.status.in_([JobStatus.SUCCEEDED.value, JobStatus.FAILED.value]),
                        JobRecord.completed_at < cutoff
                    )
                )
            )
            deleted = result.rowcount
        if deleted:
            logger.info(f"Cleared {deleted} finished jobs")
        return deleted
