"""
Persistent Job Queue

A small Bull-style queue stored in the queue_jobs table. Each named queue
(meta-sync, shopify-sync) shares the table; workers claim the highest
priority job whose run_at has passed.

Features:
- Static priorities (higher first, FIFO within a priority)
- Delayed jobs
- Retries with exponential backoff
- Stalled-job recovery for workers that died mid-job
- Retention limits for completed and failed jobs
"""
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from app.config import get_settings
from app.exceptions import QueueUnavailableError
from app.models.sync_jobs import QueueJob
from app.utils.logger import log
from app.utils.retry import calculate_backoff

settings = get_settings()

JOB_STATUSES = ("waiting", "delayed", "active", "completed", "failed")
READY_STATUSES = ("waiting", "delayed")

# Upper bound for a single retry delay
MAX_BACKOFF_SECONDS = 6 * 60 * 60


class JobQueue:
    """One named queue backed by the queue_jobs table"""

    def __init__(self, db: Session, name: str, enabled: Optional[bool] = None):
        self.db = db
        self.name = name
        self.enabled = settings.queue_enabled if enabled is None else enabled

    # ------------------------------------------------------------------
    # Producers
    # ------------------------------------------------------------------

    def add(
        self,
        name: str,
        data: Dict[str, Any],
        priority: int = 0,
        delay: float = 0,
        attempts: int = 1,
        backoff_delay: float = 0,
        timeout: Optional[int] = None,
        remove_on_complete: Optional[int] = None,
        remove_on_fail: Optional[int] = None,
    ) -> QueueJob:
        """
        Enqueue a job.

        Args:
            name: Job type the worker dispatches on
            data: JSON payload
            priority: Higher values are claimed first
            delay: Seconds before the job becomes ready
            attempts: Total attempts before the job is marked failed
            backoff_delay: Base retry delay, doubled after each failure
            timeout: Seconds a claimed job may run before it counts as stalled
            remove_on_complete: Keep at most this many completed jobs
            remove_on_fail: Keep at most this many failed jobs

        Raises:
            QueueUnavailableError: the queue is disabled
        """
        if not self.enabled:
            raise QueueUnavailableError(f"Queue {self.name} is disabled")

        now = datetime.utcnow()
        job = QueueJob(
            queue=self.name,
            name=name,
            data=data,
            brand_id=_brand_id(data),
            priority=priority,
            status="delayed" if delay and delay > 0 else "waiting",
            attempts_made=0,
            max_attempts=max(1, attempts),
            backoff_delay=backoff_delay,
            run_at=now + timedelta(seconds=delay or 0),
            timeout_seconds=timeout,
            stalled_count=0,
            max_stalled_count=settings.queue_max_stalled_count,
            remove_on_complete=remove_on_complete,
            remove_on_fail=remove_on_fail,
            created_at=now,
        )
        self.db.add(job)
        self.db.commit()
        self.db.refresh(job)

        log.debug(f"Queued {self.name}/{name} job {job.id} (priority {priority}, delay {delay}s)")
        return job

    # ------------------------------------------------------------------
    # Consumers
    # ------------------------------------------------------------------

    def peek_next(self, names: Optional[Iterable[str]] = None, now: Optional[datetime] = None) -> Optional[QueueJob]:
        """Next job claim_next would return, without claiming it"""
        query = self.db.query(QueueJob).filter(
            QueueJob.queue == self.name,
            QueueJob.status.in_(READY_STATUSES),
            QueueJob.run_at <= (now or datetime.utcnow()),
        )
        if names:
            query = query.filter(QueueJob.name.in_(list(names)))

        return query.order_by(
            QueueJob.priority.desc(),
            QueueJob.run_at.asc(),
            QueueJob.id.asc(),
        ).first()

    def claim_next(self, names: Optional[Iterable[str]] = None, now: Optional[datetime] = None) -> Optional[QueueJob]:
        """
        Claim the next ready job and mark it active.

        The status update is guarded on the previous status so two workers
        cannot claim the same row.
        """
        now = now or datetime.utcnow()

        while True:
            candidate = self.peek_next(names, now=now)
            if candidate is None:
                return None

            claimed = self.db.query(QueueJob).filter(
                QueueJob.id == candidate.id,
                QueueJob.status == candidate.status,
            ).update(
                {
                    "status": "active",
                    "started_at": now,
                    "attempts_made": (candidate.attempts_made or 0) + 1,
                },
                synchronize_session=False,
            )
            self.db.commit()

            if claimed:
                self.db.refresh(candidate)
                return candidate

    def complete(self, job: QueueJob, result: Optional[Dict[str, Any]] = None) -> None:
        job.status = "completed"
        job.result = result
        job.last_error = None
        job.finished_at = datetime.utcnow()
        self.db.commit()

        self._trim("completed", job.remove_on_complete)

    def fail(self, job: QueueJob, error: Any, now: Optional[datetime] = None) -> bool:
        """
        Record a failed attempt.

        Returns True when the job was rescheduled for another attempt and
        False when it has exhausted its attempts.
        """
        now = now or datetime.utcnow()
        job.last_error = str(error)

        if (job.attempts_made or 0) < (job.max_attempts or 1):
            delay = calculate_backoff(
                job.attempts_made,
                base_delay=job.backoff_delay or 0,
                max_delay=MAX_BACKOFF_SECONDS,
                jitter=False,
            )
            job.status = "delayed"
            job.run_at = now + timedelta(seconds=delay)
            job.started_at = None
            self.db.commit()

            log.warning(
                f"{self.name}/{job.name} job {job.id} failed attempt "
                f"{job.attempts_made}/{job.max_attempts}: {error}. Retrying in {delay:.0f}s"
            )
            return True

        job.status = "failed"
        job.finished_at = now
        self.db.commit()

        log.error(f"{self.name}/{job.name} job {job.id} failed permanently: {error}")
        self._trim("failed", job.remove_on_fail)
        return False

    def recover_stalled(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """
        Return active jobs that ran past their timeout to the waiting state.

        A job that stalls more than max_stalled_count times is failed.
        """
        now = now or datetime.utcnow()
        recovered = 0
        failed = 0

        active_jobs = self.db.query(QueueJob).filter(
            QueueJob.queue == self.name,
            QueueJob.status == "active",
            QueueJob.timeout_seconds.isnot(None),
        ).all()

        for job in active_jobs:
            if job.started_at is None or job.started_at + timedelta(seconds=job.timeout_seconds) > now:
                continue

            job.stalled_count = (job.stalled_count or 0) + 1
            if job.stalled_count > (job.max_stalled_count or 0):
                job.status = "failed"
                job.finished_at = now
                job.last_error = "job stalled more than allowable limit"
                failed += 1
                log.error(f"{self.name}/{job.name} job {job.id} stalled {job.stalled_count} times, failing")
            else:
                job.status = "waiting"
                job.run_at = now
                job.started_at = None
                recovered += 1
                log.warning(f"{self.name}/{job.name} job {job.id} stalled, returned to queue")

        self.db.commit()
        return {"recovered": recovered, "failed": failed}

    # ------------------------------------------------------------------
    # Inspection and cleanup
    # ------------------------------------------------------------------

    def get_job(self, job_id: int) -> Optional[QueueJob]:
        return self.db.query(QueueJob).filter(
            QueueJob.queue == self.name,
            QueueJob.id == job_id,
        ).first()

    def get_waiting(self) -> List[QueueJob]:
        """Jobs not yet claimed, in claim order (delayed included)"""
        return self.db.query(QueueJob).filter(
            QueueJob.queue == self.name,
            QueueJob.status.in_(READY_STATUSES),
        ).order_by(QueueJob.priority.desc(), QueueJob.run_at.asc(), QueueJob.id.asc()).all()

    def get_failed(self) -> List[QueueJob]:
        return self.db.query(QueueJob).filter(
            QueueJob.queue == self.name,
            QueueJob.status == "failed",
        ).order_by(QueueJob.finished_at.desc()).all()

    def remove(self, job: QueueJob) -> None:
        self.db.delete(job)
        self.db.commit()

    def counts(self) -> Dict[str, int]:
        counts = {status: 0 for status in JOB_STATUSES}
        rows = self.db.query(QueueJob.status).filter(QueueJob.queue == self.name).all()
        for (status,) in rows:
            counts[status] = counts.get(status, 0) + 1
        return counts

    def remove_by_brand(self, brand_id: int, include_active: bool = False) -> int:
        """
        Delete every pending job for a brand.

        Matches on the denormalised brand_id column as well as brandId or
        brand_id inside the payload for rows queued without one.
        """
        statuses = list(READY_STATUSES) + ["failed"]
        if include_active:
            statuses.append("active")

        jobs = self.db.query(QueueJob).filter(
            QueueJob.queue == self.name,
            QueueJob.status.in_(statuses),
            or_(QueueJob.brand_id == brand_id, QueueJob.brand_id.is_(None)),
        ).all()

        removed = 0
        for job in jobs:
            if job.brand_id == brand_id or _brand_id(job.data or {}) == brand_id:
                self.db.delete(job)
                removed += 1

        self.db.commit()
        if removed:
            log.info(f"Removed {removed} {self.name} jobs for brand {brand_id}")
        return removed

    def _trim(self, status: str, keep: Optional[int]) -> None:
        """Delete the oldest jobs in a terminal state beyond the retention limit"""
        if keep is None:
            return

        stale = self.db.query(QueueJob).filter(
            QueueJob.queue == self.name,
            QueueJob.status == status,
        ).order_by(QueueJob.finished_at.desc(), QueueJob.id.desc()).offset(keep).all()

        for job in stale:
            self.db.delete(job)
        if stale:
            self.db.commit()


def _brand_id(data: Dict[str, Any]) -> Optional[int]:
    value = data.get("brand_id", data.get("brandId"))
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None
