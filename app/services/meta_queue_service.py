"""
Meta Ads Queue Service

Plans Meta Marketing API syncs as queued jobs:

- A high-priority recent sync so dashboards fill in immediately
- A historical backfill split into 90-day chunks per entity
  (campaigns > demographics > insights by priority)
- ETL job rows and incremental cursors for progress reporting
"""
import math
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from dateutil import parser as date_parser
from dateutil.relativedelta import relativedelta
from sqlalchemy.orm import Session

from app.config import get_settings
from app.models.sync_jobs import EtlJob, QueueJob
from app.services import etl_tracking
from app.services.job_queue import JobQueue
from app.utils.logger import log

settings = get_settings()

META_QUEUE_NAME = "meta-sync"


class MetaJobType(str, Enum):
    RECENT_SYNC = "recent_sync"  # Last 12 months, high priority for immediate UI
    HISTORICAL_CAMPAIGNS = "historical_campaigns"
    HISTORICAL_DEMOGRAPHICS = "historical_demographics"
    HISTORICAL_INSIGHTS = "historical_insights"
    DAILY_SYNC = "daily_sync"
    RECONCILE = "reconcile"


# Entity -> (job type, priority). Processed in this order by priority.
HISTORICAL_ENTITIES = (
    ("campaigns", MetaJobType.HISTORICAL_CAMPAIGNS, 8),
    ("demographics", MetaJobType.HISTORICAL_DEMOGRAPHICS, 6),
    ("insights", MetaJobType.HISTORICAL_INSIGHTS, 4),
)

RECENT_SYNC_PRIORITY = 10

STATUS_JOB_TYPES = [
    MetaJobType.RECENT_SYNC.value,
    MetaJobType.HISTORICAL_CAMPAIGNS.value,
    MetaJobType.HISTORICAL_DEMOGRAPHICS.value,
    MetaJobType.HISTORICAL_INSIGHTS.value,
]

DateLike = Union[str, date, datetime]


def _as_date(value: DateLike) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date_parser.parse(value).date()


def create_date_chunks(start: DateLike, end: DateLike, days_per_chunk: int) -> List[Dict[str, str]]:
    """
    Split [start, end] into consecutive windows of days_per_chunk days.

    Each window is inclusive on both ends ("YYYY-MM-DD"); the last one is
    clipped to end. A reversed range yields no chunks.
    """
    if days_per_chunk < 1:
        raise ValueError("days_per_chunk must be at least 1")

    current = _as_date(start)
    last = _as_date(end)
    chunks = []

    while current <= last:
        chunk_end = min(current + timedelta(days=days_per_chunk - 1), last)
        chunks.append({"start": current.isoformat(), "end": chunk_end.isoformat()})
        current += timedelta(days=days_per_chunk)

    return chunks


def resolve_backfill_start(account_created_date: Optional[DateLike] = None, now: Optional[datetime] = None) -> date:
    """
    First day to backfill: the later of account creation and the lookback cap.

    Meta only serves reach data for roughly 13 months, so the backfill never
    goes further back than backfill_lookback_months.
    """
    today = (now or datetime.utcnow()).date()
    cap = today - relativedelta(months=settings.backfill_lookback_months)

    if account_created_date:
        created = _as_date(account_created_date)
        chosen = max(created, cap)
        log.info(f"[Meta Queue] Account created {created}, lookback cap {cap}, backfilling from {chosen}")
        return chosen

    log.warning(f"[Meta Queue] No account creation date, backfilling from {cap}")
    return cap


def estimate_completion_minutes(total_jobs: int) -> int:
    per_job_minutes = settings.backfill_seconds_per_job / 60
    return max(settings.backfill_min_estimate_minutes, math.ceil(total_jobs * per_job_minutes))


class MetaQueueService:
    """Queues Meta sync work and tracks its progress for one DB session"""

    def __init__(self, db: Session, queue: Optional[JobQueue] = None):
        self.db = db
        self.queue = queue or JobQueue(db, META_QUEUE_NAME)

    # ------------------------------------------------------------------
    # Enqueueing
    # ------------------------------------------------------------------

    def add_job(self, job_type: MetaJobType, data: Dict[str, Any], **options) -> Optional[QueueJob]:
        """
        Add a job with the Meta defaults (5 attempts, exponential backoff from
        10s, 45 minute timeout, keep 50 completed / 5 failed).

        Enqueue failures are logged and swallowed so a caller's sync can
        continue without background jobs. Returns None in that case.
        """
        job_options = {
            "attempts": settings.meta_queue_attempts,
            "backoff_delay": settings.meta_queue_backoff_seconds,
            "timeout": settings.meta_queue_timeout_seconds,
            "remove_on_complete": settings.meta_queue_keep_completed,
            "remove_on_fail": settings.meta_queue_keep_failed,
        }
        job_options.update(options)

        job_type = MetaJobType(job_type)
        payload = dict(data)
        payload["job_type"] = job_type.value

        try:
            job = self.queue.add(job_type.value, payload, **job_options)
            log.info(f"[Meta Queue] Added {job_type.value} job {job.id} for brand {payload.get('brand_id')}")
            return job
        except Exception as e:
            self.db.rollback()
            log.error(f"[Meta Queue] Failed to add {job_type.value} job: {e}")
            log.warning(f"[Meta Queue] Continuing without background sync for {job_type.value}")
            return None

    def add_recent_sync_job(self, brand_id: int, connection_id: int, account_id: str) -> Optional[QueueJob]:
        return self.add_job(
            MetaJobType.RECENT_SYNC,
            {"brand_id": brand_id, "connection_id": connection_id, "account_id": account_id},
            priority=RECENT_SYNC_PRIORITY,
        )

    def add_historical_backfill_jobs(
        self,
        brand_id: int,
        connection_id: int,
        account_id: str,
        account_created_date: Optional[DateLike] = None,
        now: Optional[datetime] = None,
    ) -> List[QueueJob]:
        """
        Queue one job per chunk per entity. Priority alone orders the work:
        all campaign chunks run before demographics, then insights.

        Returns the jobs that were actually queued.
        """
        end = (now or datetime.utcnow()).date()
        start = resolve_backfill_start(account_created_date, now=now)
        chunks = create_date_chunks(start, end, settings.backfill_chunk_days)

        log.info(f"[Meta Queue] Planning backfill {start} to {end} in {len(chunks)} chunks")

        queued = []
        for entity, job_type, priority in HISTORICAL_ENTITIES:
            for index, chunk in enumerate(chunks, start=1):
                job = self.add_job(
                    job_type,
                    {
                        "brand_id": brand_id,
                        "connection_id": connection_id,
                        "account_id": account_id,
                        "start_date": chunk["start"],
                        "end_date": chunk["end"],
                        "entity": entity,
                        "metadata": {
                            "chunk_number": index,
                            "total_chunks": len(chunks),
                            "chunk_type": entity,
                        },
                    },
                    priority=priority,
                )
                if job is not None:
                    queued.append(job)
            log.info(f"[Meta Queue] Queued {job_type.value} jobs for {len(chunks)} chunks")

        return queued

    def add_daily_sync_job(self, brand_id: int, connection_id: int, account_id: str) -> Optional[QueueJob]:
        return self.add_job(
            MetaJobType.DAILY_SYNC,
            {"brand_id": brand_id, "connection_id": connection_id, "account_id": account_id},
            priority=RECENT_SYNC_PRIORITY - 1,
        )

    def add_reconcile_job(self, brand_id: int, connection_id: int, account_id: str) -> Optional[QueueJob]:
        return self.add_job(
            MetaJobType.RECONCILE,
            {"brand_id": brand_id, "connection_id": connection_id, "account_id": account_id},
            priority=1,
        )

    def queue_complete_historical_sync(
        self,
        brand_id: int,
        connection_id: int,
        account_id: str,
        account_created_date: Optional[DateLike] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Queue the recent sync plus the full historical backfill for a newly
        connected ad account.

        Returns:
            {"success": bool, "estimated_completion": "N minutes", "total_jobs": int}
        """
        if not self.queue.enabled:
            log.warning("[Meta Queue] Queue disabled, skipping background historical sync")
            return {
                "success": False,
                "estimated_completion": "N/A - queue disabled",
                "total_jobs": 0,
            }

        recent = self.add_recent_sync_job(brand_id, connection_id, account_id)
        backfill = self.add_historical_backfill_jobs(
            brand_id, connection_id, account_id, account_created_date, now=now
        )

        # add_job returns None for anything that failed to enqueue
        total_jobs = len(backfill) + (1 if recent is not None else 0)
        if total_jobs == 0:
            log.error(f"[Meta Queue] No historical sync jobs could be queued for brand {brand_id}")
            return {
                "success": False,
                "estimated_completion": "Failed to queue",
                "total_jobs": 0,
            }

        minutes = estimate_completion_minutes(total_jobs)
        log.info(f"[Meta Queue] Queued {total_jobs} jobs for brand {brand_id}, estimated {minutes} minutes")

        return {
            "success": True,
            "estimated_completion": f"{minutes} minutes",
            "total_jobs": total_jobs,
        }

    # ------------------------------------------------------------------
    # ETL job tracking
    # ------------------------------------------------------------------

    def create_etl_job(
        self,
        brand_id: int,
        entity: str,
        job_type: str,
        date_range: Optional[Dict[str, str]] = None,
    ) -> int:
        return etl_tracking.create_etl_job(self.db, brand_id, entity, job_type, date_range, platform="meta")

    def update_etl_job(self, job_id: int, **updates) -> EtlJob:
        """Update status / rows_written / total_rows / progress_pct / error_message / completed_at"""
        return etl_tracking.update_etl_job(self.db, job_id, **updates)

    def get_sync_status(self, brand_id: int) -> Dict[str, Any]:
        """Latest ETL job per entity, reported as milestones"""
        return {
            "meta": {
                "milestones": etl_tracking.latest_milestones(self.db, brand_id, "meta", STATUS_JOB_TYPES),
                "last_update": datetime.utcnow().isoformat(),
            }
        }

    # ------------------------------------------------------------------
    # Cursors
    # ------------------------------------------------------------------

    def update_cursor(self, brand_id: int, entity: str, last_complete_at: DateLike) -> None:
        etl_tracking.set_cursor(self.db, brand_id, f"meta_{entity}", last_complete_at)

    def get_cursor(self, brand_id: int, entity: str) -> Optional[datetime]:
        return etl_tracking.get_cursor(self.db, brand_id, f"meta_{entity}")

    def cleanup_jobs_by_brand(self, brand_id: int) -> int:
        """Remove waiting and failed jobs of a deleted brand"""
        log.info(f"[Meta Queue] Cleaning up jobs for brand {brand_id}")
        return self.queue.remove_by_brand(brand_id)

