"""
Scheduler for queue processing and recurring syncs

Uses APScheduler to drain the sync queues, recover stalled jobs and
enqueue the nightly incremental syncs for every active connection.
"""
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
import pytz

from app.models.base import session_scope
from app.models.brand import PlatformConnection
from app.services.meta_queue_service import MetaQueueService
from app.services.shopify_queue_service import ShopifyQueueService
from app.services.sync_worker import SyncWorker
from app.config import get_settings
from app.utils.logger import log

settings = get_settings()
SHOP_TZ = pytz.timezone(settings.shop_timezone)

scheduler = AsyncIOScheduler()


# Scheduled jobs

async def process_queue_job():
    """Run a small batch of ready jobs (every minute)"""
    try:
        with session_scope() as db:
            summary = await SyncWorker(db).process_queue(max_jobs=settings.worker_max_jobs_scheduled)
        if summary["processed"]:
            log.info(f"Queue run processed {summary['processed']} jobs")
    except Exception as e:
        log.error(f"Queue processing error: {str(e)}")


def recover_stalled_jobs():
    """Return jobs whose worker died mid-run to the queue"""
    try:
        with session_scope() as db:
            for service in (MetaQueueService(db), ShopifyQueueService(db)):
                result = service.queue.recover_stalled()
                if result["recovered"] or result["failed"]:
                    log.warning(
                        f"{service.queue.name}: {result['recovered']} stalled jobs recovered, "
                        f"{result['failed']} failed"
                    )
    except Exception as e:
        log.error(f"Stalled job recovery error: {str(e)}")


def enqueue_daily_syncs() -> int:
    """
    Queue the nightly sync for every active connection.

    Meta connections get a daily_sync job, Shopify connections an
    incremental job. Returns the number of jobs queued.
    """
    queued = 0
    try:
        with session_scope() as db:
            meta = MetaQueueService(db)
            shopify = ShopifyQueueService(db)
            connections = db.query(PlatformConnection).filter(PlatformConnection.status == "active").all()

            for connection in connections:
                if connection.platform == "meta":
                    job = meta.add_daily_sync_job(connection.brand_id, connection.id, connection.account_id)
                elif connection.platform == "shopify":
                    job = shopify.add_incremental_job(connection.brand_id, connection.id, connection.shop_domain)
                else:
                    continue
                if job is not None:
                    queued += 1

        log.info(f"Queued {queued} daily sync jobs")
    except Exception as e:
        log.error(f"Daily sync enqueue error: {str(e)}")
    return queued


# Scheduler Setup

def setup_scheduler():
    """Configure all scheduled jobs"""

    # ── Queue worker ─────────────────────────────────────
    scheduler.add_job(
        process_queue_job,
        trigger=IntervalTrigger(seconds=settings.process_queue_interval_seconds),
        id='process_queue',
        name='Sync Queue Worker',
        replace_existing=True,
        max_instances=1,
        coalesce=True
    )

    # ── Stalled jobs ─────────────────────────────────────
    scheduler.add_job(
        recover_stalled_jobs,
        trigger=IntervalTrigger(seconds=settings.recover_stalled_interval_seconds),
        id='recover_stalled',
        name='Stalled Job Recovery',
        replace_existing=True,
        max_instances=1
    )

    # ── Nightly incremental syncs ────────────────────────
    scheduler.add_job(
        enqueue_daily_syncs,
        trigger=CronTrigger.from_crontab(settings.daily_sync_schedule, timezone=SHOP_TZ),
        id='daily_syncs',
        name='Daily Sync Enqueue',
        replace_existing=True,
        max_instances=1
    )

    log.info(f"Scheduler configured with queue jobs (timezone: {settings.shop_timezone})")


def start_scheduler():
    """Start the scheduler"""
    setup_scheduler()
    scheduler.start()
    log.info("Scheduler started")


def stop_scheduler():
    """Stop the scheduler"""
    if scheduler.running:
        scheduler.shutdown()
        log.info("Scheduler stopped")


def get_scheduled_jobs() -> list:
    """
    Get list of all scheduled jobs

    Returns:
        List of job info dicts
    """
    jobs = []

    for job in scheduler.get_jobs():
        next_run = job.next_run_time

        jobs.append({
            'id': job.id,
            'name': job.name,
            'next_run': next_run.isoformat() if next_run else None,
            'trigger': str(job.trigger)
        })

    return jobs


def get_scheduler_status() -> dict:
    """Whether the scheduler is running, plus its jobs"""
    return {
        'running': scheduler.running,
        'timezone': settings.shop_timezone,
        'jobs': get_scheduled_jobs() if scheduler.running else [],
    }
