"""
Data synchronization endpoints

Queue historical syncs for new connections, drain the queues on demand
(external cron) and report sync progress per brand.
"""
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session
from datetime import datetime

from app.exceptions import QueueUnavailableError
from app.models.base import get_db
from app.models.brand import PlatformConnection
from app.services.meta_queue_service import MetaQueueService
from app.services.rate_limiter import meta_rate_limiter
from app.services.shopify_queue_service import ShopifyQueueService
from app.services.sync_worker import SyncWorker
from app.config import get_settings
from app.utils.logger import log

settings = get_settings()

router = APIRouter(prefix="/sync", tags=["sync"])


def _get_connection(db: Session, connection_id: int, platform: str) -> PlatformConnection:
    connection = db.query(PlatformConnection).filter(PlatformConnection.id == connection_id).first()
    if not connection or connection.platform != platform:
        raise HTTPException(status_code=404, detail=f"{platform} connection {connection_id} not found")
    if not connection.is_active:
        raise HTTPException(status_code=409, detail=f"Connection {connection_id} is {connection.status}")
    return connection


def _mark_sync_started(db: Session, connection: PlatformConnection) -> None:
    metadata = dict(connection.sync_metadata or {})
    metadata["queue_jobs_running"] = True
    metadata["sync_started_at"] = datetime.utcnow().isoformat()
    connection.sync_status = "in_progress"
    connection.sync_metadata = metadata
    db.commit()


@router.post("/meta/{connection_id}/historical")
async def queue_meta_historical_sync(connection_id: int, db: Session = Depends(get_db)):
    """
    Queue the recent sync plus the chunked 12 month backfill for a Meta
    ad account.
    """
    connection = _get_connection(db, connection_id, "meta")

    result = MetaQueueService(db).queue_complete_historical_sync(
        connection.brand_id,
        connection.id,
        connection.account_id,
        account_created_date=connection.account_created_at,
    )
    if result["success"]:
        _mark_sync_started(db, connection)
    else:
        log.warning(f"Meta historical sync not queued for connection {connection_id}: {result['estimated_completion']}")

    return {"connection_id": connection_id, "brand_id": connection.brand_id, **result}


@router.post("/shopify/{connection_id}/historical")
async def queue_shopify_historical_sync(connection_id: int, db: Session = Depends(get_db)):
    """Queue the recent sync plus full order, customer and product pulls for a store"""
    connection = _get_connection(db, connection_id, "shopify")

    try:
        result = ShopifyQueueService(db).queue_historical_sync(
            connection.brand_id, connection.id, connection.shop_domain
        )
    except QueueUnavailableError as e:
        raise HTTPException(status_code=503, detail=str(e))
    except Exception as e:
        db.rollback()
        log.error(f"Error queuing Shopify historical sync for connection {connection_id}: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))

    _mark_sync_started(db, connection)
    return {"connection_id": connection_id, "brand_id": connection.brand_id, "success": True, **result}


@router.get("/status/{brand_id}")
async def get_sync_status(brand_id: int, db: Session = Depends(get_db)):
    """ETL milestones per platform plus the sync state of each connection"""
    connections = db.query(PlatformConnection).filter(PlatformConnection.brand_id == brand_id).all()

    status = {"brand_id": brand_id}
    status.update(MetaQueueService(db).get_sync_status(brand_id))
    status.update(ShopifyQueueService(db).get_sync_status(brand_id))
    status["connections"] = [
        {
            "id": c.id,
            "platform": c.platform,
            "status": c.status,
            "sync_status": c.sync_status,
            "last_synced_at": c.last_synced_at.isoformat() if c.last_synced_at else None,
            "metadata": c.sync_metadata or {},
        }
        for c in connections
    ]
    return status


@router.post("/process-queue")
async def process_queue(
    max_jobs: int = Query(settings.worker_max_jobs_manual, ge=1, le=100, description="Jobs to run in this call"),
    db: Session = Depends(get_db)
):
    """Run up to max_jobs ready jobs now (called by external cron or manually)"""
    try:
        return await SyncWorker(db).process_queue(max_jobs=max_jobs)
    except Exception as e:
        log.error(f"Queue processing error: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/daily")
async def queue_daily_syncs():
    """Queue the nightly sync for every active connection"""
    from app.scheduler import enqueue_daily_syncs

    return {"queued": enqueue_daily_syncs()}


@router.get("/queue")
async def get_queue_status(db: Session = Depends(get_db)):
    """Job counts and latest failures per queue, plus the Meta rate limiter state"""
    meta = MetaQueueService(db)
    shopify = ShopifyQueueService(db)
    return {
        "enabled": settings.queue_enabled,
        "queues": {
            meta.queue.name: meta.queue.counts(),
            shopify.queue.name: shopify.queue.counts(),
        },
        "recent_failures": [
            {
                "id": job.id,
                "queue": job.queue,
                "name": job.name,
                "brand_id": (job.data or {}).get("brand_id"),
                "attempts_made": job.attempts_made,
                "error": job.last_error,
                "failed_at": job.finished_at.isoformat() if job.finished_at else None,
            }
            for queue in (meta.queue, shopify.queue)
            for job in queue.get_failed()[:5]
        ],
        "rate_limiter": meta_rate_limiter.get_queue_status(),
    }


@router.post("/queue/recover-stalled")
async def recover_stalled(db: Session = Depends(get_db)):
    """Return jobs that ran past their timeout to the queue"""
    meta = MetaQueueService(db)
    shopify = ShopifyQueueService(db)
    return {
        meta.queue.name: meta.queue.recover_stalled(),
        shopify.queue.name: shopify.queue.recover_stalled(),
    }


@router.delete("/jobs/{brand_id}")
async def cleanup_brand_jobs(brand_id: int, db: Session = Depends(get_db)):
    """Remove pending and failed jobs of a brand (e.g. after it is deleted)"""
    meta_removed = MetaQueueService(db).cleanup_jobs_by_brand(brand_id)
    shopify_removed = ShopifyQueueService(db).cleanup_jobs_by_brand(brand_id)
    return {
        "brand_id": brand_id,
        "removed": {"meta": meta_removed, "shopify": shopify_removed},
        "total_removed": meta_removed + shopify_removed,
    }
