"""
Shopify Queue Service

Queues Shopify Admin API syncs for a brand: a recent sync for immediate
dashboards followed by staggered full pulls of orders, customers and
products.
"""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from app.config import get_settings
from app.exceptions import QueueUnavailableError
from app.models.sync_jobs import EtlJob, QueueJob
from app.services import etl_tracking
from app.services.job_queue import JobQueue
from app.utils.logger import log

settings = get_settings()

SHOPIFY_QUEUE_NAME = "shopify-sync"


class ShopifyJobType(str, Enum):
    RECENT_SYNC = "recent_sync"
    BULK_ORDERS = "bulk_orders"
    BULK_CUSTOMERS = "bulk_customers"
    BULK_PRODUCTS = "bulk_products"
    INCREMENTAL = "incremental"
    RECONCILE = "reconcile"


RECENT_SYNC_PRIORITY = 10

# Entity -> (job type, delay seconds). Staggered so Shopify isn't hit at once.
BULK_ENTITIES = (
    ("orders", ShopifyJobType.BULK_ORDERS, 1),
    ("customers", ShopifyJobType.BULK_CUSTOMERS, 2),
    ("products", ShopifyJobType.BULK_PRODUCTS, 3),
)


class ShopifyQueueService:
    """Queues Shopify sync work and tracks its progress for one DB session"""

    def __init__(self, db: Session, queue: Optional[JobQueue] = None):
        self.db = db
        self.queue = queue or JobQueue(db, SHOPIFY_QUEUE_NAME)

    def add_job(self, job_type: ShopifyJobType, data: Dict[str, Any], **options) -> QueueJob:
        """
        Add a job with the Shopify defaults (5 attempts, exponential backoff
        from 5s, 30 minute timeout).

        Raises:
            QueueUnavailableError: the queue is disabled
        """
        job_options = {
            "attempts": settings.shopify_queue_attempts,
            "backoff_delay": settings.shopify_queue_backoff_seconds,
            "timeout": settings.shopify_queue_timeout_seconds,
            "remove_on_complete": settings.shopify_queue_keep_completed,
            "remove_on_fail": settings.shopify_queue_keep_failed,
        }
        job_options.update(options)

        job_type = ShopifyJobType(job_type)
        payload = dict(data)
        payload["job_type"] = job_type.value

        job = self.queue.add(job_type.value, payload, **job_options)
        log.info(f"[Shopify Queue] Added {job_type.value} job {job.id} for brand {payload.get('brand_id')}")
        return job

    def add_recent_sync_job(self, brand_id: int, connection_id: int, shop_domain: str,
                            etl_job_id: Optional[int] = None) -> QueueJob:
        return self.add_job(
            ShopifyJobType.RECENT_SYNC,
            {
                "brand_id": brand_id,
                "connection_id": connection_id,
                "shop": shop_domain,
                "etl_job_id": etl_job_id,
            },
            priority=RECENT_SYNC_PRIORITY,
        )

    def add_bulk_jobs(self, brand_id: int, connection_id: int, shop_domain: str,
                      etl_job_ids: Optional[Dict[str, int]] = None) -> None:
        etl_job_ids = etl_job_ids or {}
        for entity, job_type, delay in BULK_ENTITIES:
            self.add_job(
                job_type,
                {
                    "brand_id": brand_id,
                    "connection_id": connection_id,
                    "shop": shop_domain,
                    "entity": entity,
                    "etl_job_id": etl_job_ids.get(entity),
                },
                delay=delay,
            )

    def add_incremental_job(self, brand_id: int, connection_id: int, shop_domain: str) -> QueueJob:
        return self.add_job(
            ShopifyJobType.INCREMENTAL,
            {"brand_id": brand_id, "connection_id": connection_id, "shop": shop_domain},
            priority=RECENT_SYNC_PRIORITY - 1,
        )

    def add_reconcile_job(self, brand_id: int, connection_id: int, shop_domain: str) -> QueueJob:
        return self.add_job(
            ShopifyJobType.RECONCILE,
            {"brand_id": brand_id, "connection_id": connection_id, "shop": shop_domain},
            priority=1,
        )

    def queue_historical_sync(self, brand_id: int, connection_id: int, shop_domain: str) -> Dict[str, Any]:
        """
        Create ETL job rows and queue the recent sync plus bulk pulls.

        Raises:
            QueueUnavailableError: the queue is disabled
        """
        if not self.queue.enabled:
            raise QueueUnavailableError(f"Queue {self.queue.name} is disabled")

        recent_etl_id = self.create_etl_job(brand_id, "recent_sync", ShopifyJobType.RECENT_SYNC.value)
        bulk_etl_ids = {
            entity: self.create_etl_job(brand_id, entity, job_type.value)
            for entity, job_type, _ in BULK_ENTITIES
        }

        self.add_recent_sync_job(brand_id, connection_id, shop_domain, etl_job_id=recent_etl_id)
        self.add_bulk_jobs(brand_id, connection_id, shop_domain, etl_job_ids=bulk_etl_ids)

        jobs = [{"id": recent_etl_id, "type": ShopifyJobType.RECENT_SYNC.value, "status": "queued"}]
        jobs.extend(
            {"id": bulk_etl_ids[entity], "type": job_type.value, "status": "queued"}
            for entity, job_type, _ in BULK_ENTITIES
        )
        return {"jobs": jobs, "estimated_completion": "5-10 minutes"}

    # ------------------------------------------------------------------
    # ETL job tracking and cursors
    # ------------------------------------------------------------------

    def create_etl_job(self, brand_id: int, entity: str, job_type: str) -> int:
        return etl_tracking.create_etl_job(self.db, brand_id, entity, job_type, platform="shopify")

    def update_etl_job(self, job_id: int, **updates) -> EtlJob:
        return etl_tracking.update_etl_job(self.db, job_id, **updates)

    def get_sync_status(self, brand_id: int) -> Dict[str, Any]:
        job_types = [job_type.value for job_type in ShopifyJobType]
        return {
            "shopify": {
                "milestones": etl_tracking.latest_milestones(self.db, brand_id, "shopify", job_types),
                "last_update": datetime.utcnow().isoformat(),
            }
        }

    def update_cursor(self, brand_id: int, entity: str, last_complete_at) -> None:
        etl_tracking.set_cursor(self.db, brand_id, f"shopify_{entity}", last_complete_at)

    def get_cursor(self, brand_id: int, entity: str) -> Optional[datetime]:
        return etl_tracking.get_cursor(self.db, brand_id, f"shopify_{entity}")

    def cleanup_jobs_by_brand(self, brand_id: int) -> int:
        log.info(f"[Shopify Queue] Cleaning up jobs for brand {brand_id}")
        return self.queue.remove_by_brand(brand_id)
