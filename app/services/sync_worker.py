"""
Sync Worker

Claims ready jobs from the Meta and Shopify queues and runs them:

- Dispatches on the job type to a handler that fetches through a connector
  and upserts through DataSyncService
- Keeps the ETL job row, the connection's sync status and incremental
  cursors up to date
- Failed jobs are retried with backoff by the queue; jobs whose connection
  is gone are removed instead
"""
import asyncio
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Optional

from dateutil import parser as date_parser
from dateutil.relativedelta import relativedelta
from sqlalchemy.orm import Session

from app.config import get_settings
from app.connectors.base_connector import BaseConnector
from app.connectors.meta_ads_connector import MetaAdsConnector
from app.connectors.shopify_connector import ShopifyConnector
from app.exceptions import EtlJobNotFoundError, OrphanedConnectionError
from app.models.brand import PlatformConnection
from app.models.sync_jobs import QueueJob
from app.services.data_sync_service import DataSyncService, rows_written
from app.services.job_queue import JobQueue
from app.services.meta_queue_service import MetaJobType, MetaQueueService
from app.services.shopify_queue_service import ShopifyJobType, ShopifyQueueService
from app.utils.logger import log

settings = get_settings()

# Shopify launched in 2006; bulk pulls start here to cover a store's full history
SHOPIFY_HISTORY_START = datetime(2006, 1, 1)

META_ENTITIES = ["campaigns", "insights", "demographics"]

ConnectorFactory = Callable[[PlatformConnection], BaseConnector]
Handler = Callable[[Dict[str, Any], PlatformConnection], Awaitable[Dict[str, Any]]]


def build_connector(connection: PlatformConnection) -> BaseConnector:
    if connection.platform == "meta":
        return MetaAdsConnector(connection.access_token, connection.account_id)
    if connection.platform == "shopify":
        return ShopifyConnector(connection.shop_domain, connection.access_token)
    raise ValueError(f"Unsupported platform: {connection.platform}")


class SyncWorker:
    """Processes queued sync jobs within one DB session"""

    def __init__(self, db: Session, connector_factory: Optional[ConnectorFactory] = None):
        self.db = db
        self.connector_factory = connector_factory or build_connector
        self.meta = MetaQueueService(db)
        self.shopify = ShopifyQueueService(db)
        self.data_sync = DataSyncService(db)

        self.handlers: Dict[str, Dict[str, Handler]] = {
            self.meta.queue.name: {
                MetaJobType.RECENT_SYNC.value: self._meta_recent_sync,
                MetaJobType.HISTORICAL_CAMPAIGNS.value: self._meta_historical,
                MetaJobType.HISTORICAL_DEMOGRAPHICS.value: self._meta_historical,
                MetaJobType.HISTORICAL_INSIGHTS.value: self._meta_historical,
                MetaJobType.DAILY_SYNC.value: self._meta_daily_sync,
                MetaJobType.RECONCILE.value: self._meta_reconcile,
            },
            self.shopify.queue.name: {
                ShopifyJobType.RECENT_SYNC.value: self._shopify_recent_sync,
                ShopifyJobType.BULK_ORDERS.value: self._shopify_bulk,
                ShopifyJobType.BULK_CUSTOMERS.value: self._shopify_bulk,
                ShopifyJobType.BULK_PRODUCTS.value: self._shopify_bulk,
                ShopifyJobType.INCREMENTAL.value: self._shopify_incremental,
                ShopifyJobType.RECONCILE.value: self._shopify_reconcile,
            },
        }
        self.platforms = {self.meta.queue.name: "meta", self.shopify.queue.name: "shopify"}

    # ------------------------------------------------------------------
    # Queue loop
    # ------------------------------------------------------------------

    def _claim_next(self, now: Optional[datetime] = None):
        """Claim from whichever queue holds the highest-priority ready job"""
        best_queue, best_job = None, None
        for queue in (self.meta.queue, self.shopify.queue):
            candidate = queue.peek_next(now=now)
            if candidate is not None and (best_job is None or candidate.priority > best_job.priority):
                best_queue, best_job = queue, candidate

        if best_queue is None:
            return None, None
        return best_queue, best_queue.claim_next(now=now)

    async def process_queue(self, max_jobs: Optional[int] = None) -> Dict[str, Any]:
        """
        Run up to max_jobs ready jobs.

        Returns:
            Dict with counts (processed, completed, retrying, failed, removed)
            and one entry per job
        """
        max_jobs = settings.worker_max_jobs_scheduled if max_jobs is None else max_jobs
        summary = {"processed": 0, "completed": 0, "retrying": 0, "failed": 0, "removed": 0, "jobs": []}

        while summary["processed"] < max_jobs:
            queue, job = self._claim_next()
            if job is None:
                break

            outcome = await self.process_job(queue, job)
            summary["processed"] += 1
            summary[outcome["status"]] += 1
            summary["jobs"].append(outcome)

        if summary["processed"]:
            log.info(
                f"[Sync Worker] Processed {summary['processed']} jobs: {summary['completed']} completed, "
                f"{summary['retrying']} retrying, {summary['failed']} failed, {summary['removed']} removed"
            )
        return summary

    async def process_job(self, queue: JobQueue, job: QueueJob) -> Dict[str, Any]:
        job_id, name, data = job.id, job.name, dict(job.data or {})
        timeout = job.timeout_seconds
        platform = self.platforms[queue.name]
        outcome = {"id": job_id, "queue": queue.name, "name": name, "brand_id": data.get("brand_id")}

        handler = self.handlers[queue.name].get(name)
        if handler is None:
            queue.fail(job, f"No handler for job type {name}")
            outcome.update(status="failed", error=f"No handler for job type {name}")
            return outcome

        etl_job_id = data.get("etl_job_id")
        log.info(f"[Sync Worker] Processing {queue.name}/{name} job {job_id} for brand {data.get('brand_id')}")

        try:
            connection = self._get_connection(data, platform)
            if etl_job_id is None:
                etl_job_id = self._create_etl_job(platform, name, data)
            self._update_etl(etl_job_id, status="in_progress", progress_pct=10, error_message=None)

            run = handler(data, connection)
            result = await asyncio.wait_for(run, timeout) if timeout else await run

        except OrphanedConnectionError as e:
            self.db.rollback()
            log.warning(f"[Sync Worker] Removing orphaned job {job_id}: {e}")
            self._update_etl(etl_job_id, status="failed", error_message=str(e))
            queue.remove(job)
            outcome.update(status="removed", error=str(e))
            return outcome

        except Exception as e:
            self.db.rollback()
            error = str(e) or type(e).__name__
            self._update_etl(etl_job_id, status="failed", error_message=error)
            retrying = queue.fail(job, error)
            # A retry may still succeed; only the final attempt marks the connection
            if name == "recent_sync" and not retrying:
                self._set_connection_status(data.get("connection_id"), "failed")
            outcome.update(status="retrying" if retrying else "failed", error=error)
            return outcome

        self._update_etl(
            etl_job_id,
            status="completed",
            progress_pct=100,
            rows_written=result.get("rows_written", 0),
            completed_at=datetime.utcnow(),
        )
        queue.complete(job, result)
        outcome.update(status="completed", result=result)
        return outcome

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    def _get_connection(self, data: Dict[str, Any], platform: str) -> PlatformConnection:
        connection_id = data.get("connection_id")
        connection = self.db.query(PlatformConnection).filter(PlatformConnection.id == connection_id).first()

        if connection is None:
            raise OrphanedConnectionError(f"Connection {connection_id} does not exist")
        if connection.platform != platform:
            raise OrphanedConnectionError(f"Connection {connection_id} is not a {platform} connection")
        if not connection.is_active:
            raise OrphanedConnectionError(f"Connection {connection_id} is {connection.status}")
        return connection

    def _create_etl_job(self, platform: str, name: str, data: Dict[str, Any]) -> int:
        service = self.meta if platform == "meta" else self.shopify
        entity = data.get("entity") or name
        window = None
        if data.get("start_date") and data.get("end_date"):
            window = {"start": data["start_date"], "end": data["end_date"]}

        if platform == "meta":
            return service.create_etl_job(data["brand_id"], entity, name, window)
        return service.create_etl_job(data["brand_id"], entity, name)

    def _update_etl(self, etl_job_id: Optional[int], **updates) -> None:
        if not etl_job_id:
            return
        try:
            self.meta.update_etl_job(etl_job_id, **updates)
        except EtlJobNotFoundError:
            log.warning(f"[Sync Worker] ETL job {etl_job_id} no longer exists")

    def _set_connection_status(self, connection_id: Optional[int], status: str) -> None:
        connection = self.db.query(PlatformConnection).filter(PlatformConnection.id == connection_id).first()
        if connection is None:
            return

        now = datetime.utcnow()
        metadata = dict(connection.sync_metadata or {})
        metadata["queue_jobs_running"] = False
        metadata["sync_completed_at"] = now.isoformat() if status == "completed" else None
        metadata["sync_failed_at"] = now.isoformat() if status == "failed" else None

        connection.sync_status = status
        connection.sync_metadata = metadata
        if status == "completed":
            connection.last_synced_at = now
        self.db.commit()
        log.info(f"[Sync Worker] Connection {connection_id} sync status -> {status}")

    @staticmethod
    async def _run_sync(connector: BaseConnector, start: datetime, end: datetime, **kwargs) -> Dict[str, Any]:
        result = await connector.sync(start, end, **kwargs)
        if not result["success"]:
            raise RuntimeError(f"{result['source']} sync failed: {result['error']}")
        return result["data"]

    # ------------------------------------------------------------------
    # Meta handlers
    # ------------------------------------------------------------------

    async def _meta_window(self, data: Dict[str, Any], connection: PlatformConnection,
                           start: datetime, end: datetime, entities) -> Dict[str, Any]:
        payload = await self._run_sync(self.connector_factory(connection), start, end, entities=entities)
        saved = self.data_sync.save_meta_data(data["brand_id"], payload)
        return {
            "rows_written": rows_written(*saved.values()),
            "saved": {entity: result["created"] + result["updated"] for entity, result in saved.items()},
            "start_date": start.date().isoformat(),
            "end_date": end.date().isoformat(),
        }

    async def _meta_recent_sync(self, data: Dict[str, Any], connection: PlatformConnection) -> Dict[str, Any]:
        end = datetime.utcnow()
        start = end - relativedelta(months=settings.backfill_lookback_months)

        result = await self._meta_window(data, connection, start, end, META_ENTITIES)
        for entity in META_ENTITIES:
            self.meta.update_cursor(data["brand_id"], entity, end)
        self._set_connection_status(connection.id, "completed")
        return result

    async def _meta_historical(self, data: Dict[str, Any], connection: PlatformConnection) -> Dict[str, Any]:
        entity = data["entity"]
        start = date_parser.parse(data["start_date"])
        end = date_parser.parse(data["end_date"])
        metadata = data.get("metadata") or {}

        result = await self._meta_window(data, connection, start, end, [entity])

        chunk, total = metadata.get("chunk_number"), metadata.get("total_chunks")
        if chunk and total:
            log.info(f"[Sync Worker] Historical {entity} chunk {chunk}/{total} done for brand {data['brand_id']}")
            if chunk == total:
                self.meta.update_cursor(data["brand_id"], entity, end)
        return result

    async def _meta_daily_sync(self, data: Dict[str, Any], connection: PlatformConnection) -> Dict[str, Any]:
        end = datetime.utcnow()
        start = end - timedelta(days=1)

        result = await self._meta_window(data, connection, start, end, META_ENTITIES)
        for entity in META_ENTITIES:
            self.meta.update_cursor(data["brand_id"], entity, end)
        return result

    async def _meta_reconcile(self, data: Dict[str, Any], connection: PlatformConnection) -> Dict[str, Any]:
        updated = self.data_sync.recalculate_meta_metrics(data["brand_id"])
        return {"rows_written": updated}

    # ------------------------------------------------------------------
    # Shopify handlers
    # ------------------------------------------------------------------

    async def _shopify_window(self, data: Dict[str, Any], connection: PlatformConnection,
                              start: datetime, end: datetime, entities, field: str = "created_at") -> Dict[str, Any]:
        payload = await self._run_sync(
            self.connector_factory(connection), start, end, entities=entities, field=field
        )
        saved = self.data_sync.save_shopify_data(data["brand_id"], payload)
        return {
            "rows_written": rows_written(*saved.values()),
            "saved": {entity: result["created"] + result["updated"] for entity, result in saved.items()},
        }

    async def _shopify_recent_sync(self, data: Dict[str, Any], connection: PlatformConnection) -> Dict[str, Any]:
        end = datetime.utcnow()
        start = end - timedelta(days=settings.shopify_recent_sync_days)

        result = await self._shopify_window(data, connection, start, end, ["orders", "customers", "products"])
        self._set_connection_status(connection.id, "completed")
        return result

    async def _shopify_bulk(self, data: Dict[str, Any], connection: PlatformConnection) -> Dict[str, Any]:
        entity = data["entity"]
        end = datetime.utcnow()

        result = await self._shopify_window(data, connection, SHOPIFY_HISTORY_START, end, [entity])
        self.shopify.update_cursor(data["brand_id"], entity, end)
        return result

    async def _shopify_incremental(self, data: Dict[str, Any], connection: PlatformConnection) -> Dict[str, Any]:
        """Orders and customers updated since the orders cursor"""
        end = datetime.utcnow()
        start = self.shopify.get_cursor(data["brand_id"], "orders") or end - timedelta(days=1)

        result = await self._shopify_window(
            data, connection, start, end, ["orders", "customers"], field="updated_at"
        )
        self.shopify.update_cursor(data["brand_id"], "orders", end)
        self.shopify.update_cursor(data["brand_id"], "customers", end)
        return result

    async def _shopify_reconcile(self, data: Dict[str, Any], connection: PlatformConnection) -> Dict[str, Any]:
        removed = self.data_sync.remove_orphaned_refunds(data["brand_id"])
        return {"rows_written": 0, "orphaned_refunds_removed": removed}
