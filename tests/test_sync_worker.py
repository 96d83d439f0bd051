"""
Sync worker tests with in-memory connectors.

Covers dispatch per job type, ETL/connection bookkeeping, retries,
orphaned connections, cross-queue priority and job timeouts.
"""
import asyncio
from datetime import datetime

from app.connectors.base_connector import BaseConnector
from app.models.meta_ads import MetaAdDailyInsight, MetaCampaign, MetaDemographic
from app.models.shopify import ShopifyCustomer, ShopifyOrder
from app.models.sync_jobs import EtlJob, QueueJob
from app.services.meta_queue_service import MetaJobType, MetaQueueService
from app.services.shopify_queue_service import ShopifyQueueService
from app.services.sync_worker import SyncWorker


class FakeConnector(BaseConnector):
    RETRY_BASE_DELAY = 0

    def __init__(self, payload=None, error=None, delay=0):
        super().__init__("Fake")
        self.payload = payload or {}
        self.error = error
        self.delay = delay
        self.calls = []

    async def connect(self):
        return True

    async def validate_connection(self):
        return True

    async def fetch_data(self, start_date, end_date, **kwargs):
        self.calls.append((start_date, end_date, kwargs))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return self.payload


META_PAYLOAD = {
    "account_id": "act_123",
    "campaigns": [{"campaign_id": "c1", "name": "Spring", "status": "ACTIVE", "daily_budget": 50.0}],
    "insights": [{"campaign_id": "c1", "date": "2024-06-01", "spend": 12.5, "impressions": 1000, "clicks": 20, "reach": 800}],
    "demographics": [{"date": "2024-06-01", "age": "25-34", "gender": "female", "spend": 5.0, "impressions": 400}],
}

SHOPIFY_PAYLOAD = {
    "orders": [{
        "id": 1001,
        "created_at": "2024-06-01T15:00:00Z",
        "total_price": 80.0,
        "customer": {"id": 55},
        "line_items": [{"product_id": 1, "quantity": 2, "price": 40.0}],
        "refunds": [],
    }],
    "refunds": [],
    "customers": [{"id": 55, "email": "pat@example.com", "created_at": "2024-05-01T00:00:00Z"}],
}


def _worker(db, connector):
    return SyncWorker(db, connector_factory=lambda connection: connector)


def _run(worker, max_jobs=5):
    return asyncio.run(worker.process_queue(max_jobs=max_jobs))


# ---------------------------------------------------------------------------
# Meta
# ---------------------------------------------------------------------------

def test_meta_recent_sync_saves_data_and_marks_connection(db, brand, meta_connection):
    MetaQueueService(db).add_recent_sync_job(brand.id, meta_connection.id, "act_123")
    connector = FakeConnector(META_PAYLOAD)

    summary = _run(_worker(db, connector))

    assert summary["processed"] == 1
    assert summary["completed"] == 1
    assert summary["jobs"][0]["result"]["rows_written"] == 3
    assert connector.calls[0][2]["entities"] == ["campaigns", "insights", "demographics"]

    assert db.query(MetaCampaign).count() == 1
    assert db.query(MetaAdDailyInsight).count() == 1
    assert db.query(MetaDemographic).count() == 1

    etl = db.query(EtlJob).one()
    assert (etl.platform, etl.job_type, etl.status, etl.progress_pct) == ("meta", "recent_sync", "completed", 100)
    assert etl.rows_written == 3

    assert meta_connection.sync_status == "completed"
    assert meta_connection.sync_metadata["queue_jobs_running"] is False
    assert meta_connection.last_synced_at is not None
    assert MetaQueueService(db).get_cursor(brand.id, "insights") is not None


def test_historical_chunk_fetches_its_window(db, brand, meta_connection):
    service = MetaQueueService(db)
    service.add_job(MetaJobType.HISTORICAL_INSIGHTS, {
        "brand_id": brand.id,
        "connection_id": meta_connection.id,
        "account_id": "act_123",
        "start_date": "2024-01-01",
        "end_date": "2024-03-30",
        "entity": "insights",
        "metadata": {"chunk_number": 1, "total_chunks": 1, "chunk_type": "insights"},
    })
    connector = FakeConnector({"account_id": "act_123", "insights": META_PAYLOAD["insights"]})

    summary = _run(_worker(db, connector))

    assert summary["completed"] == 1
    start, end, kwargs = connector.calls[0]
    assert (start, end) == (datetime(2024, 1, 1), datetime(2024, 3, 30))
    assert kwargs["entities"] == ["insights"]
    assert service.get_cursor(brand.id, "insights") == datetime(2024, 3, 30)


def test_reconcile_recomputes_ratios(db, brand, meta_connection):
    service = MetaQueueService(db)
    service.add_recent_sync_job(brand.id, meta_connection.id, "act_123")
    _run(_worker(db, FakeConnector(META_PAYLOAD)))

    service.add_reconcile_job(brand.id, meta_connection.id, "act_123")
    summary = _run(_worker(db, FakeConnector()))

    assert summary["completed"] == 1
    row = db.query(MetaAdDailyInsight).one()
    assert row.ctr == 2.0
    assert row.cpc == 0.625
    assert row.cpm == 12.5


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------

def test_failed_job_is_rescheduled_and_etl_marked_failed(db, brand, meta_connection):
    service = MetaQueueService(db)
    job = service.add_recent_sync_job(brand.id, meta_connection.id, "act_123")
    job_id = job.id

    summary = _run(_worker(db, FakeConnector(error=ValueError("invalid token"))))

    assert summary["retrying"] == 1
    job = db.query(QueueJob).filter(QueueJob.id == job_id).one()
    assert job.status == "delayed"
    assert job.attempts_made == 1
    assert "invalid token" in job.last_error

    etl = db.query(EtlJob).one()
    assert etl.status == "failed"
    assert "invalid token" in etl.error_message
    assert meta_connection.sync_status == "pending"


def test_recent_sync_out_of_attempts_marks_connection_failed(db, brand, meta_connection):
    MetaQueueService(db).add_job(
        MetaJobType.RECENT_SYNC,
        {"brand_id": brand.id, "connection_id": meta_connection.id, "account_id": "act_123"},
        attempts=1,
    )

    summary = _run(_worker(db, FakeConnector(error=ValueError("invalid token"))))

    assert summary["failed"] == 1
    db.expire_all()
    assert meta_connection.sync_status == "failed"
    assert meta_connection.sync_metadata["queue_jobs_running"] is False
    assert meta_connection.sync_metadata["sync_failed_at"] is not None


def test_orphaned_connection_job_is_removed(db, brand):
    MetaQueueService(db).add_recent_sync_job(brand.id, 999, "act_123")
    connector = FakeConnector(META_PAYLOAD)

    summary = _run(_worker(db, connector))

    assert summary["removed"] == 1
    assert connector.calls == []
    assert db.query(QueueJob).count() == 0


def test_inactive_connection_job_is_removed(db, brand, meta_connection):
    meta_connection.status = "inactive"
    db.commit()
    MetaQueueService(db).add_daily_sync_job(brand.id, meta_connection.id, "act_123")

    summary = _run(_worker(db, FakeConnector(META_PAYLOAD)))

    assert summary["removed"] == 1


def test_job_exceeding_timeout_fails(db, brand, meta_connection):
    service = MetaQueueService(db)
    service.add_job(
        MetaJobType.DAILY_SYNC,
        {"brand_id": brand.id, "connection_id": meta_connection.id, "account_id": "act_123"},
        timeout=1,
        attempts=1,
    )

    summary = _run(_worker(db, FakeConnector(META_PAYLOAD, delay=5)))

    assert summary["failed"] == 1
    assert summary["jobs"][0]["error"] == "TimeoutError"


# ---------------------------------------------------------------------------
# Shopify and scheduling across queues
# ---------------------------------------------------------------------------

def test_highest_priority_across_queues_runs_first(db, brand, meta_connection, shopify_connection):
    MetaQueueService(db).add_reconcile_job(brand.id, meta_connection.id, "act_123")
    ShopifyQueueService(db).add_incremental_job(brand.id, shopify_connection.id, "acme.myshopify.com")
    connector = FakeConnector(SHOPIFY_PAYLOAD)

    summary = _run(_worker(db, connector), max_jobs=1)

    assert summary["processed"] == 1
    assert summary["jobs"][0]["queue"] == "shopify-sync"
    assert summary["jobs"][0]["name"] == "incremental"
    assert connector.calls[0][2] == {"entities": ["orders", "customers"], "field": "updated_at"}
    assert db.query(ShopifyOrder).count() == 1
    assert db.query(ShopifyCustomer).count() == 1
    assert ShopifyQueueService(db).get_cursor(brand.id, "orders") is not None


def test_shopify_historical_sync_updates_prepared_etl_jobs(db, brand, shopify_connection):
    service = ShopifyQueueService(db)
    result = service.queue_historical_sync(brand.id, shopify_connection.id, "acme.myshopify.com")
    recent_etl_id = result["jobs"][0]["id"]

    summary = _run(_worker(db, FakeConnector(SHOPIFY_PAYLOAD)), max_jobs=1)

    assert summary["jobs"][0]["name"] == "recent_sync"
    etl = db.query(EtlJob).filter(EtlJob.id == recent_etl_id).one()
    assert etl.status == "completed"
    assert db.query(EtlJob).count() == 4
    assert shopify_connection.sync_status == "completed"


def test_max_jobs_limits_batch(db, brand, meta_connection):
    service = MetaQueueService(db)
    for _ in range(3):
        service.add_reconcile_job(brand.id, meta_connection.id, "act_123")

    summary = _run(_worker(db, FakeConnector()), max_jobs=2)

    assert summary["processed"] == 2
    assert len(service.queue.get_waiting()) == 1
