"""
HTTP surface tests: metrics, sync endpoints and the security middleware.
"""
import base64
from datetime import datetime

import pytest
from fastapi.testclient import TestClient

from app.config import get_settings
from app.main import app
from app.models.shopify import ShopifyOrder
from app.services.meta_queue_service import MetaQueueService
from app.services.shopify_queue_service import ShopifyQueueService


@pytest.fixture
def client(db):
    with TestClient(app) as test_client:
        yield test_client


def _order(brand_id, order_id, created_at, total, cancelled_at=None):
    return ShopifyOrder(
        brand_id=brand_id,
        shopify_order_id=order_id,
        total_price=total,
        financial_status="paid",
        customer_id=500 + order_id,
        line_items=[{"product_id": 1, "quantity": 2, "price": total / 2}],
        created_at=created_at,
        cancelled_at=cancelled_at,
    )


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------

def test_health_is_open_and_not_indexed(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert response.headers["X-Robots-Tag"] == "noindex, nofollow"


def test_status_reports_features(client):
    body = client.get("/status").json()

    assert body["shop_timezone"] == "America/New_York"
    assert body["features"] == {"scheduler": False, "queue": True}
    assert body["scheduler"] == {"running": False, "timezone": "America/New_York", "jobs": []}


# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------

def test_metrics_unknown_brand_is_404(client):
    assert client.get("/brands/999/metrics", params={"start": "2024-06-01", "end": "2024-06-01"}).status_code == 404


def test_metrics_rejects_bad_input(client, brand):
    url = f"/brands/{brand.id}/metrics"

    assert client.get(url, params={"start": "2024-06-01", "end": "2024-06-02", "comparison": "weekly"}).status_code == 400
    assert client.get(url, params={"start": "garbage", "end": "2024-06-02"}).status_code == 400
    assert client.get(url, params={"start": "7", "end": "9"}).status_code == 400
    assert client.get(url, params={"start": "2024-01-01", "end": "9999-12-31"}).status_code == 400
    assert client.get(url, params={"start": "2024-06-01"}).status_code == 422


def test_metrics_single_day_is_hourly_in_store_time(client, db, brand):
    # 15:00 UTC is 11:00 in New York; the cancelled order is ignored
    db.add(_order(brand.id, 1, datetime(2024, 6, 1, 15, 0), 100.0))
    db.add(_order(brand.id, 2, datetime(2024, 6, 1, 16, 0), 999.0, cancelled_at=datetime(2024, 6, 1, 17, 0)))
    # 02:00 UTC on June 2nd is still June 1st in New York
    db.add(_order(brand.id, 3, datetime(2024, 6, 2, 2, 0), 50.0))
    db.commit()

    response = client.get(f"/brands/{brand.id}/metrics", params={"start": "2024-06-01", "end": "2024-06-01"})

    assert response.status_code == 200
    assert response.headers["Cache-Control"] == "private, no-cache"
    body = response.json()
    assert body["brand_name"] == "Acme Outdoors"

    metrics = body["metrics"]
    assert metrics["bucket"] == "hourly"
    assert len(metrics["sales_data"]) == 24
    assert metrics["total_sales"] == 150.0
    assert metrics["orders_placed"] == 2
    assert metrics["units_sold"] == 4


def test_metrics_previous_period_comparison(client, db, brand):
    db.add(_order(brand.id, 1, datetime(2024, 6, 1, 15, 0), 100.0))
    db.add(_order(brand.id, 2, datetime(2024, 5, 31, 15, 0), 50.0))
    db.commit()

    metrics = client.get(
        f"/brands/{brand.id}/metrics",
        params={"start": "2024-06-01", "end": "2024-06-01", "comparison": "previous_period"},
    ).json()["metrics"]

    assert metrics["total_sales"] == 100.0
    assert metrics["previous_total_sales"] == 50.0
    assert metrics["sales_growth"] == 100.0


# ---------------------------------------------------------------------------
# Sync endpoints
# ---------------------------------------------------------------------------

def test_meta_historical_sync_queues_jobs(client, db, meta_connection):
    response = client.post(f"/sync/meta/{meta_connection.id}/historical")

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["brand_id"] == meta_connection.brand_id
    assert body["total_jobs"] > 1

    db.expire_all()
    assert meta_connection.sync_status == "in_progress"
    assert meta_connection.sync_metadata["queue_jobs_running"] is True


def test_shopify_historical_sync_queues_jobs(client, db, shopify_connection):
    body = client.post(f"/sync/shopify/{shopify_connection.id}/historical").json()

    assert body["success"] is True
    assert body["estimated_completion"] == "5-10 minutes"
    assert len(body["jobs"]) == 4


def test_historical_sync_checks_connection(client, db, meta_connection):
    assert client.post(f"/sync/shopify/{meta_connection.id}/historical").status_code == 404
    assert client.post("/sync/meta/999/historical").status_code == 404

    meta_connection.status = "inactive"
    db.commit()
    assert client.post(f"/sync/meta/{meta_connection.id}/historical").status_code == 409


def test_sync_status_lists_connections(client, brand, meta_connection, shopify_connection):
    body = client.get(f"/sync/status/{brand.id}").json()

    assert {c["platform"] for c in body["connections"]} == {"meta", "shopify"}
    assert "milestones" in body["meta"]
    assert "milestones" in body["shopify"]


def test_queue_status_and_cleanup(client, db, brand, meta_connection, shopify_connection):
    MetaQueueService(db).add_recent_sync_job(brand.id, meta_connection.id, "act_123")
    ShopifyQueueService(db).add_incremental_job(brand.id, shopify_connection.id, "acme.myshopify.com")

    status = client.get("/sync/queue").json()
    assert status["enabled"] is True
    assert status["queues"]["meta-sync"]["waiting"] == 1
    assert status["queues"]["shopify-sync"]["waiting"] == 1
    assert status["recent_failures"] == []
    assert status["rate_limiter"]["queue_length"] == 0

    body = client.delete(f"/sync/jobs/{brand.id}").json()
    assert body["removed"] == {"meta": 1, "shopify": 1}
    assert body["total_removed"] == 2


def test_process_queue_with_nothing_ready(client):
    body = client.post("/sync/process-queue").json()

    assert body["processed"] == 0
    assert client.post("/sync/process-queue", params={"max_jobs": 0}).status_code == 422


def test_daily_enqueues_active_connections(client, meta_connection, shopify_connection):
    assert client.post("/sync/daily").json() == {"queued": 2}


# ---------------------------------------------------------------------------
# Security middleware
# ---------------------------------------------------------------------------

def test_cron_paths_require_bearer_secret(client, monkeypatch):
    monkeypatch.setattr(get_settings(), "cron_secret", "s3cret")

    assert client.post("/sync/process-queue").status_code == 401
    assert client.post("/sync/process-queue", headers={"Authorization": "Bearer wrong"}).status_code == 401
    assert client.post("/sync/process-queue", headers={"Authorization": "Bearer s3cret"}).status_code == 200


def test_basic_auth_gate(client, monkeypatch):
    settings = get_settings()
    monkeypatch.setattr(settings, "dash_user", "admin")
    monkeypatch.setattr(settings, "dash_pass", "hunter2")

    denied = client.get("/sync/queue")
    assert denied.status_code == 401
    assert denied.headers["WWW-Authenticate"] == 'Basic realm="Brand Metrics"'

    token = base64.b64encode(b"admin:hunter2").decode()
    assert client.get("/sync/queue", headers={"Authorization": f"Basic {token}"}).status_code == 200
    assert client.get("/health").status_code == 200
