"""
Shared fixtures.

Points the app at a throwaway SQLite file before anything imports
app.config, and disables the background scheduler.
"""
import os
import tempfile

_DB_DIR = tempfile.mkdtemp(prefix="brand-metrics-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_DB_DIR, 'test.db')}"
os.environ["ENABLE_SCHEDULER"] = "false"
os.environ["QUEUE_ENABLED"] = "true"
os.environ["DASH_USER"] = ""
os.environ["DASH_PASS"] = ""
os.environ.pop("CRON_SECRET", None)

import pytest

from app.models.base import Base, SessionLocal, engine, init_db
from app.models.brand import Brand, PlatformConnection


@pytest.fixture
def db():
    init_db()
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        with engine.begin() as conn:
            for table in reversed(Base.metadata.sorted_tables):
                conn.execute(table.delete())


@pytest.fixture
def brand(db):
    brand = Brand(name="Acme Outdoors")
    db.add(brand)
    db.commit()
    return brand


@pytest.fixture
def meta_connection(db, brand):
    connection = PlatformConnection(
        brand_id=brand.id,
        platform="meta",
        account_id="act_123",
        access_token="meta-token",
        status="active",
    )
    db.add(connection)
    db.commit()
    return connection


@pytest.fixture
def shopify_connection(db, brand):
    connection = PlatformConnection(
        brand_id=brand.id,
        platform="shopify",
        shop_domain="acme.myshopify.com",
        access_token="shpat-token",
        status="active",
    )
    db.add(connection)
    db.commit()
    return connection
