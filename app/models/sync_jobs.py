"""
Sync bookkeeping models

- EtlJob: user-visible progress of a background data pull
- EtlCursor: high-water mark for incremental syncs per brand and entity
- QueueJob: persistent job queue rows consumed by the sync worker
"""
from sqlalchemy import Column, Integer, String, Float, DateTime, JSON, Text, ForeignKey, UniqueConstraint, Index
from datetime import datetime

from app.models.base import Base


class EtlJob(Base):
    """
    Status of one background data-pull task

    Status flow: queued -> in_progress/processing -> completed | failed
    """
    __tablename__ = "etl_jobs"

    id = Column(Integer, primary_key=True, index=True)
    brand_id = Column(Integer, ForeignKey("brands.id", ondelete="CASCADE"), index=True, nullable=False)
    platform = Column(String, index=True, nullable=True)  # shopify, meta

    entity = Column(String, index=True)  # campaigns, demographics, insights, orders, ...
    job_type = Column(String, index=True)  # recent_sync, historical_campaigns, bulk_orders, ...
    status = Column(String, index=True, default="queued")

    rows_written = Column(Integer, default=0)
    total_rows = Column(Integer, nullable=True)
    progress_pct = Column(Float, default=0)
    error_message = Column(Text, nullable=True)

    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "brand_id": self.brand_id,
            "platform": self.platform,
            "entity": self.entity,
            "job_type": self.job_type,
            "status": self.status,
            "rows_written": self.rows_written or 0,
            "total_rows": self.total_rows,
            "progress_pct": self.progress_pct or 0,
            "error_message": self.error_message,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class EtlCursor(Base):
    """Last fully synced timestamp per brand and entity (e.g. meta_insights)"""
    __tablename__ = "etl_cursors"
    __table_args__ = (
        UniqueConstraint("brand_id", "entity", name="uq_etl_cursors_brand_entity"),
    )

    id = Column(Integer, primary_key=True, index=True)
    brand_id = Column(Integer, ForeignKey("brands.id", ondelete="CASCADE"), index=True, nullable=False)
    entity = Column(String, nullable=False)

    last_complete_at = Column(DateTime, nullable=True)
    last_sync_at = Column(DateTime, default=datetime.utcnow)


class QueueJob(Base):
    """
    A queued background job

    Status flow:
        waiting | delayed -> active -> completed
                                    -> delayed (retry with backoff) -> ...
                                    -> failed (attempts exhausted)
    Higher priority values are claimed first; FIFO within a priority.
    """
    __tablename__ = "queue_jobs"
    __table_args__ = (
        Index("ix_queue_jobs_ready", "queue", "status", "run_at"),
    )

    id = Column(Integer, primary_key=True, index=True)
    queue = Column(String, nullable=False, index=True)  # meta-sync, shopify-sync
    name = Column(String, nullable=False, index=True)  # job type
    data = Column(JSON, nullable=False)
    brand_id = Column(Integer, index=True, nullable=True)  # Denormalised from data for cleanup

    priority = Column(Integer, default=0)
    status = Column(String, default="waiting", index=True)

    attempts_made = Column(Integer, default=0)
    max_attempts = Column(Integer, default=1)
    backoff_delay = Column(Float, default=0)  # seconds, doubled per failed attempt

    run_at = Column(DateTime, default=datetime.utcnow)
    timeout_seconds = Column(Integer, nullable=True)
    stalled_count = Column(Integer, default=0)
    max_stalled_count = Column(Integer, default=3)

    remove_on_complete = Column(Integer, nullable=True)  # keep at most N completed jobs
    remove_on_fail = Column(Integer, nullable=True)  # keep at most N failed jobs

    last_error = Column(Text, nullable=True)
    result = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    started_at = Column(DateTime, nullable=True)
    finished_at = Column(DateTime, nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "queue": self.queue,
            "name": self.name,
            "brand_id": self.brand_id,
            "priority": self.priority,
            "status": self.status,
            "attempts_made": self.attempts_made,
            "max_attempts": self.max_attempts,
            "run_at": self.run_at.isoformat() if self.run_at else None,
            "last_error": self.last_error,
            "data": self.data,
        }
