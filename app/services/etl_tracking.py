"""
ETL progress tracking shared by the Meta and Shopify queue services

- etl_jobs: one row per background data pull, read back as milestones
- etl_cursors: high-water marks for incremental syncs
"""
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Union

from sqlalchemy.orm import Session

from app.exceptions import EtlJobNotFoundError
from app.models.sync_jobs import EtlCursor, EtlJob
from app.utils.helpers import to_naive_utc
from app.utils.logger import log

ETL_JOB_FIELDS = ("status", "rows_written", "total_rows", "progress_pct", "error_message", "started_at", "completed_at")


def create_etl_job(
    db: Session,
    brand_id: int,
    entity: str,
    job_type: str,
    date_range: Optional[Dict[str, str]] = None,
    platform: Optional[str] = None,
) -> int:
    job = EtlJob(
        brand_id=brand_id,
        platform=platform,
        entity=entity,
        job_type=job_type,
        status="queued",
        started_at=datetime.utcnow(),
    )
    db.add(job)
    db.commit()

    window = f" {date_range['start']} to {date_range['end']}" if date_range else ""
    log.info(f"[ETL] Created {platform or ''} ETL job {job.id} for {entity} ({job_type}){window}")
    return job.id


def update_etl_job(db: Session, job_id: int, **updates) -> EtlJob:
    """
    Update status / rows_written / total_rows / progress_pct /
    error_message / started_at / completed_at of an ETL job.

    Raises:
        EtlJobNotFoundError: no job with this id
        ValueError: unknown field
    """
    job = db.query(EtlJob).filter(EtlJob.id == job_id).first()
    if job is None:
        raise EtlJobNotFoundError(f"ETL job {job_id} not found")

    for key, value in updates.items():
        if key not in ETL_JOB_FIELDS:
            raise ValueError(f"Unknown ETL job field: {key}")
        if key in ("started_at", "completed_at"):
            value = to_naive_utc(value)
        setattr(job, key, value)

    job.updated_at = datetime.utcnow()
    db.commit()
    return job


def latest_milestones(db: Session, brand_id: int, platform: str, job_types: List[str]) -> List[Dict[str, Any]]:
    """Most recent ETL job per entity among a platform's job types"""
    jobs = db.query(EtlJob).filter(
        EtlJob.brand_id == brand_id,
        EtlJob.platform == platform,
        EtlJob.job_type.in_(job_types),
    ).order_by(EtlJob.created_at.desc(), EtlJob.id.desc()).all()

    by_entity: Dict[str, Dict[str, Any]] = {}
    for job in jobs:
        if job.entity not in by_entity:
            milestone = job.to_dict()
            for key in ("id", "brand_id", "platform", "job_type"):
                milestone.pop(key)
            by_entity[job.entity] = milestone

    return list(by_entity.values())


def set_cursor(db: Session, brand_id: int, entity: str, last_complete_at: Union[str, date, datetime]) -> EtlCursor:
    cursor = db.query(EtlCursor).filter(
        EtlCursor.brand_id == brand_id,
        EtlCursor.entity == entity,
    ).first()
    if cursor is None:
        cursor = EtlCursor(brand_id=brand_id, entity=entity)
        db.add(cursor)

    cursor.last_complete_at = to_naive_utc(last_complete_at)
    cursor.last_sync_at = datetime.utcnow()
    db.commit()
    return cursor


def get_cursor(db: Session, brand_id: int, entity: str) -> Optional[datetime]:
    cursor = db.query(EtlCursor).filter(
        EtlCursor.brand_id == brand_id,
        EtlCursor.entity == entity,
    ).first()
    return cursor.last_complete_at if cursor else None
