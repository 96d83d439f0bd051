"""
Dashboard Metrics API

Serves the per-brand sales dashboard: totals, growth against a comparison
period and the bucketed series (hourly for a single day, daily otherwise).
"""
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session
from typing import Optional
from datetime import datetime

import pytz

from app.models.base import get_db
from app.models.brand import Brand
from app.services.data_sync_service import DataSyncService
from app.services.metrics_service import (
    COMPARISON_TYPES,
    calculate_metrics,
    ensure_valid_date_range,
    resolve_comparison_range,
)
from app.utils.logger import log

router = APIRouter(prefix="/brands", tags=["metrics"])


def _naive_utc(value: datetime) -> datetime:
    return value.astimezone(pytz.UTC).replace(tzinfo=None)


@router.get("/{brand_id}/metrics")
async def get_brand_metrics(
    brand_id: int,
    start: str = Query(..., description="Range start (YYYY-MM-DD or ISO timestamp)"),
    end: str = Query(..., description="Range end (YYYY-MM-DD or ISO timestamp)"),
    comparison: str = Query("none", description="none, previous_period, previous_year or custom"),
    compare_start: Optional[str] = Query(None, description="Custom comparison start"),
    compare_end: Optional[str] = Query(None, description="Custom comparison end"),
    db: Session = Depends(get_db)
):
    """
    Dashboard metrics for one brand.

    Dates without a time are civil days in the store timezone.
    """
    brand = db.query(Brand).filter(Brand.id == brand_id).first()
    if not brand:
        raise HTTPException(status_code=404, detail=f"Brand {brand_id} not found")

    if comparison not in COMPARISON_TYPES:
        raise HTTPException(status_code=400, detail=f"comparison must be one of {', '.join(COMPARISON_TYPES)}")

    custom_range = (compare_start, compare_end) if comparison == "custom" else None
    try:
        current = ensure_valid_date_range(start, end)
        previous = resolve_comparison_range(current, comparison, custom_range)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    # One load covers both the current and the comparison range
    load_start = min(current.start, previous.start) if previous else current.start
    load_end = max(current.end, previous.end) if previous else current.end

    sync_service = DataSyncService(db)
    orders = sync_service.load_orders(brand_id, _naive_utc(load_start), _naive_utc(load_end))
    refunds = sync_service.load_refunds(
        brand_id,
        _naive_utc(load_start),
        _naive_utc(load_end),
        order_ids=[o["id"] for o in orders],
    )
    products = sync_service.load_products(brand_id)

    log.info(
        f"Metrics for brand {brand_id}: {len(orders)} orders, {len(refunds)} refunds, "
        f"{start} to {end} (comparison: {comparison})"
    )

    metrics = calculate_metrics(
        orders,
        products,
        refunds,
        (start, end),
        comparison_type=comparison,
        comparison_date_range=custom_range,
    )
    return {
        "brand_id": brand_id,
        "brand_name": brand.name,
        "metrics": metrics,
    }
