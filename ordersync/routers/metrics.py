"""Metrics API: daily order counts, revenue and shipping over the last N days."""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..database import get_db
from ..schemas import MetricsResponse
from ..services.metrics_service import DEFAULT_WINDOW_DAYS, compute_order_metrics

router = APIRouter(prefix="/metrics", tags=["Metrics"])


@router.get("", response_model=MetricsResponse)
def get_metrics(
    days: int = Query(DEFAULT_WINDOW_DAYS, ge=0, le=3650, description="Window size in days"),
    db: Session = Depends(get_db),
):
    return compute_order_metrics(db, days=days)
