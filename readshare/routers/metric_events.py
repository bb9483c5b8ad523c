"""Hook called by the metric store after a reading is written."""
from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from readshare.db import get_db
from readshare.models.api_key import ApiKey, ApiScope
from readshare.schemas.metric_event import MetricEventCreate, MetricEventResult
from readshare.security import require_scope
from readshare.services.fanout import record_metric_event

router = APIRouter(prefix="/metric-events", tags=["metric-events"])


@router.post("", response_model=MetricEventResult, status_code=status.HTTP_202_ACCEPTED)
def post_metric_event(
    payload: MetricEventCreate,
    db: Session = Depends(get_db),
    api_key: ApiKey = Depends(require_scope({ApiScope.service})),
) -> MetricEventResult:
    notified = record_metric_event(
        db,
        owner_id=payload.owner_id,
        metric_type=payload.metric_type,
        value=payload.value,
        unit=payload.unit,
        recorded_at=payload.recorded_at,
    )
    return MetricEventResult(notified=len(notified))
