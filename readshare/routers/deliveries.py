"""Operator endpoints over the delivery queue."""
from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from readshare.config import get_settings
from readshare.db import get_db
from readshare.models.api_key import ApiKey, ApiScope
from readshare.models.notification import DeliveryStatus, QueuedDelivery
from readshare.schemas.delivery import (
    ClaimRequest,
    DeliveryFailureReport,
    DeliveryOutcomeRead,
    DeliveryPage,
    DeliveryRunRead,
    QueuedDeliveryRead,
)
from readshare.security import require_scope
from readshare.services import cron, delivery
from readshare.utils.audit import actor_from_api_key, log_audit
from readshare.utils.errors import DeliveryNotClaimedError, DeliveryNotFoundError

router = APIRouter(prefix="/deliveries", tags=["deliveries"])


def _ensure_exists(db: Session, delivery_id: str) -> None:
    if db.get(QueuedDelivery, delivery_id) is None:
        raise DeliveryNotFoundError()


@router.post("/claim", response_model=list[QueuedDeliveryRead])
def claim_deliveries(
    payload: ClaimRequest,
    db: Session = Depends(get_db),
    api_key: ApiKey = Depends(require_scope({ApiScope.admin})),
) -> list[QueuedDelivery]:
    """Claim a batch for an external worker, which then reports back per row."""

    rows = delivery.claim_batch(db, payload.limit, max_attempts=get_settings().DELIVERY_MAX_ATTEMPTS)
    log_audit(
        db,
        actor=actor_from_api_key(api_key, fallback="admin"),
        action="DELIVERY_BATCH_CLAIMED",
        entity="QueuedDelivery",
        entity_id=None,
        data={"claimed": [row.id for row in rows]},
    )
    db.commit()
    return rows


@router.post("/{delivery_id}/sent", response_model=DeliveryOutcomeRead)
def report_delivery_sent(
    delivery_id: str,
    db: Session = Depends(get_db),
    api_key: ApiKey = Depends(require_scope({ApiScope.admin})),
) -> DeliveryOutcomeRead:
    """Resolve a row this caller claimed as delivered."""

    _ensure_exists(db, delivery_id)
    if not delivery.mark_sent(db, delivery_id):
        raise DeliveryNotClaimedError()
    return DeliveryOutcomeRead(id=delivery_id, status=DeliveryStatus.SENT)


@router.post("/{delivery_id}/failed", response_model=DeliveryOutcomeRead)
def report_delivery_failed(
    delivery_id: str,
    payload: DeliveryFailureReport,
    db: Session = Depends(get_db),
    api_key: ApiKey = Depends(require_scope({ApiScope.admin})),
) -> DeliveryOutcomeRead:
    """Hand a claimed row back for another attempt, or fail it once attempts run out."""

    _ensure_exists(db, delivery_id)
    settings = get_settings()
    new_status = delivery.mark_attempt_failed(
        db,
        delivery_id,
        payload.error,
        max_attempts=settings.DELIVERY_MAX_ATTEMPTS,
        retry_backoff_seconds=settings.DELIVERY_RETRY_BACKOFF_SECONDS,
    )
    if new_status is None:
        raise DeliveryNotClaimedError()
    return DeliveryOutcomeRead(id=delivery_id, status=new_status)


@router.post("/run", response_model=DeliveryRunRead)
def run_deliveries(
    request: Request,
    api_key: ApiKey = Depends(require_scope({ApiScope.admin})),
) -> DeliveryRunRead:
    """Run one worker pass now instead of waiting for the scheduler."""

    worker = getattr(request.app.state, "delivery_worker", None) or cron.get_delivery_worker()
    result = worker.run_once()
    return DeliveryRunRead(**result.as_dict())


@router.get("", response_model=DeliveryPage)
def list_deliveries(
    status_filter: DeliveryStatus | None = Query(None, alias="status"),
    recipient_user_id: str | None = Query(None),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    api_key: ApiKey = Depends(require_scope({ApiScope.admin, ApiScope.support})),
) -> DeliveryPage:
    rows, total = delivery.list_deliveries(
        db, status=status_filter, recipient_user_id=recipient_user_id, limit=limit, offset=offset
    )
    return DeliveryPage(
        items=[QueuedDeliveryRead.model_validate(row) for row in rows],
        total=total,
        limit=limit,
        offset=offset,
    )
