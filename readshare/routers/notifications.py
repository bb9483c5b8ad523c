"""Notification inbox endpoints."""
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from readshare.db import get_db
from readshare.models.notification import Notification
from readshare.models.user import UserProfile
from readshare.schemas.notification import (
    MarkAllReadResult,
    NotificationPage,
    NotificationRead,
    UnreadCountRead,
)
from readshare.security import require_user
from readshare.services import notifications

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.get("", response_model=NotificationPage)
def list_notifications(
    unread_only: bool = Query(False),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    user: UserProfile = Depends(require_user),
) -> NotificationPage:
    items, total = notifications.list_notifications(
        db, user.id, unread_only=unread_only, limit=limit, offset=offset
    )
    return NotificationPage(
        items=[NotificationRead.model_validate(item) for item in items],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/unread-count", response_model=UnreadCountRead)
def unread_count(
    db: Session = Depends(get_db),
    user: UserProfile = Depends(require_user),
) -> UnreadCountRead:
    return UnreadCountRead(unread=notifications.unread_count(db, user.id))


@router.post("/read-all", response_model=MarkAllReadResult)
def mark_all_read(
    db: Session = Depends(get_db),
    user: UserProfile = Depends(require_user),
) -> MarkAllReadResult:
    return MarkAllReadResult(updated=notifications.mark_all_read(db, user_id=user.id))


@router.post("/{notification_id}/read", response_model=NotificationRead)
def mark_read(
    notification_id: str,
    db: Session = Depends(get_db),
    user: UserProfile = Depends(require_user),
) -> Notification:
    return notifications.mark_read(db, user_id=user.id, notification_id=notification_id)
