"""In-app notification inbox."""
import logging

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from readshare.models.notification import Notification
from readshare.services.changes import NOTIFICATIONS, record_change
from readshare.utils.errors import NotificationNotFoundError
from readshare.utils.time import utcnow

logger = logging.getLogger(__name__)


def list_notifications(
    db: Session,
    user_id: str,
    *,
    unread_only: bool = False,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[Notification], int]:
    filters = [Notification.user_id == user_id]
    if unread_only:
        filters.append(Notification.is_read.is_(False))
    total = db.scalar(select(func.count()).select_from(Notification).where(*filters)) or 0
    rows = db.scalars(
        select(Notification)
        .where(*filters)
        .order_by(Notification.created_at.desc(), Notification.id.desc())
        .offset(offset)
        .limit(limit)
    ).all()
    return list(rows), int(total)


def unread_count(db: Session, user_id: str) -> int:
    stmt = select(func.count()).select_from(Notification).where(
        Notification.user_id == user_id,
        Notification.is_read.is_(False),
    )
    return int(db.scalar(stmt) or 0)


def mark_read(db: Session, *, user_id: str, notification_id: str) -> Notification:
    """Mark one of the user's notifications read; other users' rows are invisible."""

    notification = db.get(Notification, notification_id)
    if notification is None or notification.user_id != user_id:
        raise NotificationNotFoundError()
    if not notification.is_read:
        notification.is_read = True
        notification.updated_at = utcnow()
        db.commit()
        db.refresh(notification)
    return notification


def mark_all_read(db: Session, *, user_id: str) -> int:
    result = db.execute(
        update(Notification)
        .where(Notification.user_id == user_id, Notification.is_read.is_(False))
        .values(is_read=True, updated_at=utcnow())
        .execution_options(synchronize_session="fetch")
    )
    updated = result.rowcount
    if updated:
        record_change(db, NOTIFICATIONS, "update", scopes={"user_id": user_id})
    db.commit()
    logger.info("Notifications marked read", extra={"user_id": user_id, "updated": updated})
    return updated
