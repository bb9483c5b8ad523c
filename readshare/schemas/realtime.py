"""Realtime snapshot schema."""
from datetime import datetime

from pydantic import BaseModel

from .access import AccessRequestRead, ReadingPermissionRead
from .notification import NotificationRead


class SnapshotRead(BaseModel):
    granted_to_me: list[ReadingPermissionRead]
    my_viewers: list[ReadingPermissionRead]
    pending_requests: list[AccessRequestRead]
    notifications: list[NotificationRead]
    generated_at: datetime
