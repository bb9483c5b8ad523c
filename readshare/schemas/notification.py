"""Notification inbox schemas."""
from datetime import datetime

from pydantic import BaseModel, ConfigDict

from readshare.models.notification import NotificationKind


class NotificationRead(BaseModel):
    id: str
    user_id: str
    subject_id: str | None
    kind: NotificationKind
    title: str
    body: str
    data: dict
    is_read: bool
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class NotificationPage(BaseModel):
    items: list[NotificationRead]
    total: int
    limit: int
    offset: int


class UnreadCountRead(BaseModel):
    unread: int


class MarkAllReadResult(BaseModel):
    updated: int
