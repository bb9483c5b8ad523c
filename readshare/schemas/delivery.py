"""Delivery queue schemas."""
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from readshare.models.notification import DeliveryStatus, NotificationKind


class QueuedDeliveryRead(BaseModel):
    id: str
    recipient_user_id: str
    notification_id: str | None
    kind: NotificationKind
    title: str
    body: str
    data: dict
    status: DeliveryStatus
    attempts: int
    processed_at: datetime | None
    next_attempt_at: datetime | None
    last_error: str | None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class DeliveryPage(BaseModel):
    items: list[QueuedDeliveryRead]
    total: int
    limit: int
    offset: int


class ClaimRequest(BaseModel):
    limit: int = Field(default=10, ge=1, le=500)


class DeliveryRunRead(BaseModel):
    claimed: int
    sent: int
    retried: int
    failed: int


class DeliveryFailureReport(BaseModel):
    error: str = Field(min_length=1, max_length=2000)


class DeliveryOutcomeRead(BaseModel):
    id: str
    status: DeliveryStatus
