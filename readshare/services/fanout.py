"""Notification fan-out: one domain event in, notification + delivery rows out.

Every eligible recipient of an event gets exactly one in-app ``Notification``
row and one ``QueuedDelivery`` row carrying the same content. Rows for one
event are written in a single transaction: either every recipient is
notified or none is.

Redelivering the same event produces duplicate rows. The inbox tolerates
that, and transports collapse near-duplicates on the ``tag`` field carried
in the delivery payload.
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from readshare.models.access import PermissionStatus, ReadingPermission
from readshare.models.base import new_id
from readshare.models.notification import DeliveryStatus, Notification, NotificationKind, QueuedDelivery
from readshare.services.directory import display_name_for, get_user
from readshare.utils.time import ensure_utc

logger = logging.getLogger(__name__)

APP_URL = "/#friends"

METRIC_TITLE = "Health Update Available"
REQUEST_TITLE = "New Reading Request"
ACCEPTED_TITLE = "Reading Request Accepted"
DECLINED_TITLE = "Reading Request Declined"


class EventType(str, Enum):
    METRIC_RECORDED = "metric_recorded"
    ACCESS_REQUEST_CREATED = "access_request_created"
    ACCESS_REQUEST_ACCEPTED = "access_request_accepted"
    ACCESS_REQUEST_DECLINED = "access_request_declined"


@dataclass(frozen=True)
class FanoutEvent:
    """A domain event; ``actor_id`` is the user who caused it."""

    type: EventType
    actor_id: str
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class _Message:
    recipient_id: str
    kind: NotificationKind
    title: str
    body: str
    data: dict[str, Any]
    delivery_data: dict[str, Any]


def metric_tag(owner_id: str) -> str:
    return f"health-update-{owner_id}"


def format_metric_value(value: Any) -> str:
    """Render a reading without float noise: ``72.0`` -> ``72``, ``98.60`` -> ``98.6``."""

    try:
        number = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return str(value)
    if not number.is_finite():
        return str(value)
    normalized = number.normalize()
    if normalized == normalized.to_integral_value():
        return format(normalized.quantize(Decimal(1)), "f")
    return format(normalized, "f")


def _json_number(value: Any) -> Any:
    try:
        number = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return value
    if not number.is_finite():
        return value
    if number == number.to_integral_value():
        return int(number)
    return float(number)


def _metric_label(metric_type: str) -> str:
    return metric_type.replace("_", " ")


def _delivery_data(kind: NotificationKind, *, tag: str, require_interaction: bool, **extra: Any) -> dict[str, Any]:
    data: dict[str, Any] = {
        "type": kind.value,
        "url": APP_URL,
        "tag": tag,
        "requireInteraction": require_interaction,
    }
    data.update(extra)
    return data


def _metric_messages(db: Session, event: FanoutEvent) -> list[_Message]:
    owner_id = event.actor_id
    payload = event.payload
    metric_type = str(payload["metric_type"])
    unit = str(payload.get("unit") or "").strip()
    value_text = format_metric_value(payload["value"])
    recorded_at = payload.get("recorded_at")
    recorded_iso = recorded_at.isoformat() if isinstance(recorded_at, datetime) else recorded_at

    viewer_ids = db.scalars(
        select(ReadingPermission.viewer_id)
        .where(
            ReadingPermission.owner_id == owner_id,
            ReadingPermission.status == PermissionStatus.ACTIVE,
        )
        .order_by(ReadingPermission.created_at.asc(), ReadingPermission.viewer_id.asc())
    ).all()
    if not viewer_ids:
        return []

    name = display_name_for(db, owner_id)
    reading = f"{value_text} {unit}".strip()
    body = f"{name} recorded a new {_metric_label(metric_type)} reading: {reading}"
    data = {
        "metric_type": metric_type,
        "value": _json_number(payload["value"]),
        "unit": unit,
        "recorded_at": recorded_iso,
        "user_name": name,
    }
    delivery_data = _delivery_data(
        NotificationKind.METRIC_UPDATE,
        tag=metric_tag(owner_id),
        require_interaction=False,
        metric_type=metric_type,
        owner_id=owner_id,
        owner_name=name,
    )
    return [
        _Message(
            recipient_id=viewer_id,
            kind=NotificationKind.METRIC_UPDATE,
            title=METRIC_TITLE,
            body=body,
            data=dict(data),
            delivery_data=dict(delivery_data),
        )
        for viewer_id in viewer_ids
    ]


def _request_created_messages(db: Session, event: FanoutEvent) -> list[_Message]:
    requester_id = event.actor_id
    owner_id = str(event.payload["owner_id"])
    name = display_name_for(db, requester_id)
    data: dict[str, Any] = {
        "request_id": event.payload.get("request_id"),
        "requester_id": requester_id,
        "requester_name": name,
    }
    if event.payload.get("message"):
        data["message"] = event.payload["message"]
    return [
        _Message(
            recipient_id=owner_id,
            kind=NotificationKind.ACCESS_REQUEST,
            title=REQUEST_TITLE,
            body=f"{name} wants to view your health readings",
            data=data,
            delivery_data=_delivery_data(
                NotificationKind.ACCESS_REQUEST,
                tag=f"reading-request-{requester_id}",
                require_interaction=True,
                request_id=event.payload.get("request_id"),
                requester_id=requester_id,
                requester_name=name,
            ),
        )
    ]


def _request_answered_messages(
    db: Session,
    event: FanoutEvent,
    *,
    kind: NotificationKind,
    title: str,
    body_template: str,
    tag_prefix: str,
) -> list[_Message]:
    owner_id = event.actor_id
    requester_id = str(event.payload["requester_id"])
    name = display_name_for(db, owner_id)
    data = {
        "request_id": event.payload.get("request_id"),
        "owner_id": owner_id,
        "owner_name": name,
    }
    return [
        _Message(
            recipient_id=requester_id,
            kind=kind,
            title=title,
            body=body_template.format(name=name),
            data=data,
            delivery_data=_delivery_data(
                kind,
                tag=f"{tag_prefix}-{owner_id}",
                require_interaction=False,
                request_id=event.payload.get("request_id"),
                owner_id=owner_id,
                owner_name=name,
            ),
        )
    ]


def _request_accepted_messages(db: Session, event: FanoutEvent) -> list[_Message]:
    return _request_answered_messages(
        db,
        event,
        kind=NotificationKind.ACCESS_GRANTED,
        title=ACCEPTED_TITLE,
        body_template="{name} has accepted your request to view their health readings!",
        tag_prefix="reading-accepted",
    )


def _request_declined_messages(db: Session, event: FanoutEvent) -> list[_Message]:
    return _request_answered_messages(
        db,
        event,
        kind=NotificationKind.ACCESS_DECLINED,
        title=DECLINED_TITLE,
        body_template="{name} has declined your request to view their health readings.",
        tag_prefix="reading-declined",
    )


_BUILDERS: dict[EventType, Callable[[Session, FanoutEvent], list[_Message]]] = {
    EventType.METRIC_RECORDED: _metric_messages,
    EventType.ACCESS_REQUEST_CREATED: _request_created_messages,
    EventType.ACCESS_REQUEST_ACCEPTED: _request_accepted_messages,
    EventType.ACCESS_REQUEST_DECLINED: _request_declined_messages,
}


def stage_event(db: Session, event: FanoutEvent) -> list[Notification]:
    """Write notification/delivery pairs for ``event`` without committing.

    Callers that already hold a transaction (the access state machine) use
    this so the fan-out commits or rolls back together with their change.
    """

    builder = _BUILDERS[event.type]
    notifications: list[Notification] = []
    for message in builder(db, event):
        notification = Notification(
            id=new_id(),
            user_id=message.recipient_id,
            subject_id=event.actor_id,
            kind=message.kind,
            title=message.title,
            body=message.body,
            data=message.data,
            is_read=False,
        )
        delivery = QueuedDelivery(
            recipient_user_id=message.recipient_id,
            notification=notification,
            kind=message.kind,
            title=message.title,
            body=message.body,
            data=message.delivery_data,
            status=DeliveryStatus.PENDING,
            attempts=0,
        )
        db.add(notification)
        db.add(delivery)
        notifications.append(notification)
    db.flush()
    logger.info(
        "Fan-out staged",
        extra={"event_type": event.type.value, "actor_id": event.actor_id, "recipients": len(notifications)},
    )
    return notifications


def dispatch_event(db: Session, event: FanoutEvent) -> list[Notification]:
    """Stage and commit the fan-out of ``event`` as one all-or-nothing unit."""

    try:
        notifications = stage_event(db, event)
        db.commit()
    except Exception:
        db.rollback()
        logger.exception("Fan-out rolled back", extra={"event_type": event.type.value, "actor_id": event.actor_id})
        raise
    return notifications


def record_metric_event(
    db: Session,
    *,
    owner_id: str,
    metric_type: str,
    value: Any,
    unit: str,
    recorded_at: datetime,
) -> list[Notification]:
    """Entry point for the metric store after a reading has been written."""

    get_user(db, owner_id)
    event = FanoutEvent(
        type=EventType.METRIC_RECORDED,
        actor_id=owner_id,
        payload={
            "metric_type": metric_type.strip(),
            "value": value,
            "unit": unit,
            "recorded_at": ensure_utc(recorded_at),
        },
    )
    return dispatch_event(db, event)


__all__ = [
    "EventType",
    "FanoutEvent",
    "stage_event",
    "dispatch_event",
    "record_metric_event",
    "format_metric_value",
    "metric_tag",
]
