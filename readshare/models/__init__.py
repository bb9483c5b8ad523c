"""ORM models package."""
from .access import AccessRequest, AccessRequestStatus, PermissionStatus, ReadingPermission
from .api_key import ApiKey, ApiScope
from .audit import AuditLog
from .base import Base
from .notification import DeliveryStatus, Notification, NotificationKind, QueuedDelivery
from .scheduler_lock import SchedulerLock
from .user import UserProfile

__all__ = [
    "AccessRequest",
    "AccessRequestStatus",
    "ApiKey",
    "ApiScope",
    "AuditLog",
    "Base",
    "DeliveryStatus",
    "Notification",
    "NotificationKind",
    "PermissionStatus",
    "QueuedDelivery",
    "ReadingPermission",
    "SchedulerLock",
    "UserProfile",
]
