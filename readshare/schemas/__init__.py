"""Schema package exports."""
from .access import AccessRequestCreate, AccessRequestRead, ReadingPermissionRead
from .delivery import ClaimRequest, DeliveryPage, DeliveryRunRead, QueuedDeliveryRead
from .metric_event import MetricEventCreate, MetricEventResult
from .notification import MarkAllReadResult, NotificationPage, NotificationRead, UnreadCountRead
from .realtime import SnapshotRead
from .user import UserCreate, UserLookupRead, UserRead

__all__ = [
    "AccessRequestCreate",
    "AccessRequestRead",
    "ReadingPermissionRead",
    "ClaimRequest",
    "DeliveryPage",
    "DeliveryRunRead",
    "QueuedDeliveryRead",
    "MetricEventCreate",
    "MetricEventResult",
    "MarkAllReadResult",
    "NotificationPage",
    "NotificationRead",
    "UnreadCountRead",
    "SnapshotRead",
    "UserCreate",
    "UserLookupRead",
    "UserRead",
]
