"""Reading access request and permission models."""
from __future__ import annotations

from enum import Enum

from sqlalchemy import CheckConstraint, Enum as SqlEnum, ForeignKey, Index, String, UniqueConstraint, text
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class AccessRequestStatus(str, Enum):
    """Lifecycle statuses for access requests."""

    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"

    @property
    def is_terminal(self) -> bool:
        return self is not AccessRequestStatus.PENDING


class PermissionStatus(str, Enum):
    """Statuses for an owner-to-viewer reading grant."""

    ACTIVE = "active"
    BLOCKED = "blocked"


class AccessRequest(Base):
    """A requester asking an owner for read access to their readings."""

    __tablename__ = "access_requests"
    __table_args__ = (
        CheckConstraint("requester_id <> owner_id", name="ck_access_requests_not_self"),
        Index(
            "uq_access_requests_pending_pair",
            "requester_id",
            "owner_id",
            unique=True,
            sqlite_where=text("status = 'pending'"),
            postgresql_where=text("status = 'pending'"),
        ),
    )

    requester_id: Mapped[str] = mapped_column(ForeignKey("user_profiles.id"), nullable=False, index=True)
    owner_id: Mapped[str] = mapped_column(ForeignKey("user_profiles.id"), nullable=False, index=True)
    status: Mapped[AccessRequestStatus] = mapped_column(
        SqlEnum(
            AccessRequestStatus,
            name="access_request_status",
            values_callable=lambda enum_cls: [member.value for member in enum_cls],
        ),
        nullable=False,
        default=AccessRequestStatus.PENDING,
    )
    message: Mapped[str | None] = mapped_column(String(500), nullable=True)


class ReadingPermission(Base):
    """Grant letting ``viewer_id`` read the timeline of ``owner_id``."""

    __tablename__ = "reading_permissions"
    __table_args__ = (
        UniqueConstraint("viewer_id", "owner_id", name="uq_reading_permissions_pair"),
        CheckConstraint("viewer_id <> owner_id", name="ck_reading_permissions_not_self"),
    )

    viewer_id: Mapped[str] = mapped_column(ForeignKey("user_profiles.id"), nullable=False, index=True)
    owner_id: Mapped[str] = mapped_column(ForeignKey("user_profiles.id"), nullable=False, index=True)
    status: Mapped[PermissionStatus] = mapped_column(
        SqlEnum(
            PermissionStatus,
            name="reading_permission_status",
            values_callable=lambda enum_cls: [member.value for member in enum_cls],
        ),
        nullable=False,
        default=PermissionStatus.ACTIVE,
    )
