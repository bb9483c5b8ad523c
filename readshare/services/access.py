"""Access request state machine and reading permissions.

A request moves ``pending -> accepted`` or ``pending -> declined`` exactly
once. Transitions are compare-and-set updates guarded on ``status =
'pending'`` so two concurrent answers cannot both win, and accepting upserts
the owner-to-viewer permission in the same transaction as the status change
and the requester's notification.
"""
import logging
from typing import Any, Literal

from sqlalchemy import delete, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from readshare.models.access import (
    AccessRequest,
    AccessRequestStatus,
    PermissionStatus,
    ReadingPermission,
)
from readshare.models.base import new_id
from readshare.schemas.access import AccessRequestRead, ReadingPermissionRead
from readshare.services.changes import PERMISSIONS, REQUESTS, record_change
from readshare.services.directory import display_names, get_user
from readshare.services.fanout import EventType, FanoutEvent, stage_event
from readshare.utils.audit import actor_for_user, log_audit
from readshare.utils.errors import (
    DuplicateRequestError,
    InvalidStateError,
    NotAuthorizedError,
    PermissionNotFoundError,
    RequestNotFoundError,
    SelfRequestError,
)
from readshare.utils.time import utcnow

logger = logging.getLogger(__name__)

RequestBox = Literal["incoming", "outgoing", "all"]


def _audit(db: Session, *, actor_id: str, action: str, request: AccessRequest, data: dict[str, Any]) -> None:
    log_audit(
        db,
        actor=actor_for_user(actor_id),
        action=action,
        entity="AccessRequest",
        entity_id=request.id,
        data=data,
    )


def _request_scopes(request: AccessRequest) -> dict[str, str]:
    return {"requester_id": request.requester_id, "owner_id": request.owner_id}


def _permission_scopes(viewer_id: str, owner_id: str) -> dict[str, str]:
    return {"viewer_id": viewer_id, "owner_id": owner_id}


def _active_permission_exists(db: Session, *, viewer_id: str, owner_id: str) -> bool:
    stmt = select(ReadingPermission.id).where(
        ReadingPermission.viewer_id == viewer_id,
        ReadingPermission.owner_id == owner_id,
        ReadingPermission.status == PermissionStatus.ACTIVE,
    )
    return db.scalars(stmt).first() is not None


def _pending_request_exists(db: Session, *, requester_id: str, owner_id: str) -> bool:
    stmt = select(AccessRequest.id).where(
        AccessRequest.requester_id == requester_id,
        AccessRequest.owner_id == owner_id,
        AccessRequest.status == AccessRequestStatus.PENDING,
    )
    return db.scalars(stmt).first() is not None


def get_request(db: Session, request_id: str) -> AccessRequest:
    request = db.get(AccessRequest, request_id)
    if request is None:
        raise RequestNotFoundError()
    return request


def create_request(
    db: Session,
    *,
    requester_id: str,
    owner_id: str,
    message: str | None = None,
) -> AccessRequest:
    """Open a pending request and notify the owner."""

    if requester_id == owner_id:
        raise SelfRequestError()
    get_user(db, requester_id)
    get_user(db, owner_id)

    if _active_permission_exists(db, viewer_id=requester_id, owner_id=owner_id):
        raise DuplicateRequestError("You can already view this user's readings.")
    if _pending_request_exists(db, requester_id=requester_id, owner_id=owner_id):
        raise DuplicateRequestError("A reading request to this user is already pending.")

    cleaned = message.strip() if message else None
    request = AccessRequest(
        requester_id=requester_id,
        owner_id=owner_id,
        status=AccessRequestStatus.PENDING,
        message=cleaned or None,
    )
    db.add(request)
    try:
        db.flush()
    except IntegrityError as exc:
        # Lost the race against a concurrent request for the same pair.
        db.rollback()
        raise DuplicateRequestError("A reading request to this user is already pending.") from exc

    try:
        stage_event(
            db,
            FanoutEvent(
                type=EventType.ACCESS_REQUEST_CREATED,
                actor_id=requester_id,
                payload={"owner_id": owner_id, "request_id": request.id, "message": request.message},
            ),
        )
        _audit(
            db,
            actor_id=requester_id,
            action="ACCESS_REQUEST_CREATED",
            request=request,
            data={"owner_id": owner_id, "message": request.message},
        )
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(request)
    logger.info(
        "Access request created",
        extra={"request_id": request.id, "requester_id": requester_id, "owner_id": owner_id},
    )
    return request


def _transition(db: Session, request: AccessRequest, target: AccessRequestStatus) -> bool:
    """Compare-and-set ``pending -> target``; True when this call won."""

    result = db.execute(
        update(AccessRequest)
        .where(
            AccessRequest.id == request.id,
            AccessRequest.owner_id == request.owner_id,
            AccessRequest.status == AccessRequestStatus.PENDING,
        )
        .values(status=target, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def _current_status(db: Session, request_id: str) -> AccessRequestStatus:
    status = db.scalars(select(AccessRequest.status).where(AccessRequest.id == request_id)).first()
    if status is None:
        raise RequestNotFoundError()
    return status


def _upsert_permission(db: Session, *, viewer_id: str, owner_id: str, reactivate: bool) -> None:
    """Insert the grant for the pair, or (when ``reactivate``) set it back to active."""

    now = utcnow()
    values = {
        "id": new_id(),
        "viewer_id": viewer_id,
        "owner_id": owner_id,
        "status": PermissionStatus.ACTIVE,
        "created_at": now,
        "updated_at": now,
    }
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        _upsert_permission_portable(db, values, reactivate=reactivate)
        return

    stmt = insert(ReadingPermission).values(**values)
    if reactivate:
        stmt = stmt.on_conflict_do_update(
            index_elements=["viewer_id", "owner_id"],
            set_={"status": stmt.excluded.status, "updated_at": stmt.excluded.updated_at},
        )
    else:
        stmt = stmt.on_conflict_do_nothing(index_elements=["viewer_id", "owner_id"])
    db.execute(stmt)


def _upsert_permission_portable(db: Session, values: dict[str, Any], *, reactivate: bool) -> None:
    existing = db.scalars(
        select(ReadingPermission)
        .where(
            ReadingPermission.viewer_id == values["viewer_id"],
            ReadingPermission.owner_id == values["owner_id"],
        )
        .with_for_update()
    ).first()
    if existing is None:
        db.add(ReadingPermission(**values))
    elif reactivate:
        existing.status = PermissionStatus.ACTIVE
        existing.updated_at = values["updated_at"]
    db.flush()


def accept_request(db: Session, *, request_id: str, acting_owner_id: str) -> AccessRequest:
    """Accept a pending request: grant the permission and notify the requester.

    Accepting an already accepted request is a no-op that only restores a
    missing permission; accepting a declined one raises ``InvalidStateError``.
    """

    request = get_request(db, request_id)
    if request.owner_id != acting_owner_id:
        raise NotAuthorizedError()

    viewer_id, owner_id = request.requester_id, request.owner_id
    won = _transition(db, request, AccessRequestStatus.ACCEPTED)
    if not won:
        current = _current_status(db, request.id)
        if current is not AccessRequestStatus.ACCEPTED:
            raise InvalidStateError(f"The request was already {current.value}.")

    try:
        if won:
            _upsert_permission(db, viewer_id=viewer_id, owner_id=owner_id, reactivate=True)
            record_change(db, REQUESTS, "update", record_id=request.id, scopes=_request_scopes(request))
            record_change(db, PERMISSIONS, "upsert", scopes=_permission_scopes(viewer_id, owner_id))
            stage_event(
                db,
                FanoutEvent(
                    type=EventType.ACCESS_REQUEST_ACCEPTED,
                    actor_id=owner_id,
                    payload={"requester_id": viewer_id, "request_id": request.id},
                ),
            )
            _audit(db, actor_id=owner_id, action="ACCESS_REQUEST_ACCEPTED", request=request, data={"viewer_id": viewer_id})
        else:
            # Replayed accept: make sure the grant exists, never notify twice.
            _upsert_permission(db, viewer_id=viewer_id, owner_id=owner_id, reactivate=False)
            record_change(db, PERMISSIONS, "upsert", scopes=_permission_scopes(viewer_id, owner_id))
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(request)
    if won:
        logger.info("Access request accepted", extra={"request_id": request.id, "owner_id": owner_id})
    else:
        logger.info("Access request accept replayed", extra={"request_id": request.id})
    return request


def decline_request(
    db: Session,
    *,
    request_id: str,
    acting_owner_id: str,
    notify_requester: bool = False,
) -> AccessRequest:
    """Decline a pending request; declining twice is a no-op."""

    request = get_request(db, request_id)
    if request.owner_id != acting_owner_id:
        raise NotAuthorizedError()

    if not _transition(db, request, AccessRequestStatus.DECLINED):
        current = _current_status(db, request.id)
        if current is not AccessRequestStatus.DECLINED:
            raise InvalidStateError(f"The request was already {current.value}.")
        db.refresh(request)
        return request

    try:
        record_change(db, REQUESTS, "update", record_id=request.id, scopes=_request_scopes(request))
        if notify_requester:
            stage_event(
                db,
                FanoutEvent(
                    type=EventType.ACCESS_REQUEST_DECLINED,
                    actor_id=request.owner_id,
                    payload={"requester_id": request.requester_id, "request_id": request.id},
                ),
            )
        _audit(
            db,
            actor_id=request.owner_id,
            action="ACCESS_REQUEST_DECLINED",
            request=request,
            data={"requester_id": request.requester_id, "notified": notify_requester},
        )
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(request)
    logger.info("Access request declined", extra={"request_id": request.id, "owner_id": request.owner_id})
    return request


def revoke_access(db: Session, *, owner_id: str, viewer_id: str) -> bool:
    """Remove ``viewer_id``'s grant and every request between the pair.

    Clearing the request history lets the viewer ask again later. Returns
    whether anything was removed.
    """

    request_ids = db.scalars(
        select(AccessRequest.id).where(
            AccessRequest.requester_id == viewer_id,
            AccessRequest.owner_id == owner_id,
        )
    ).all()
    try:
        removed_permissions = db.execute(
            delete(ReadingPermission)
            .where(ReadingPermission.viewer_id == viewer_id, ReadingPermission.owner_id == owner_id)
            .execution_options(synchronize_session="fetch")
        ).rowcount
        if request_ids:
            db.execute(
                delete(AccessRequest)
                .where(AccessRequest.id.in_(request_ids))
                .execution_options(synchronize_session="fetch")
            )
        if not removed_permissions and not request_ids:
            db.commit()
            return False

        if removed_permissions:
            record_change(db, PERMISSIONS, "delete", scopes=_permission_scopes(viewer_id, owner_id))
        for request_id in request_ids:
            record_change(
                db,
                REQUESTS,
                "delete",
                record_id=request_id,
                scopes={"requester_id": viewer_id, "owner_id": owner_id},
            )
        log_audit(
            db,
            actor=actor_for_user(owner_id),
            action="READING_ACCESS_REVOKED",
            entity="ReadingPermission",
            entity_id=None,
            data={"viewer_id": viewer_id, "requests_removed": len(request_ids)},
        )
        db.commit()
    except Exception:
        db.rollback()
        raise
    logger.info(
        "Reading access revoked",
        extra={"owner_id": owner_id, "viewer_id": viewer_id, "requests_removed": len(request_ids)},
    )
    return True


def set_permission_status(
    db: Session,
    *,
    owner_id: str,
    viewer_id: str,
    status: PermissionStatus,
) -> ReadingPermission:
    """Block or unblock an existing viewer without deleting the grant."""

    permission = db.scalars(
        select(ReadingPermission)
        .where(ReadingPermission.viewer_id == viewer_id, ReadingPermission.owner_id == owner_id)
        .with_for_update()
    ).first()
    if permission is None:
        raise PermissionNotFoundError()
    if permission.status is status:
        return permission

    previous = permission.status
    permission.status = status
    permission.updated_at = utcnow()
    log_audit(
        db,
        actor=actor_for_user(owner_id),
        action="READING_PERMISSION_STATUS_CHANGED",
        entity="ReadingPermission",
        entity_id=permission.id,
        data={"viewer_id": viewer_id, "from": previous.value, "to": status.value},
    )
    db.commit()
    db.refresh(permission)
    logger.info(
        "Reading permission status changed",
        extra={"permission_id": permission.id, "status": status.value},
    )
    return permission


def list_granted_to_me(db: Session, viewer_id: str) -> list[ReadingPermission]:
    """Active grants letting ``viewer_id`` read other users' timelines."""

    stmt = (
        select(ReadingPermission)
        .where(
            ReadingPermission.viewer_id == viewer_id,
            ReadingPermission.status == PermissionStatus.ACTIVE,
        )
        .order_by(ReadingPermission.created_at.desc(), ReadingPermission.id.desc())
    )
    return list(db.scalars(stmt).all())


def list_my_viewers(db: Session, owner_id: str) -> list[ReadingPermission]:
    """Everyone holding a grant on ``owner_id``'s readings, blocked ones included."""

    stmt = (
        select(ReadingPermission)
        .where(ReadingPermission.owner_id == owner_id)
        .order_by(ReadingPermission.created_at.desc(), ReadingPermission.id.desc())
    )
    return list(db.scalars(stmt).all())


def list_pending_requests(db: Session, user_id: str, box: RequestBox = "all") -> list[AccessRequest]:
    """Pending requests addressed to (incoming) or sent by (outgoing) ``user_id``."""

    if box == "incoming":
        scope = AccessRequest.owner_id == user_id
    elif box == "outgoing":
        scope = AccessRequest.requester_id == user_id
    else:
        scope = or_(AccessRequest.owner_id == user_id, AccessRequest.requester_id == user_id)
    stmt = (
        select(AccessRequest)
        .where(scope, AccessRequest.status == AccessRequestStatus.PENDING)
        .order_by(AccessRequest.created_at.desc(), AccessRequest.id.desc())
    )
    return list(db.scalars(stmt).all())


def present_requests(db: Session, requests: list[AccessRequest]) -> list[AccessRequestRead]:
    """Attach both parties' display names to request rows."""

    names = display_names(db, [uid for row in requests for uid in (row.requester_id, row.owner_id)])
    return [
        AccessRequestRead.model_validate(row).model_copy(
            update={"requester_name": names.get(row.requester_id), "owner_name": names.get(row.owner_id)}
        )
        for row in requests
    ]


def present_permissions(db: Session, permissions: list[ReadingPermission]) -> list[ReadingPermissionRead]:
    names = display_names(db, [uid for row in permissions for uid in (row.viewer_id, row.owner_id)])
    return [
        ReadingPermissionRead.model_validate(row).model_copy(
            update={"viewer_name": names.get(row.viewer_id), "owner_name": names.get(row.owner_id)}
        )
        for row in permissions
    ]


__all__ = [
    "create_request",
    "accept_request",
    "decline_request",
    "revoke_access",
    "set_permission_status",
    "get_request",
    "list_granted_to_me",
    "list_my_viewers",
    "list_pending_requests",
    "present_permissions",
    "present_requests",
]
