"""Reading access endpoints: requests, answers and the owner's viewer list."""
from typing import Literal

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.orm import Session

from readshare.config import get_settings
from readshare.db import get_db
from readshare.models.access import PermissionStatus
from readshare.models.user import UserProfile
from readshare.schemas.access import AccessRequestCreate, AccessRequestRead, ReadingPermissionRead
from readshare.security import require_user
from readshare.services import access
from readshare.services.directory import find_user_id_by_email
from readshare.utils.errors import UserNotFoundError

requests_router = APIRouter(prefix="/access-requests", tags=["access"])
permissions_router = APIRouter(prefix="/permissions", tags=["access"])


@requests_router.post("", response_model=AccessRequestRead, status_code=status.HTTP_201_CREATED)
def create_access_request(
    payload: AccessRequestCreate,
    db: Session = Depends(get_db),
    user: UserProfile = Depends(require_user),
) -> AccessRequestRead:
    """Ask another user for access to their readings, by id or by email."""

    owner_id = payload.owner_id
    if owner_id is None:
        owner_id = find_user_id_by_email(db, str(payload.owner_email))
        if owner_id is None:
            raise UserNotFoundError("No active user with this email.")
    request = access.create_request(db, requester_id=user.id, owner_id=owner_id, message=payload.message)
    return access.present_requests(db, [request])[0]


@requests_router.get("", response_model=list[AccessRequestRead])
def list_access_requests(
    box: Literal["incoming", "outgoing", "all"] = Query("incoming"),
    db: Session = Depends(get_db),
    user: UserProfile = Depends(require_user),
) -> list[AccessRequestRead]:
    return access.present_requests(db, access.list_pending_requests(db, user.id, box))


@requests_router.post("/{request_id}/accept", response_model=AccessRequestRead)
def accept_access_request(
    request_id: str,
    db: Session = Depends(get_db),
    user: UserProfile = Depends(require_user),
) -> AccessRequestRead:
    request = access.accept_request(db, request_id=request_id, acting_owner_id=user.id)
    return access.present_requests(db, [request])[0]


@requests_router.post("/{request_id}/decline", response_model=AccessRequestRead)
def decline_access_request(
    request_id: str,
    db: Session = Depends(get_db),
    user: UserProfile = Depends(require_user),
) -> AccessRequestRead:
    request = access.decline_request(
        db,
        request_id=request_id,
        acting_owner_id=user.id,
        notify_requester=get_settings().NOTIFY_ON_DECLINE,
    )
    return access.present_requests(db, [request])[0]


@permissions_router.get("/granted-to-me", response_model=list[ReadingPermissionRead])
def granted_to_me(
    db: Session = Depends(get_db),
    user: UserProfile = Depends(require_user),
) -> list[ReadingPermissionRead]:
    """Users whose readings the caller may view."""

    return access.present_permissions(db, access.list_granted_to_me(db, user.id))


@permissions_router.get("/viewers", response_model=list[ReadingPermissionRead])
def my_viewers(
    db: Session = Depends(get_db),
    user: UserProfile = Depends(require_user),
) -> list[ReadingPermissionRead]:
    """Users who may view the caller's readings."""

    return access.present_permissions(db, access.list_my_viewers(db, user.id))


@permissions_router.delete(
    "/viewers/{viewer_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    response_class=Response,
)
def revoke_viewer(
    viewer_id: str,
    db: Session = Depends(get_db),
    user: UserProfile = Depends(require_user),
) -> Response:
    access.revoke_access(db, owner_id=user.id, viewer_id=viewer_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@permissions_router.post("/viewers/{viewer_id}/block", response_model=ReadingPermissionRead)
def block_viewer(
    viewer_id: str,
    db: Session = Depends(get_db),
    user: UserProfile = Depends(require_user),
) -> ReadingPermissionRead:
    permission = access.set_permission_status(
        db, owner_id=user.id, viewer_id=viewer_id, status=PermissionStatus.BLOCKED
    )
    return access.present_permissions(db, [permission])[0]


@permissions_router.post("/viewers/{viewer_id}/unblock", response_model=ReadingPermissionRead)
def unblock_viewer(
    viewer_id: str,
    db: Session = Depends(get_db),
    user: UserProfile = Depends(require_user),
) -> ReadingPermissionRead:
    permission = access.set_permission_status(
        db, owner_id=user.id, viewer_id=viewer_id, status=PermissionStatus.ACTIVE
    )
    return access.present_permissions(db, [permission])[0]
