"""User directory endpoints."""
from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from readshare.db import get_db
from readshare.models.api_key import ApiKey, ApiScope
from readshare.models.user import UserProfile
from readshare.schemas.user import UserCreate, UserLookupRead, UserRead
from readshare.security import require_scope
from readshare.services import directory
from readshare.utils.audit import actor_from_api_key, log_audit
from readshare.utils.errors import UserNotFoundError

router = APIRouter(prefix="/users", tags=["users"])


@router.post(
    "",
    response_model=UserRead,
    status_code=status.HTTP_201_CREATED,
)
def create_user(
    payload: UserCreate,
    db: Session = Depends(get_db),
    api_key: ApiKey = Depends(require_scope({ApiScope.admin, ApiScope.support})),
) -> UserProfile:
    """Register a user profile mirrored from the identity provider."""

    user = directory.create_user(db, email=payload.email, full_name=payload.full_name)
    log_audit(
        db,
        actor=actor_from_api_key(api_key, fallback="apikey:unknown"),
        action="CREATE_USER",
        entity="UserProfile",
        entity_id=user.id,
        data={"email": user.email},
    )
    db.commit()
    return user


@router.get("/lookup", response_model=UserLookupRead)
def lookup_user(
    email: str = Query(..., min_length=3, max_length=255),
    db: Session = Depends(get_db),
    api_key: ApiKey = Depends(require_scope({ApiScope.user, ApiScope.support})),
) -> UserLookupRead:
    """Resolve an email to a user id (used by the request form)."""

    user_id = directory.find_user_id_by_email(db, email)
    if user_id is None:
        raise UserNotFoundError("No active user with this email.")
    return UserLookupRead(user_id=user_id)


@router.get("/{user_id}", response_model=UserRead)
def get_user(
    user_id: str,
    db: Session = Depends(get_db),
    api_key: ApiKey = Depends(require_scope({ApiScope.admin, ApiScope.support})),
) -> UserProfile:
    user = directory.get_user(db, user_id)
    log_audit(
        db,
        actor=actor_from_api_key(api_key, fallback="apikey:unknown"),
        action="READ_USER",
        entity="UserProfile",
        entity_id=user.id,
        data={"reason": "api_read"},
    )
    db.commit()
    return user
