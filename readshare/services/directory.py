"""Identity directory lookups used by the access workflow and fan-out."""
from __future__ import annotations

import logging
from collections.abc import Iterable

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from readshare.models.user import UserProfile
from readshare.utils.errors import DomainError, UserNotFoundError

logger = logging.getLogger(__name__)

FALLBACK_DISPLAY_NAME = "Someone"


class UserAlreadyExistsError(DomainError):
    status_code = 409
    code = "USER_ALREADY_EXISTS"
    default_message = "A user with this email already exists."


def normalize_email(email: str) -> str:
    return email.strip().lower()


def find_user_id_by_email(db: Session, email: str) -> str | None:
    """Resolve a human-entered email to a user identifier."""

    cleaned = normalize_email(email)
    if not cleaned:
        return None
    stmt = select(UserProfile.id).where(
        func.lower(UserProfile.email) == cleaned,
        UserProfile.is_active.is_(True),
    )
    return db.scalars(stmt).first()


def get_user(db: Session, user_id: str) -> UserProfile:
    user = db.get(UserProfile, user_id)
    if user is None:
        raise UserNotFoundError()
    return user


def display_name(profile: UserProfile | None) -> str:
    """Full name, else the local part of the email, else a neutral fallback."""

    if profile is None:
        return FALLBACK_DISPLAY_NAME
    if profile.full_name and profile.full_name.strip():
        return profile.full_name.strip()
    if profile.email and "@" in profile.email:
        local_part = profile.email.split("@", 1)[0]
        if local_part:
            return local_part
    return FALLBACK_DISPLAY_NAME


def display_name_for(db: Session, user_id: str | None) -> str:
    if user_id is None:
        return FALLBACK_DISPLAY_NAME
    return display_name(db.get(UserProfile, user_id))


def display_names(db: Session, user_ids: Iterable[str]) -> dict[str, str]:
    ids = set(user_ids)
    if not ids:
        return {}
    profiles = db.scalars(select(UserProfile).where(UserProfile.id.in_(ids))).all()
    names = {profile.id: display_name(profile) for profile in profiles}
    return {user_id: names.get(user_id, FALLBACK_DISPLAY_NAME) for user_id in ids}


def create_user(db: Session, *, email: str, full_name: str | None = None) -> UserProfile:
    """Register a profile mirrored from the identity provider."""

    profile = UserProfile(email=normalize_email(email), full_name=full_name)
    db.add(profile)
    try:
        db.flush()
    except IntegrityError as exc:
        db.rollback()
        raise UserAlreadyExistsError() from exc
    db.commit()
    db.refresh(profile)
    logger.info("User profile created", extra={"user_id": profile.id})
    return profile
