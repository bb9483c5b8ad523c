"""Audit logging helper utilities."""
from __future__ import annotations

from typing import Any, Mapping

from sqlalchemy.orm import Session

from readshare.models.audit import AuditLog
from readshare.utils.time import utcnow


SENSITIVE_KEYS = {
    "email",
    "owner_email",
    "message",
    "value",
    "webhook_token",
    "api_key",
}


def _mask_value(key: str, value: Any) -> Any:
    if value is None:
        return None

    if key in {"email", "owner_email"}:
        text = str(value)
        if "@" in text:
            _, domain = text.split("@", 1)
            return f"***@{domain}"
        return "***"

    if key == "message":
        # Free text typed by users: keep only its size.
        return f"<{len(str(value))} chars>"

    if key == "value":
        return "***"

    if key in {"webhook_token", "api_key"}:
        text = str(value)
        if len(text) <= 6:
            return "***"
        return f"{text[:4]}***"

    return value


def sanitize_payload_for_audit(data: Any) -> Any:
    """Return a copy of ``data`` with obvious PII and health values masked."""

    if isinstance(data, Mapping):
        sanitized: dict[str, Any] = {}
        for key, value in data.items():
            masked_value = _mask_value(key, value) if key in SENSITIVE_KEYS else value
            sanitized[key] = sanitize_payload_for_audit(masked_value)
        return sanitized

    if isinstance(data, list):
        return [sanitize_payload_for_audit(item) for item in data]

    return data


def log_audit(
    db: Session,
    *,
    actor: str,
    action: str,
    entity: str,
    entity_id: str | None,
    data: dict | None = None,
) -> None:
    """Stage an audit entry in the shared AuditLog table (caller commits)."""

    db.add(
        AuditLog(
            actor=actor,
            action=action,
            entity=entity,
            entity_id=entity_id if entity_id is not None else "-",
            data_json=sanitize_payload_for_audit(data or {}),
            at=utcnow(),
        )
    )


def actor_for_user(user_id: str | None, fallback: str = "system") -> str:
    """Return the canonical actor string for a user identifier."""

    if user_id:
        return f"user:{user_id}"
    return fallback


def actor_from_api_key(api_key: Any, fallback: str = "system") -> str:
    """Return the canonical actor string for a given API key object."""

    prefix = getattr(api_key, "prefix", None)
    if prefix:
        return f"apikey:{prefix}"
    return fallback
