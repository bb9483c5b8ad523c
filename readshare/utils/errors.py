"""Standardized error payloads and domain errors."""
from typing import Any

from fastapi import HTTPException, status


def error_response(code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    """Return a standardized error payload."""

    payload: dict[str, Any] = {"error": {"code": code, "message": message}}
    if details:
        payload["error"]["details"] = details
    return payload


class DomainError(HTTPException):
    """Base class for synchronous, caller-visible failures.

    Subclasses fix the HTTP status and error code so service functions can
    raise them directly and the API layer renders them unchanged.
    """

    status_code: int = status.HTTP_400_BAD_REQUEST
    code: str = "DOMAIN_ERROR"
    default_message: str = "Request could not be processed."

    def __init__(self, message: str | None = None, *, details: dict[str, Any] | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(
            status_code=type(self).status_code,
            detail=error_response(self.code, self.message, details),
        )

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class SelfRequestError(DomainError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "SELF_REQUEST"
    default_message = "You cannot send a reading request to yourself."


class DuplicateRequestError(DomainError):
    status_code = status.HTTP_409_CONFLICT
    code = "DUPLICATE_REQUEST"
    default_message = "A pending request or an active permission already exists for this user."


class NotAuthorizedError(DomainError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "NOT_AUTHORIZED"
    default_message = "Only the owner of this request can respond to it."


class InvalidStateError(DomainError):
    status_code = status.HTTP_409_CONFLICT
    code = "INVALID_STATE"
    default_message = "The request is no longer pending."


class RequestNotFoundError(DomainError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "REQUEST_NOT_FOUND"
    default_message = "Access request not found."


class PermissionNotFoundError(DomainError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "PERMISSION_NOT_FOUND"
    default_message = "Reading permission not found."


class UserNotFoundError(DomainError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "USER_NOT_FOUND"
    default_message = "User not found."


class NotificationNotFoundError(DomainError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "NOTIFICATION_NOT_FOUND"
    default_message = "Notification not found."


class DeliveryNotFoundError(DomainError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "DELIVERY_NOT_FOUND"
    default_message = "Delivery not found."


class DeliveryNotClaimedError(DomainError):
    status_code = status.HTTP_409_CONFLICT
    code = "DELIVERY_NOT_CLAIMED"
    default_message = "The delivery is not currently claimed."


__all__ = [
    "error_response",
    "DomainError",
    "SelfRequestError",
    "DuplicateRequestError",
    "NotAuthorizedError",
    "InvalidStateError",
    "RequestNotFoundError",
    "PermissionNotFoundError",
    "UserNotFoundError",
    "NotificationNotFoundError",
    "DeliveryNotFoundError",
    "DeliveryNotClaimedError",
]
