"""Access request and reading permission schemas."""
from datetime import datetime

from pydantic import BaseModel, ConfigDict, EmailStr, Field, model_validator

from readshare.models.access import AccessRequestStatus, PermissionStatus


class AccessRequestCreate(BaseModel):
    owner_id: str | None = None
    owner_email: EmailStr | None = None
    message: str | None = Field(default=None, max_length=500)

    @model_validator(mode="after")
    def _one_target(self) -> "AccessRequestCreate":
        if bool(self.owner_id) == bool(self.owner_email):
            raise ValueError("Provide exactly one of owner_id or owner_email")
        return self


class AccessRequestRead(BaseModel):
    id: str
    requester_id: str
    owner_id: str
    status: AccessRequestStatus
    message: str | None
    created_at: datetime
    updated_at: datetime
    requester_name: str | None = None
    owner_name: str | None = None

    model_config = ConfigDict(from_attributes=True)


class ReadingPermissionRead(BaseModel):
    id: str
    viewer_id: str
    owner_id: str
    status: PermissionStatus
    created_at: datetime
    updated_at: datetime
    viewer_name: str | None = None
    owner_name: str | None = None

    model_config = ConfigDict(from_attributes=True)
