from __future__ import annotations

import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class BranchOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    code: str
    name: str


class UserOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    tenant_id: str
    branch_id: str | None
    email: str
    first_name: str
    last_name: str
    is_active: bool


class MeOut(BaseModel):
    user: UserOut
    tenant_id: str
    branch_id: str | None
    permissions: list[str]


class PermissionOut(BaseModel):
    code: str
    resource: str
    action: str
    scope: str


class RoleOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    tenant_id: str | None
    code: str
    name: str
    description: str | None
    is_system: bool
    created_at: datetime
    updated_at: datetime


class RoleDetailOut(RoleOut):
    permissions: list[str]


class RolePage(BaseModel):
    roles: list[RoleOut]
    total: int
    page: int
    limit: int
    total_pages: int


class RoleCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=1, max_length=100)
    code: str | None = Field(default=None, min_length=1, max_length=50, pattern=r"^[A-Z0-9_]+$")
    description: str | None = Field(default=None, max_length=500)
    permissions: list[str] = Field(default_factory=list)


class RoleUpdate(BaseModel):
    """Partial update; `permissions`, when given, is the complete new set."""

    model_config = ConfigDict(extra="forbid")

    name: str | None = Field(default=None, min_length=1, max_length=100)
    description: str | None = Field(default=None, max_length=500)
    permissions: list[str] | None = None


class RoleAssignmentCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    role_id: uuid.UUID
    branch_id: uuid.UUID | None = None
    expires_at: datetime | None = None


class RoleAssignmentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    role_id: str
    tenant_id: str
    branch_id: str | None
    assigned_by_id: str | None
    assigned_at: datetime
    expires_at: datetime | None
