from __future__ import annotations

from datetime import date, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from erp_authz.schemas.paging import MAX_PAGE


class AuditFilters(BaseModel):
    """
    Caller-supplied list filters.

    Tenant and branch are deliberately absent: the service always takes them
    from the AuthzContext.
    """

    model_config = ConfigDict(extra="forbid")

    module: str | None = None
    entity: str | None = None
    action: str | None = None
    user_id: str | None = None
    start_date: date | None = None
    end_date: date | None = None
    page: int = Field(default=1, ge=1, le=MAX_PAGE)
    limit: int | None = Field(default=None, ge=1)


class AuditLogOut(BaseModel):
    id: str
    module: str
    entity: str
    entity_id: str | None
    action: str
    user_id: str
    user_name: str
    user_email: str
    ip_address: str | None
    user_agent: str | None
    changes: Any = None
    metadata: Any = None
    tenant_id: str
    branch_id: str | None
    created_at: datetime


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int


class AuditLogPage(BaseModel):
    logs: list[AuditLogOut]
    pagination: Pagination


class AuditFilterOptions(BaseModel):
    modules: list[str]
    entities: list[str]
    actions: list[str]
