from __future__ import annotations

import uuid
from datetime import date

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from erp_authz.db.session import get_db
from erp_authz.repositories.audit import AuditRepository
from erp_authz.schemas.audit import AuditFilterOptions, AuditFilters, AuditLogOut, AuditLogPage
from erp_authz.schemas.paging import MAX_PAGE
from erp_authz.security.context import AuthzContext
from erp_authz.security.dependencies import get_authz_context
from erp_authz.services.audit import AuditQueryService
from erp_authz.settings import Settings, get_settings

# GET only: audit entries are written by business modules through the
# AuditAppender contract, never through this API.
router = APIRouter(prefix="/audit", tags=["audit"])


def get_audit_service(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> AuditQueryService:
    return AuditQueryService(AuditRepository(db), settings)


@router.get("/logs", response_model=AuditLogPage)
def list_audit_logs(
    module: str | None = None,
    entity: str | None = None,
    action: str | None = None,
    user_id: uuid.UUID | None = Query(default=None, alias="userId"),
    start_date: date | None = Query(default=None, alias="startDate"),
    end_date: date | None = Query(default=None, alias="endDate"),
    page: int = Query(default=1, ge=1, le=MAX_PAGE),
    limit: int | None = Query(default=None, ge=1),
    authz: AuthzContext = Depends(get_authz_context),
    service: AuditQueryService = Depends(get_audit_service),
) -> AuditLogPage:
    filters = AuditFilters(
        module=module,
        entity=entity,
        action=action,
        user_id=str(user_id) if user_id is not None else None,
        start_date=start_date,
        end_date=end_date,
        page=page,
        limit=limit,
    )
    return service.list(filters, authz)


@router.get("/logs/{log_id}", response_model=AuditLogOut)
def get_audit_log(
    log_id: uuid.UUID,
    authz: AuthzContext = Depends(get_authz_context),
    service: AuditQueryService = Depends(get_audit_service),
) -> AuditLogOut:
    return service.get_by_id(str(log_id), authz)


@router.get("/filters", response_model=AuditFilterOptions)
def get_audit_filter_options(
    authz: AuthzContext = Depends(get_authz_context),
    service: AuditQueryService = Depends(get_audit_service),
) -> AuditFilterOptions:
    return service.get_filter_options(authz)
