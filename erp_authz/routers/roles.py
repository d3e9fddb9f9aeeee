from __future__ import annotations

import math
import uuid
from typing import Literal

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.orm import Session

from erp_authz.db.session import get_db
from erp_authz.models.security import Role
from erp_authz.permissions import PermissionRegistry
from erp_authz.schemas.paging import MAX_PAGE
from erp_authz.schemas.security import PermissionOut, RoleCreate, RoleDetailOut, RoleOut, RolePage, RoleUpdate
from erp_authz.security.context import AuthzContext
from erp_authz.security.dependencies import get_authz_context, get_permission_registry
from erp_authz.services.roles import RoleService

router = APIRouter(prefix="/roles", tags=["roles"])


def get_role_service(
    db: Session = Depends(get_db),
    registry: PermissionRegistry = Depends(get_permission_registry),
) -> RoleService:
    return RoleService(db, registry)


def to_role_detail(role: Role) -> RoleDetailOut:
    return RoleDetailOut(
        **RoleOut.model_validate(role).model_dump(),
        permissions=sorted(role.permission_codes),
    )


@router.get("", response_model=RolePage)
def list_roles(
    page: int = Query(default=1, ge=1, le=MAX_PAGE),
    limit: int = Query(default=50, ge=1, le=100),
    search: str | None = Query(default=None, max_length=100),
    is_system: bool | None = Query(default=None, alias="isSystem"),
    sort_by: Literal["createdAt", "name", "code"] = Query(default="name", alias="sortBy"),
    sort_order: Literal["asc", "desc"] = Query(default="asc", alias="sortOrder"),
    authz: AuthzContext = Depends(get_authz_context),
    service: RoleService = Depends(get_role_service),
) -> RolePage:
    roles, total = service.list_roles(
        authz.tenant_id,
        page=page,
        limit=limit,
        search=search,
        is_system=is_system,
        sort_by=sort_by,
        sort_order=sort_order,
    )
    return RolePage(
        roles=[RoleOut.model_validate(r) for r in roles],
        total=total,
        page=page,
        limit=limit,
        total_pages=math.ceil(total / limit) if total else 0,
    )


# Declared before "/{role_id}" so "permissions" is not taken as an id.
@router.get("/permissions", response_model=list[PermissionOut])
def list_permissions(service: RoleService = Depends(get_role_service)) -> list[PermissionOut]:
    return [
        PermissionOut(code=p.code, resource=p.resource, action=p.action, scope=p.scope.value)
        for p in service.list_permissions()
    ]


@router.get("/{role_id}", response_model=RoleDetailOut)
def get_role(
    role_id: uuid.UUID,
    authz: AuthzContext = Depends(get_authz_context),
    service: RoleService = Depends(get_role_service),
) -> RoleDetailOut:
    return to_role_detail(service.get_role(str(role_id), tenant_id=authz.tenant_id))


@router.post("", response_model=RoleDetailOut, status_code=status.HTTP_201_CREATED)
def create_role(
    body: RoleCreate,
    authz: AuthzContext = Depends(get_authz_context),
    service: RoleService = Depends(get_role_service),
) -> RoleDetailOut:
    role = service.create_role(
        authz.tenant_id,
        body.name,
        body.description,
        body.permissions,
        authz.held_permissions,
        code=body.code,
        created_by=authz.user_id,
    )
    return to_role_detail(role)


@router.patch("/{role_id}", response_model=RoleDetailOut)
def update_role(
    role_id: uuid.UUID,
    body: RoleUpdate,
    authz: AuthzContext = Depends(get_authz_context),
    service: RoleService = Depends(get_role_service),
) -> RoleDetailOut:
    role = service.update_role(
        str(role_id),
        body,
        authz.held_permissions,
        tenant_id=authz.tenant_id,
        updated_by=authz.user_id,
    )
    return to_role_detail(role)


@router.delete("/{role_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_role(
    role_id: uuid.UUID,
    authz: AuthzContext = Depends(get_authz_context),
    service: RoleService = Depends(get_role_service),
) -> Response:
    service.delete_role(str(role_id), authz.held_permissions, tenant_id=authz.tenant_id, deleted_by=authz.user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
