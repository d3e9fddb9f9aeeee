from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Response, status

from erp_authz.models.security import User
from erp_authz.routers.roles import get_role_service
from erp_authz.schemas.security import MeOut, RoleAssignmentCreate, RoleAssignmentOut, UserOut
from erp_authz.security.context import AuthzContext
from erp_authz.security.decorators import require_permissions
from erp_authz.security.dependencies import get_authz_context, get_current_user
from erp_authz.services.roles import RoleService

router = APIRouter(tags=["users"])


@router.get("/me", response_model=MeOut)
def me(user: User = Depends(get_current_user), authz: AuthzContext = Depends(get_authz_context)) -> MeOut:
    return MeOut(
        user=UserOut.model_validate(user),
        tenant_id=authz.tenant_id,
        branch_id=authz.branch_id,
        permissions=sorted(authz.held_permissions),
    )


# Assignment routes are protected by decorator metadata instead of YAML rules.


@router.get("/users/{user_id}/roles", response_model=list[RoleAssignmentOut])
@require_permissions(["role:read:tenant"])
def list_user_roles(
    user_id: uuid.UUID,
    authz: AuthzContext = Depends(get_authz_context),
    service: RoleService = Depends(get_role_service),
) -> list[RoleAssignmentOut]:
    return [RoleAssignmentOut.model_validate(a) for a in service.list_user_roles(str(user_id), tenant_id=authz.tenant_id)]


@router.post("/users/{user_id}/roles", response_model=RoleAssignmentOut, status_code=status.HTTP_201_CREATED)
@require_permissions(["role:assign:tenant"])
def assign_role(
    user_id: uuid.UUID,
    body: RoleAssignmentCreate,
    authz: AuthzContext = Depends(get_authz_context),
    service: RoleService = Depends(get_role_service),
) -> RoleAssignmentOut:
    assignment = service.assign_role(
        str(user_id),
        str(body.role_id),
        authz.held_permissions,
        tenant_id=authz.tenant_id,
        branch_id=str(body.branch_id) if body.branch_id is not None else None,
        expires_at=body.expires_at,
        assigned_by=authz.user_id,
    )
    return RoleAssignmentOut.model_validate(assignment)


@router.delete("/users/{user_id}/roles/{assignment_id}", status_code=status.HTTP_204_NO_CONTENT)
@require_permissions(["role:assign:tenant"])
def unassign_role(
    user_id: uuid.UUID,
    assignment_id: uuid.UUID,
    authz: AuthzContext = Depends(get_authz_context),
    service: RoleService = Depends(get_role_service),
) -> Response:
    service.unassign_role(
        str(user_id),
        str(assignment_id),
        tenant_id=authz.tenant_id,
        removed_by=authz.user_id,
    )
    return Response(status_code=status.HTTP_204_NO_CONTENT)
